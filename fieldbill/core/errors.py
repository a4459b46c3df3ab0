from __future__ import annotations


class FieldbillError(Exception):
    """Base error for fieldbill."""


class InvalidIdentifierError(FieldbillError):
    """Organization, contractor or task identifier is not a valid id."""


class PlanNotFoundError(FieldbillError):
    """Requested plan has no stored or built-in configuration."""


class SubscriptionNotFoundError(FieldbillError):
    """Organization has no subscription row."""


class GraceAlreadyUsedError(FieldbillError):
    """Grace period was already activated in the current calendar month."""


class PackageNotAvailableError(FieldbillError):
    """Plan does not offer a purchasable storage package."""


class WalletUpdateError(FieldbillError):
    """Manual wallet adjustment would leave a negative balance."""
