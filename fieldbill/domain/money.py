from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal


KOPECKS_PER_RUB = 100


def rub_to_kopecks(value: int | float | str | Decimal) -> int:
    # Convert through Decimal so 0.1-style inputs do not drift.
    amount = Decimal(str(value)) * KOPECKS_PER_RUB
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def kopecks_to_rub(value: int) -> Decimal:
    return (Decimal(int(value)) / KOPECKS_PER_RUB).quantize(Decimal("0.01"))


def prorate_kopecks(amount_kopecks: int, numerator: int, denominator: int) -> int:
    # Scale an amount by numerator/denominator and round half up to whole kopecks.
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    scaled = Decimal(int(amount_kopecks)) * Decimal(int(numerator)) / Decimal(int(denominator))
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
