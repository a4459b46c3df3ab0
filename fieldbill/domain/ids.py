from __future__ import annotations

from uuid import UUID, uuid4

from fieldbill.core.errors import InvalidIdentifierError


def new_id() -> str:
    return uuid4().hex


def parse_id(value: object, *, label: str = "identifier") -> str:
    # Normalize any accepted UUID spelling to the stored 32-char hex form.
    if isinstance(value, UUID):
        return value.hex
    if not isinstance(value, str) or not value.strip():
        raise InvalidIdentifierError(f"invalid {label}")
    try:
        return UUID(value.strip()).hex
    except ValueError as exc:
        raise InvalidIdentifierError(f"invalid {label}: {value!r}") from exc
