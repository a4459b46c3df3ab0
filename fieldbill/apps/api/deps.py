from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Path, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.core.config import get_settings
from fieldbill.core.errors import InvalidIdentifierError
from fieldbill.domain.ids import parse_id
from fieldbill.persistence.db import get_session


ROLES = ("owner", "org_admin", "manager", "executor", "viewer", "contractor")
ORG_ROLES = ("owner", "org_admin", "manager", "executor", "viewer")
ORG_ADMIN_ROLES = ("owner", "org_admin")
ORG_MANAGER_ROLES = ("owner", "org_admin", "manager")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity forwarded by the gateway after it authenticated the caller.
    actor_id: str
    role: str
    org_id: str | None = None


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _invalid_id_error(label: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "INVALID_IDENTIFIER", "message": f"Invalid {label}"},
    )


async def get_current_principal(
    x_actor_id: str | None = Header(default=None),
    x_role: str | None = Header(default=None),
    x_org_id: str | None = Header(default=None),
) -> Principal:
    # Trust gateway-set identity headers; reject anything malformed.
    if not x_actor_id or not x_role:
        raise _auth_error("X-Actor-Id and X-Role headers are required")
    role = x_role.strip().lower()
    if role not in ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": f"Unknown role: {x_role}"},
        )
    try:
        actor_id = parse_id(x_actor_id, label="actor id")
        org_id = parse_id(x_org_id, label="organization id") if x_org_id else None
    except InvalidIdentifierError as exc:
        raise _invalid_id_error("identity header") from exc
    return Principal(actor_id=actor_id, role=role, org_id=org_id)


def require_role(*roles: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in roles:
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def require_org_member(*roles: str):
    # Scope org routes to the caller's own organization.
    allowed = roles or ORG_ROLES

    async def _dependency(
        org_id: str = Path(...),
        principal: Principal = Depends(require_role(*allowed)),
    ) -> Principal:
        try:
            org_key = parse_id(org_id, label="organization id")
        except InvalidIdentifierError as exc:
            raise _invalid_id_error("organization id") from exc
        if principal.org_id != org_key:
            raise _forbidden_error("Organization is outside the caller's scope")
        return principal

    return _dependency


def _secret_matches(provided: str | None, expected: str | None) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_cron_secret(x_cron_secret: str | None = Header(default=None)) -> None:
    # Scheduler endpoints are closed unless a cron secret is configured and matches.
    if not _secret_matches(x_cron_secret, get_settings().cron_secret):
        raise _auth_error("Invalid cron secret")


async def require_admin_token(request: Request, x_admin_token: str | None = Header(default=None)) -> str:
    # Platform admin endpoints; returns the acting admin id for audit rows.
    if not _secret_matches(x_admin_token, get_settings().admin_token):
        raise _auth_error("Invalid admin token")
    return request.headers.get("X-Actor-Id") or "platform-admin"
