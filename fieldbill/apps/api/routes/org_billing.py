from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.apps.api.deps import ORG_ADMIN_ROLES, ORG_MANAGER_ROLES, Principal, get_db, require_org_member
from fieldbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fieldbill.apps.api.response import SuccessEnvelope, get_request_id, success_response
from fieldbill.domain.models import OrgWalletTransaction
from fieldbill.domain.periods import ensure_utc
from fieldbill.services.audit import record_event
from fieldbill.services.org_wallet import get_org_wallet, list_org_wallet_transactions
from fieldbill.services.subscription_billing import (
    SubscriptionAccess,
    activate_grace_period,
    ensure_subscription_access,
)


router = APIRouter(prefix="/orgs/{org_id}", tags=["org-billing"], responses=DEFAULT_ERROR_RESPONSES)


class OrgWalletResponse(BaseModel):
    org_id: str
    balance_kopecks: int
    currency: str


class OrgWalletTransactionResponse(BaseModel):
    id: str
    amount_kopecks: int
    type: str
    source: str
    balance_after_kopecks: int
    meta: dict[str, Any] | None
    created_at: datetime


class SubscriptionResponse(BaseModel):
    org_id: str
    plan: str
    status: str
    price_kopecks_monthly: int
    read_only: bool
    reason: str | None
    grace_until: datetime | None
    grace_available: bool
    period_start: datetime | None
    period_end: datetime | None


def _subscription_payload(org_id: str, access: SubscriptionAccess) -> SubscriptionResponse:
    return SubscriptionResponse(
        org_id=org_id,
        plan=access.plan,
        status=access.status,
        price_kopecks_monthly=access.price_kopecks_monthly,
        read_only=access.read_only,
        reason=access.reason,
        grace_until=access.grace_until,
        grace_available=access.grace_available,
        period_start=access.period_start,
        period_end=access.period_end,
    )


def _transaction_payload(row: OrgWalletTransaction) -> OrgWalletTransactionResponse:
    return OrgWalletTransactionResponse(
        id=row.id,
        amount_kopecks=int(row.amount_kopecks),
        type=row.type,
        source=row.source,
        balance_after_kopecks=int(row.balance_after_kopecks),
        meta=row.meta,
        created_at=ensure_utc(row.created_at),
    )


@router.get("/wallet", response_model=SuccessEnvelope[OrgWalletResponse])
async def get_wallet(
    request: Request,
    principal: Principal = Depends(require_org_member(*ORG_MANAGER_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Organizations without a wallet row read as an empty RUB wallet.
    wallet = await get_org_wallet(db, principal.org_id)
    payload = OrgWalletResponse(
        org_id=principal.org_id,
        balance_kopecks=int(wallet.balance_kopecks) if wallet is not None else 0,
        currency=wallet.currency if wallet is not None else "RUB",
    )
    return success_response(request=request, data=payload)


@router.get("/wallet/transactions", response_model=SuccessEnvelope[list[OrgWalletTransactionResponse]])
async def get_wallet_transactions(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_org_member(*ORG_MANAGER_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_org_wallet_transactions(db, principal.org_id, limit=limit)
    return success_response(request=request, data=[_transaction_payload(row) for row in rows])


@router.get("/subscription", response_model=SuccessEnvelope[SubscriptionResponse])
async def get_subscription_state(
    request: Request,
    principal: Principal = Depends(require_org_member()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    access = await ensure_subscription_access(db, principal.org_id)
    return success_response(request=request, data=_subscription_payload(principal.org_id, access))


@router.post("/subscription/grace", response_model=SuccessEnvelope[SubscriptionResponse])
async def start_grace_period(
    request: Request,
    principal: Principal = Depends(require_org_member(*ORG_ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Keeps an unpaid organization writable for a short window once a month.
    subscription = await activate_grace_period(db, principal.org_id)
    await record_event(
        session=db,
        org_id=principal.org_id,
        actor_type="user",
        actor_id=principal.actor_id,
        actor_role=principal.role,
        event_type="subscription.grace_activated",
        outcome="success",
        resource_type="subscription",
        resource_id=subscription.id,
        request_id=get_request_id(request),
        metadata={"grace_until": ensure_utc(subscription.grace_until).isoformat()},
    )
    access = await ensure_subscription_access(db, principal.org_id)
    return success_response(request=request, data=_subscription_payload(principal.org_id, access))
