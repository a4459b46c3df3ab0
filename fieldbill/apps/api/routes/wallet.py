from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.apps.api.deps import Principal, get_db, require_role
from fieldbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fieldbill.apps.api.response import SuccessEnvelope, get_request_id, success_response
from fieldbill.domain.models import WalletTransaction
from fieldbill.domain.periods import ensure_utc
from fieldbill.services.audit import record_event
from fieldbill.services.wallet import (
    INVALID_ID_ERROR,
    BidDebitResult,
    WalletSnapshot,
    charge_bid,
    get_wallet_snapshot,
    list_wallet_transactions,
)


router = APIRouter(tags=["wallet"], responses=DEFAULT_ERROR_RESPONSES)


class WalletResponse(BaseModel):
    wallet_id: str
    contractor_id: str
    balance_kopecks: int
    bonus_balance_kopecks: int
    available_kopecks: int
    currency: str


class WalletTransactionResponse(BaseModel):
    id: str
    amount_kopecks: int
    type: str
    source: str
    balance_after_kopecks: int
    bonus_balance_after_kopecks: int
    meta: dict[str, Any] | None
    created_at: datetime


class BidChargeRequest(BaseModel):
    task_id: str
    application_id: str | None = None


class BidChargeResponse(BaseModel):
    transaction_id: str | None
    debited_from_bonus: int
    debited_from_balance: int
    wallet: WalletResponse


def _wallet_payload(snapshot: WalletSnapshot) -> WalletResponse:
    return WalletResponse(
        wallet_id=snapshot.wallet_id,
        contractor_id=snapshot.contractor_id,
        balance_kopecks=snapshot.balance_kopecks,
        bonus_balance_kopecks=snapshot.bonus_balance_kopecks,
        available_kopecks=snapshot.available_kopecks,
        currency=snapshot.currency,
    )


def _transaction_payload(row: WalletTransaction) -> WalletTransactionResponse:
    return WalletTransactionResponse(
        id=row.id,
        amount_kopecks=int(row.amount_kopecks),
        type=row.type,
        source=row.source,
        balance_after_kopecks=int(row.balance_after_kopecks),
        bonus_balance_after_kopecks=int(row.bonus_balance_after_kopecks),
        meta=row.meta,
        created_at=ensure_utc(row.created_at),
    )


@router.get("/wallet/me", response_model=SuccessEnvelope[WalletResponse])
async def get_my_wallet(
    request: Request,
    principal: Principal = Depends(require_role("contractor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # First visit creates the wallet with the signup bonus.
    snapshot = await get_wallet_snapshot(db, principal.actor_id)
    return success_response(request=request, data=_wallet_payload(snapshot))


@router.get("/wallet/me/transactions", response_model=SuccessEnvelope[list[WalletTransactionResponse]])
async def get_my_transactions(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_role("contractor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_wallet_transactions(db, principal.actor_id, limit=limit)
    return success_response(request=request, data=[_transaction_payload(row) for row in rows])


@router.post("/bids/charge", response_model=SuccessEnvelope[BidChargeResponse])
async def charge_for_bid(
    request: Request,
    body: BidChargeRequest,
    principal: Principal = Depends(require_role("contractor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # The audit row commits together with the debit.
    request_id = get_request_id(request)

    async def _on_debited(session: AsyncSession, result: BidDebitResult) -> None:
        await record_event(
            session=session,
            org_id=None,
            actor_type="contractor",
            actor_id=principal.actor_id,
            actor_role=principal.role,
            event_type="wallet.bid_charged",
            outcome="success",
            resource_type="task",
            resource_id=body.task_id,
            request_id=request_id,
            metadata={
                "application_id": body.application_id,
                "debited_from_bonus": result.debited_from_bonus,
                "debited_from_balance": result.debited_from_balance,
            },
            commit=False,
            best_effort=False,
        )

    result = await charge_bid(
        principal.actor_id,
        body.task_id,
        application_id=body.application_id,
        on_debited=_on_debited,
        session=db,
    )
    if not result.ok:
        if result.error == INVALID_ID_ERROR:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "INVALID_IDENTIFIER", "message": result.error},
            )
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"code": "INSUFFICIENT_FUNDS", "message": result.error, "available_kopecks": result.available},
        )
    payload = BidChargeResponse(
        transaction_id=result.transaction_id,
        debited_from_bonus=result.debited_from_bonus,
        debited_from_balance=result.debited_from_balance,
        wallet=_wallet_payload(result.wallet),
    )
    return success_response(request=request, data=payload)
