from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.apps.api.deps import get_db, require_cron_secret
from fieldbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fieldbill.apps.api.response import SuccessEnvelope, success_response
from fieldbill.domain.ids import parse_id
from fieldbill.domain.periods import ensure_utc, hour_key, utc_now
from fieldbill.services.storage_usage import charge_hourly_overage, reconcile_storage_bytes
from fieldbill.services.subscription_billing import charge_subscription_period


router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_cron_secret)],
)


class HourlyChargeRequest(BaseModel):
    # Defaults to now; schedulers may pass the hour they are catching up on.
    at: datetime | None = None


class OrgChargeItem(BaseModel):
    org_id: str
    ok: bool
    skipped: bool
    reason: str | None
    amount_kopecks: int
    overage_gb: int


class HourlyChargeResponse(BaseModel):
    hour_key: str
    processed: int
    charged: int
    read_only: int
    failed: int
    results: list[OrgChargeItem]


class ReconcileRequest(BaseModel):
    totals: dict[str, int] = Field(default_factory=dict)


class ReconcileResponse(BaseModel):
    updated: int


class SubscriptionChargeResponse(BaseModel):
    org_id: str
    ok: bool
    status: str
    charged_kopecks: int
    period_start: datetime
    period_end: datetime
    skipped: bool


@router.post("/storage/charge-hourly", response_model=SuccessEnvelope[HourlyChargeResponse])
async def charge_storage_hourly(request: Request, body: HourlyChargeRequest | None = None) -> dict:
    # Opens one session per organization; no request-scoped session is held here.
    moment = ensure_utc(body.at) if body is not None and body.at is not None else utc_now()
    outcomes = await charge_hourly_overage(moment)
    items = [
        OrgChargeItem(
            org_id=outcome.org_id,
            ok=outcome.result.ok,
            skipped=outcome.result.skipped,
            reason=outcome.result.reason,
            amount_kopecks=outcome.result.amount_kopecks,
            overage_gb=outcome.result.overage_gb,
        )
        for outcome in outcomes
    ]
    payload = HourlyChargeResponse(
        hour_key=hour_key(moment),
        processed=len(items),
        charged=sum(1 for item in items if not item.skipped),
        read_only=sum(1 for item in items if item.reason == "insufficient_funds"),
        failed=sum(1 for item in items if item.reason == "error"),
        results=items,
    )
    return success_response(request=request, data=payload)


@router.post("/storage/reconcile", response_model=SuccessEnvelope[ReconcileResponse])
async def reconcile_storage(
    request: Request,
    body: ReconcileRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Totals come from an object-store scan; all ids are validated before any write.
    totals = {parse_id(org_id, label="organization id"): total for org_id, total in body.totals.items()}
    updated = await reconcile_storage_bytes(db, totals)
    return success_response(request=request, data=ReconcileResponse(updated=updated))


@router.post("/subscriptions/{org_id}/charge", response_model=SuccessEnvelope[SubscriptionChargeResponse])
async def charge_subscription(
    request: Request,
    org_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict:
    org_key = parse_id(org_id, label="organization id")
    result = await charge_subscription_period(db, org_key)
    payload = SubscriptionChargeResponse(
        org_id=org_key,
        ok=result.ok,
        status=result.status,
        charged_kopecks=result.charged_kopecks,
        period_start=result.period_start,
        period_end=result.period_end,
        skipped=result.skipped,
    )
    return success_response(request=request, data=payload)
