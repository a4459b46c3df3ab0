from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.apps.api.deps import get_db, require_admin_token
from fieldbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fieldbill.apps.api.response import SuccessEnvelope, get_request_id, success_response
from fieldbill.domain.ids import parse_id
from fieldbill.services.audit import record_event
from fieldbill.services.billing_config import get_billing_config, update_billing_config
from fieldbill.services.org_wallet import set_org_wallet_balance
from fieldbill.services.plans import (
    PlanTier,
    delete_plan_config,
    get_plan_config,
    list_plan_configs,
    update_plan_config,
)
from fieldbill.services.subscription_billing import ensure_subscription_access, upsert_subscription
from fieldbill.services.wallet import adjust_wallet


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


def _error_detail(code: str, message: str) -> dict[str, str]:
    return {"code": code, "message": message}


class PlanResponse(BaseModel):
    plan: str
    title: str
    price_kopecks_monthly: int
    projects_limit: int | None
    seats_limit: int | None
    tasks_weekly_limit: int | None
    public_tasks_monthly_limit: int | None
    storage_included_gb: int | None
    storage_overage_kopecks_per_gb_month: int | None
    storage_package_gb: int | None
    storage_package_kopecks_monthly: int | None
    features: list[str]


class PlanUpdateRequest(BaseModel):
    # Omitted fields are left alone; explicit null resets a field to the built-in default.
    title: str | None = None
    price_kopecks_monthly: int | None = Field(default=None, ge=0)
    projects_limit: int | None = Field(default=None, ge=0)
    seats_limit: int | None = Field(default=None, ge=0)
    tasks_weekly_limit: int | None = Field(default=None, ge=0)
    public_tasks_monthly_limit: int | None = Field(default=None, ge=0)
    storage_included_gb: int | None = Field(default=None, ge=0)
    storage_overage_kopecks_per_gb_month: int | None = Field(default=None, ge=0)
    storage_package_gb: int | None = Field(default=None, ge=0)
    storage_package_kopecks_monthly: int | None = Field(default=None, ge=0)
    features: list[str] | None = None


class BillingConfigResponse(BaseModel):
    task_publish_cost_kopecks: int
    bid_cost_kopecks: int


class BillingConfigUpdateRequest(BaseModel):
    task_publish_cost_kopecks: int | None = Field(default=None, ge=0)
    bid_cost_kopecks: int | None = Field(default=None, ge=0)


class OrgWalletUpdateRequest(BaseModel):
    balance_kopecks: int | None = Field(default=None, ge=0)
    delta_kopecks: int | None = None


class OrgWalletUpdateResponse(BaseModel):
    org_id: str
    balance_kopecks: int


class ContractorWalletUpdateRequest(BaseModel):
    balance_delta_kopecks: int = 0
    bonus_delta_kopecks: int = 0


class ContractorWalletResponse(BaseModel):
    contractor_id: str
    balance_kopecks: int
    bonus_balance_kopecks: int


class SubscriptionUpdateRequest(BaseModel):
    plan: str | None = None
    status: str | None = None
    seats: int | None = Field(default=None, ge=0)
    projects_limit: int | None = Field(default=None, ge=0)
    public_tasks_limit: int | None = Field(default=None, ge=0)
    tasks_weekly_limit: int | None = Field(default=None, ge=0)
    storage_limit_gb: int | None = Field(default=None, ge=0)
    period_start: datetime | None = None
    period_end: datetime | None = None
    note: str | None = None


class SubscriptionStateResponse(BaseModel):
    org_id: str
    plan: str
    status: str
    price_kopecks_monthly: int
    read_only: bool
    reason: str | None


def _plan_payload(tier: PlanTier) -> PlanResponse:
    return PlanResponse(
        plan=tier.plan,
        title=tier.title,
        price_kopecks_monthly=tier.price_kopecks_monthly,
        projects_limit=tier.projects_limit,
        seats_limit=tier.seats_limit,
        tasks_weekly_limit=tier.tasks_weekly_limit,
        public_tasks_monthly_limit=tier.public_tasks_monthly_limit,
        storage_included_gb=tier.storage_included_gb,
        storage_overage_kopecks_per_gb_month=tier.storage_overage_kopecks_per_gb_month,
        storage_package_gb=tier.storage_package_gb,
        storage_package_kopecks_monthly=tier.storage_package_kopecks_monthly,
        features=list(tier.features),
    )


async def _audit_admin(
    db: AsyncSession,
    request: Request,
    admin_id: str,
    *,
    event_type: str,
    resource_type: str,
    resource_id: str | None,
    org_id: str | None = None,
    metadata: dict | None = None,
) -> None:
    await record_event(
        session=db,
        org_id=org_id,
        actor_type="admin",
        actor_id=admin_id,
        actor_role="platform_admin",
        event_type=event_type,
        outcome="success",
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=get_request_id(request),
        metadata=metadata,
    )


@router.get("/plans", response_model=SuccessEnvelope[list[PlanResponse]])
async def list_plans(
    request: Request,
    admin_id: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_db),
) -> dict:
    tiers = await list_plan_configs(db)
    return success_response(request=request, data=[_plan_payload(tier) for tier in tiers])


@router.get("/plans/{plan}", response_model=SuccessEnvelope[PlanResponse])
async def get_plan(
    request: Request,
    plan: str,
    admin_id: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_db),
) -> dict:
    tier = await get_plan_config(db, plan)
    return success_response(request=request, data=_plan_payload(tier))


@router.put("/plans/{plan}", response_model=SuccessEnvelope[PlanResponse])
async def put_plan(
    request: Request,
    plan: str,
    body: PlanUpdateRequest,
    admin_id: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_db),
) -> dict:
    values = body.model_dump(exclude_unset=True)
    tier = await update_plan_config(db, plan, values)
    await _audit_admin(
        db,
        request,
        admin_id,
        event_type="billing.plan_updated",
        resource_type="plan",
        resource_id=plan,
        metadata={"fields": sorted(values)},
    )
    return success_response(request=request, data=_plan_payload(tier))


@router.delete("/plans/{plan}", response_model=SuccessEnvelope[PlanResponse])
async def reset_plan(
    request: Request,
    plan: str,
    admin_id: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Deleting the stored row restores the built-in defaults.
    tier = await delete_plan_config(db, plan)
    await _audit_admin(db, request, admin_id, event_type="billing.plan_reset", resource_type="plan", resource_id=plan)
    return success_response(request=request, data=_plan_payload(tier))


@router.get("/billing-config", response_model=SuccessEnvelope[BillingConfigResponse])
async def get_costs(
    request: Request,
    admin_id: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_db),
) -> dict:
    costs = await get_billing_config(db)
    payload = BillingConfigResponse(
        task_publish_cost_kopecks=costs.task_publish_cost_kopecks,
        bid_cost_kopecks=costs.bid_cost_kopecks,
    )
    return success_response(request=request, data=payload)


@router.put("/billing-config", response_model=SuccessEnvelope[BillingConfigResponse])
async def put_costs(
    request: Request,
    body: BillingConfigUpdateRequest,
    admin_id: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_db),
) -> dict:
    costs = await update_billing_config(
        db,
        task_publish_cost_kopecks=body.task_publish_cost_kopecks,
        bid_cost_kopecks=body.bid_cost_kopecks,
    )
    await _audit_admin(
        db,
        request,
        admin_id,
        event_type="billing.config_updated",
        resource_type="billing_config",
        resource_id="1",
        metadata=body.model_dump(exclude_none=True),
    )
    payload = BillingConfigResponse(
        task_publish_cost_kopecks=costs.task_publish_cost_kopecks,
        bid_cost_kopecks=costs.bid_cost_kopecks,
    )
    return success_response(request=request, data=payload)


@router.patch("/orgs/{org_id}/wallet", response_model=SuccessEnvelope[OrgWalletUpdateResponse])
async def patch_org_wallet(
    request: Request,
    org_id: str,
    body: OrgWalletUpdateRequest,
    admin_id: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_db),
) -> dict:
    org_key = parse_id(org_id, label="organization id")
    if (body.balance_kopecks is None) == (body.delta_kopecks is None):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_detail("INVALID_WALLET_UPDATE", "Provide exactly one of balance_kopecks or delta_kopecks"),
        )
    balance = await set_org_wallet_balance(
        db,
        org_key,
        balance_kopecks=body.balance_kopecks,
        delta_kopecks=body.delta_kopecks,
        actor_id=admin_id,
    )
    await _audit_admin(
        db,
        request,
        admin_id,
        event_type="billing.org_wallet_adjusted",
        resource_type="org_wallet",
        resource_id=org_key,
        org_id=org_key,
        metadata={**body.model_dump(exclude_none=True), "balance_kopecks_after": balance},
    )
    return success_response(request=request, data=OrgWalletUpdateResponse(org_id=org_key, balance_kopecks=balance))


@router.patch("/contractors/{contractor_id}/wallet", response_model=SuccessEnvelope[ContractorWalletResponse])
async def patch_contractor_wallet(
    request: Request,
    contractor_id: str,
    body: ContractorWalletUpdateRequest,
    admin_id: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_db),
) -> dict:
    snapshot = await adjust_wallet(
        db,
        contractor_id,
        balance_delta_kopecks=body.balance_delta_kopecks,
        bonus_delta_kopecks=body.bonus_delta_kopecks,
        actor_id=admin_id,
    )
    await _audit_admin(
        db,
        request,
        admin_id,
        event_type="billing.wallet_adjusted",
        resource_type="wallet",
        resource_id=snapshot.wallet_id,
        metadata=body.model_dump(),
    )
    payload = ContractorWalletResponse(
        contractor_id=snapshot.contractor_id,
        balance_kopecks=snapshot.balance_kopecks,
        bonus_balance_kopecks=snapshot.bonus_balance_kopecks,
    )
    return success_response(request=request, data=payload)


@router.put("/orgs/{org_id}/subscription", response_model=SuccessEnvelope[SubscriptionStateResponse])
async def put_subscription(
    request: Request,
    org_id: str,
    body: SubscriptionUpdateRequest,
    admin_id: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_db),
) -> dict:
    org_key = parse_id(org_id, label="organization id")
    values = body.model_dump(exclude_unset=True)
    plan = values.pop("plan", None)
    status_value = values.pop("status", None)
    try:
        await upsert_subscription(
            db,
            org_key,
            plan=plan,
            status=status_value,
            values=values,
            actor_id=admin_id,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_detail("INVALID_SUBSCRIPTION_STATUS", str(exc)),
        ) from exc
    await _audit_admin(
        db,
        request,
        admin_id,
        event_type="billing.subscription_updated",
        resource_type="subscription",
        resource_id=org_key,
        org_id=org_key,
        metadata={"plan": plan, "status": status_value, "fields": sorted(values)},
    )
    access = await ensure_subscription_access(db, org_key)
    payload = SubscriptionStateResponse(
        org_id=org_key,
        plan=access.plan,
        status=access.status,
        price_kopecks_monthly=access.price_kopecks_monthly,
        read_only=access.read_only,
        reason=access.reason,
    )
    return success_response(request=request, data=payload)
