from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.apps.api.deps import ORG_MANAGER_ROLES, Principal, get_db, require_org_member
from fieldbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fieldbill.apps.api.response import SuccessEnvelope, get_request_id, success_response
from fieldbill.services.audit import record_event
from fieldbill.services.billing_webhook import send_billing_webhook_event
from fieldbill.services.usage_limits import consume_usage_slot, usage_overview


router = APIRouter(prefix="/orgs/{org_id}/usage", tags=["usage"], responses=DEFAULT_ERROR_RESPONSES)


class UsageLimitsResponse(BaseModel):
    projects: int | None
    seats: int | None
    publications: int | None
    tasks_weekly: int | None


class UsageOverviewResponse(BaseModel):
    org_id: str
    plan: str
    month: str
    week: str
    limits: UsageLimitsResponse
    projects_used: int
    publications_used: int
    tasks_used: int


class UsageSlotResponse(BaseModel):
    kind: str
    plan: str
    used: int
    limit: int | None


@router.get("", response_model=SuccessEnvelope[UsageOverviewResponse])
async def get_usage(
    request: Request,
    principal: Principal = Depends(require_org_member()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Plan limits next to the current month's and week's counters.
    overview = await usage_overview(db, principal.org_id)
    payload = UsageOverviewResponse(
        org_id=principal.org_id,
        plan=overview.plan,
        month=overview.month,
        week=overview.week,
        limits=UsageLimitsResponse(
            projects=overview.limits.projects,
            seats=overview.limits.seats,
            publications=overview.limits.publications,
            tasks_weekly=overview.limits.tasks_weekly,
        ),
        projects_used=overview.projects_used,
        publications_used=overview.publications_used,
        tasks_used=overview.tasks_used,
    )
    return success_response(request=request, data=payload)


@router.post("/{kind}/consume", response_model=SuccessEnvelope[UsageSlotResponse])
async def consume_slot(
    request: Request,
    kind: Literal["projects", "publications", "tasks"],
    principal: Principal = Depends(require_org_member(*ORG_MANAGER_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Reserve one unit before the caller creates the project, publication or task.
    result = await consume_usage_slot(db, principal.org_id, kind)
    details = {"kind": kind, "plan": result.plan, "limit": result.limit, "used": result.used}
    await record_event(
        session=db,
        org_id=principal.org_id,
        actor_type="user",
        actor_id=principal.actor_id,
        actor_role=principal.role,
        event_type="usage.slot_consumed" if result.ok else "usage.limit_reached",
        outcome="success" if result.ok else "failure",
        resource_type="usage",
        resource_id=kind,
        request_id=get_request_id(request),
        metadata=details,
        error_code=None if result.ok else "USAGE_LIMIT_REACHED",
    )
    if not result.ok:
        await send_billing_webhook_event(
            event_type="usage.limit_reached",
            payload={"org_id": principal.org_id, **details},
        )
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"code": "USAGE_LIMIT_REACHED", "message": result.reason, **details},
        )
    payload = UsageSlotResponse(kind=kind, plan=result.plan, used=result.used, limit=result.limit)
    return success_response(request=request, data=payload)
