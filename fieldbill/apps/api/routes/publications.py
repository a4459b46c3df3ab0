from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.apps.api.deps import ORG_MANAGER_ROLES, Principal, get_db, require_org_member
from fieldbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fieldbill.apps.api.response import SuccessEnvelope, get_request_id, success_response
from fieldbill.services.audit import record_event
from fieldbill.services.billing_webhook import send_billing_webhook_event
from fieldbill.services.publications import charge_publication


router = APIRouter(prefix="/orgs/{org_id}/publications", tags=["publications"], responses=DEFAULT_ERROR_RESPONSES)


class PublicationChargeRequest(BaseModel):
    task_id: str


class PublicationChargeResponse(BaseModel):
    task_id: str
    cost_kopecks: int
    used: int
    limit: int | None
    balance_kopecks: int | None
    transaction_id: str | None


@router.post(
    "",
    response_model=SuccessEnvelope[PublicationChargeResponse],
    status_code=status.HTTP_201_CREATED,
)
async def publish_task(
    request: Request,
    body: PublicationChargeRequest,
    principal: Principal = Depends(require_org_member(*ORG_MANAGER_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Slot and fee are taken together before the task goes public.
    result = await charge_publication(db, principal.org_id, body.task_id)
    error_code = None
    if not result.ok:
        error_code = "USAGE_LIMIT_REACHED" if result.reason == "limit_reached" else "INSUFFICIENT_FUNDS"
    await record_event(
        session=db,
        org_id=principal.org_id,
        actor_type="user",
        actor_id=principal.actor_id,
        actor_role=principal.role,
        event_type="publication.charged" if result.ok else "publication.declined",
        outcome="success" if result.ok else "failure",
        resource_type="task",
        resource_id=body.task_id,
        request_id=get_request_id(request),
        metadata={"cost_kopecks": result.cost_kopecks, "reason": result.reason},
        error_code=error_code,
    )
    if error_code == "USAGE_LIMIT_REACHED":
        details = {"kind": "publications", "plan": result.plan, "limit": result.limit, "used": result.used}
        await send_billing_webhook_event(
            event_type="usage.limit_reached",
            payload={"org_id": principal.org_id, **details},
        )
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"code": error_code, "message": result.error, **details},
        )
    if error_code is not None:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "code": error_code,
                "message": result.error,
                "cost_kopecks": result.cost_kopecks,
                "available_kopecks": result.available_kopecks,
            },
        )
    payload = PublicationChargeResponse(
        task_id=body.task_id,
        cost_kopecks=result.cost_kopecks,
        used=result.used,
        limit=result.limit,
        balance_kopecks=result.balance_kopecks,
        transaction_id=result.transaction_id,
    )
    return success_response(request=request, data=payload)
