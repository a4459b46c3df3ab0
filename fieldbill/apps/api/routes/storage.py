from __future__ import annotations

from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.apps.api.deps import (
    ORG_ADMIN_ROLES,
    ORG_MANAGER_ROLES,
    Principal,
    get_db,
    require_org_member,
)
from fieldbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fieldbill.apps.api.response import SuccessEnvelope, get_request_id, success_response
from fieldbill.domain.models import StoragePackage
from fieldbill.domain.periods import ensure_utc
from fieldbill.services.audit import record_event
from fieldbill.services.storage_packages import list_active_packages, purchase_storage_package
from fieldbill.services.storage_usage import (
    StorageAccess,
    adjust_storage_bytes,
    assert_writable_storage,
    get_storage_access,
    record_storage_bytes,
)


router = APIRouter(prefix="/orgs/{org_id}/storage", tags=["storage"], responses=DEFAULT_ERROR_RESPONSES)

_WRITER_ROLES = ORG_MANAGER_ROLES + ("executor",)


class StorageAccessResponse(BaseModel):
    org_id: str
    bytes_used: int
    included_gb: int | None
    package_gb: int
    overage_gb: int
    hourly_charge_kopecks: int
    wallet_balance_kopecks: int
    read_only: bool
    read_only_reason: str | None = None


class StorageWriteRequest(BaseModel):
    bytes_written: int = Field(ge=0)


class StorageAdjustRequest(BaseModel):
    bytes_delta: int


class StorageBytesResponse(BaseModel):
    org_id: str
    bytes_used: int


class StoragePackageResponse(BaseModel):
    id: str
    package_gb: int
    price_kopecks_monthly: int
    period_start: datetime
    period_end: datetime
    status: str
    auto_renew: bool


class PackagePurchaseRequest(BaseModel):
    quantity: int = Field(default=1, ge=1, le=100)


class PackagePurchaseResponse(BaseModel):
    charged_kopecks: int
    packages: list[StoragePackageResponse]


def _access_payload(org_id: str, access: StorageAccess) -> StorageAccessResponse:
    return StorageAccessResponse(org_id=org_id, **asdict(access))


def _package_payload(row: StoragePackage) -> StoragePackageResponse:
    # SQLite hands back naive datetimes; normalize to UTC for clients.
    return StoragePackageResponse(
        id=row.id,
        package_gb=int(row.package_gb),
        price_kopecks_monthly=int(row.price_kopecks_monthly),
        period_start=ensure_utc(row.period_start),
        period_end=ensure_utc(row.period_end),
        status=row.status,
        auto_renew=bool(row.auto_renew),
    )


@router.get("", response_model=SuccessEnvelope[StorageAccessResponse])
async def get_storage(
    request: Request,
    principal: Principal = Depends(require_org_member()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    access = await get_storage_access(db, principal.org_id)
    return success_response(request=request, data=_access_payload(principal.org_id, access))


@router.post("/writes", response_model=SuccessEnvelope[StorageAccessResponse])
async def record_write(
    request: Request,
    body: StorageWriteRequest,
    principal: Principal = Depends(require_org_member(*_WRITER_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Refuse uploads for read-only organizations, otherwise count the stored bytes.
    check = await assert_writable_storage(db, principal.org_id)
    if not check.ok:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "code": "STORAGE_READ_ONLY",
                "message": check.error,
                "read_only": True,
                "storage": _access_payload(principal.org_id, check.access).model_dump(),
            },
        )
    await record_storage_bytes(db, principal.org_id, body.bytes_written)
    access = await get_storage_access(db, principal.org_id)
    return success_response(request=request, data=_access_payload(principal.org_id, access))


@router.post("/adjust", response_model=SuccessEnvelope[StorageBytesResponse])
async def adjust_storage(
    request: Request,
    body: StorageAdjustRequest,
    principal: Principal = Depends(require_org_member(*ORG_ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Signed correction after deletes or failed uploads; never below zero.
    bytes_used = await adjust_storage_bytes(db, principal.org_id, body.bytes_delta)
    await record_event(
        session=db,
        org_id=principal.org_id,
        actor_type="user",
        actor_id=principal.actor_id,
        actor_role=principal.role,
        event_type="storage.bytes_adjusted",
        outcome="success",
        resource_type="storage",
        resource_id=principal.org_id,
        request_id=get_request_id(request),
        metadata={"bytes_delta": body.bytes_delta, "bytes_used": bytes_used},
    )
    payload = StorageBytesResponse(org_id=principal.org_id, bytes_used=bytes_used)
    return success_response(request=request, data=payload)


@router.get("/packages", response_model=SuccessEnvelope[list[StoragePackageResponse]])
async def list_packages(
    request: Request,
    principal: Principal = Depends(require_org_member()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_active_packages(db, principal.org_id)
    return success_response(request=request, data=[_package_payload(row) for row in rows])


@router.post(
    "/packages",
    response_model=SuccessEnvelope[PackagePurchaseResponse],
    status_code=status.HTTP_201_CREATED,
)
async def buy_packages(
    request: Request,
    body: PackagePurchaseRequest,
    principal: Principal = Depends(require_org_member(*ORG_ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Prorated to the end of the month and paid from the organization wallet.
    result = await purchase_storage_package(db, principal.org_id, quantity=body.quantity)
    await record_event(
        session=db,
        org_id=principal.org_id,
        actor_type="user",
        actor_id=principal.actor_id,
        actor_role=principal.role,
        event_type="storage.package_purchased",
        outcome="success" if result.ok else "failure",
        resource_type="storage_package",
        request_id=get_request_id(request),
        metadata={"quantity": body.quantity, "charged_kopecks": result.charged_kopecks},
        error_code=None if result.ok else "INSUFFICIENT_FUNDS",
    )
    if not result.ok:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"code": "INSUFFICIENT_FUNDS", "message": "Недостаточно средств на балансе организации"},
        )
    payload = PackagePurchaseResponse(
        charged_kopecks=result.charged_kopecks,
        packages=[_package_payload(row) for row in result.packages],
    )
    return success_response(request=request, data=payload)
