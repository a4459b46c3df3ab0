from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import math

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.core.errors import PackageNotAvailableError
from fieldbill.domain.ids import new_id, parse_id
from fieldbill.domain.models import StoragePackage
from fieldbill.domain.money import prorate_kopecks
from fieldbill.domain.periods import ensure_utc, hours_in_utc_month, month_bounds, utc_now
from fieldbill.persistence.db import unit_of_work
from fieldbill.services.org_wallet import debit_org_wallet
from fieldbill.services.plans import load_plan_for_org


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PackagePurchaseResult:
    ok: bool
    reason: str | None = None
    charged_kopecks: int = 0
    packages: list[StoragePackage] = field(default_factory=list)


async def list_active_packages(
    session: AsyncSession,
    org_id: str,
    at: datetime | None = None,
) -> list[StoragePackage]:
    # Packages count toward the allowance only inside their [start, end) window.
    moment = ensure_utc(at or utc_now())
    rows = await session.execute(
        select(StoragePackage).where(
            StoragePackage.org_id == org_id,
            StoragePackage.status == "active",
            StoragePackage.period_start <= moment,
            StoragePackage.period_end > moment,
        )
    )
    return list(rows.scalars().all())


def prorated_package_price(price_kopecks_monthly: int, at: datetime) -> int:
    # Charge only for the hours left in the month, at least one.
    moment = ensure_utc(at)
    _, month_end = month_bounds(moment)
    hours_total = hours_in_utc_month(moment)
    hours_left = max(1, math.ceil((month_end - moment).total_seconds() / 3600))
    return prorate_kopecks(price_kopecks_monthly, hours_left, hours_total)


async def purchase_storage_package(
    session: AsyncSession,
    org_id: object,
    *,
    quantity: int = 1,
    at: datetime | None = None,
    commit: bool = True,
) -> PackagePurchaseResult:
    """Buy storage packages valid until the end of the current month.

    The prorated price is debited from the organization wallet and the
    packages are inserted in the same transaction. Insufficient funds is
    returned as ``reason="insufficient_funds"``.
    """
    org_key = parse_id(org_id, label="organization id")
    moment = ensure_utc(at or utc_now())
    quantity = max(1, int(quantity))

    async with unit_of_work(session, commit=commit):
        resolved = await load_plan_for_org(session, org_key)
        package_gb = resolved.tier.storage_package_gb or 0
        package_price = resolved.tier.storage_package_kopecks_monthly or 0
        if package_gb <= 0 or package_price <= 0:
            raise PackageNotAvailableError(f"plan {resolved.plan} has no storage package")

        start, end = month_bounds(moment)
        total = prorated_package_price(package_price, moment) * quantity
        debit = await debit_org_wallet(
            session,
            org_key,
            total,
            source="storage_package",
            meta={
                "package_gb": package_gb,
                "price_kopecks_monthly": package_price,
                "quantity": quantity,
                "period_start": start.isoformat(),
                "period_end": end.isoformat(),
            },
            commit=False,
        )
        if not debit.ok:
            return PackagePurchaseResult(ok=False, reason="insufficient_funds")

        packages = [
            StoragePackage(
                id=new_id(),
                org_id=org_key,
                package_gb=package_gb,
                price_kopecks_monthly=package_price,
                period_start=start,
                period_end=end,
                status="active",
                auto_renew=True,
            )
            for _ in range(quantity)
        ]
        session.add_all(packages)

    logger.info(
        "storage_package_purchased org_id=%s quantity=%s charged_kopecks=%s",
        org_key,
        quantity,
        total,
    )
    return PackagePurchaseResult(ok=True, charged_kopecks=total, packages=packages)
