from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Mapping

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.core.config import get_settings
from fieldbill.domain.ids import new_id, parse_id
from fieldbill.domain.models import OrgWallet, StorageBilling, StorageUsage
from fieldbill.domain.money import prorate_kopecks, rub_to_kopecks
from fieldbill.domain.periods import billing_period, ensure_utc, hour_key, hours_in_utc_month, utc_now
from fieldbill.persistence.db import SessionLocal, unit_of_work
from fieldbill.services.billing_webhook import send_billing_webhook_event
from fieldbill.services.org_wallet import debit_org_wallet
from fieldbill.services.plans import load_plan_for_org, normalize_limit
from fieldbill.services.storage_packages import list_active_packages


logger = logging.getLogger(__name__)

GB_BYTES = 1024 * 1024 * 1024

READ_ONLY_FALLBACK_ERROR = "Хранилище доступно только для чтения"


@dataclass(frozen=True)
class StorageAllowance:
    # included_gb None means the plan has no storage cap.
    included_gb: int | None
    package_gb: int
    overage_rate_kopecks: int
    plan: str

    @property
    def total_gb(self) -> int | None:
        if self.included_gb is None:
            return None
        return self.included_gb + self.package_gb


@dataclass(frozen=True)
class StorageAccess:
    bytes_used: int
    included_gb: int | None
    package_gb: int
    overage_gb: int
    hourly_charge_kopecks: int
    wallet_balance_kopecks: int
    read_only: bool
    read_only_reason: str | None = None


@dataclass(frozen=True)
class StorageWriteCheck:
    ok: bool
    access: StorageAccess
    error: str | None = None


@dataclass(frozen=True)
class HourlyChargeResult:
    ok: bool
    skipped: bool
    reason: str | None = None
    hour_key: str | None = None
    amount_kopecks: int = 0
    overage_gb: int = 0


@dataclass(frozen=True)
class OrgChargeOutcome:
    org_id: str
    result: HourlyChargeResult


class _AlreadyCharged(Exception):
    # Raised to roll back a debit when another scheduler wrote the ledger row first.
    pass


def compute_overage_gb(bytes_used: int, included_gb: int | None) -> int:
    # Whole GB above the allowance, rounded up; unlimited plans never overage.
    if included_gb is None:
        return 0
    over_bytes = max(0, int(bytes_used) - max(0, int(included_gb)) * GB_BYTES)
    if over_bytes == 0:
        return 0
    return -(-over_bytes // GB_BYTES)


def compute_hourly_charge_kopecks(overage_gb: int, monthly_rate_kopecks: int, at: datetime) -> int:
    """Return the charge for the UTC hour containing ``at``.

    The monthly amount ``overage_gb * monthly_rate_kopecks`` is spread over
    the real number of hours in the UTC month. Each hour gets the difference
    of the rounded cumulative totals, so the hourly amounts differ by at most
    one kopeck and add up to exactly the monthly amount.
    """
    if overage_gb <= 0 or monthly_rate_kopecks <= 0:
        return 0
    moment = ensure_utc(at)
    hours = hours_in_utc_month(moment)
    hour_index = (moment.day - 1) * 24 + moment.hour
    monthly = overage_gb * monthly_rate_kopecks
    return prorate_kopecks(monthly, hour_index + 1, hours) - prorate_kopecks(monthly, hour_index, hours)


async def load_storage_allowance(session: AsyncSession, org_id: str, at: datetime) -> StorageAllowance:
    # Subscription storage limit, else plan allowance, plus active packages.
    resolved = await load_plan_for_org(session, org_id)
    included: int | None = resolved.tier.storage_included_gb
    if resolved.subscription is not None:
        override = normalize_limit(resolved.subscription.storage_limit_gb)
        if override is not None:
            included = override
    packages = await list_active_packages(session, org_id, at)
    rate = resolved.tier.storage_overage_kopecks_per_gb_month
    if rate is None:
        rate = rub_to_kopecks(get_settings().storage_overage_rub_per_gb_month)
    return StorageAllowance(
        included_gb=included,
        package_gb=sum(int(pkg.package_gb or 0) for pkg in packages),
        overage_rate_kopecks=int(rate),
        plan=resolved.plan,
    )


async def get_storage_usage(session: AsyncSession, org_id: str) -> StorageUsage | None:
    # Always reload; byte counters are changed by bulk updates.
    stmt = (
        select(StorageUsage)
        .where(StorageUsage.org_id == org_id)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def ensure_storage_usage(session: AsyncSession, org_id: object) -> StorageUsage:
    # Create the zero row on first touch; the caller owns the transaction.
    org_key = parse_id(org_id, label="organization id")
    existing = await get_storage_usage(session, org_key)
    if existing is not None:
        return existing
    usage = StorageUsage(org_id=org_key, bytes_used=0, read_only=False)
    try:
        async with session.begin_nested():
            session.add(usage)
    except IntegrityError:
        existing = await get_storage_usage(session, org_key)
        if existing is None:
            raise
        return existing
    return usage


async def record_storage_bytes(
    session: AsyncSession,
    org_id: object,
    bytes_delta: int,
    *,
    commit: bool = True,
) -> int:
    # Uploads only ever add bytes; negative deltas count as zero.
    return await _add_bytes(session, org_id, max(0, int(bytes_delta)), commit=commit)


async def adjust_storage_bytes(
    session: AsyncSession,
    org_id: object,
    bytes_delta: int,
    *,
    commit: bool = True,
) -> int:
    # Signed correction; the stored value is clamped at zero in the same statement.
    return await _add_bytes(session, org_id, int(bytes_delta), commit=commit)


async def _add_bytes(session: AsyncSession, org_id: object, delta: int, *, commit: bool) -> int:
    org_key = parse_id(org_id, label="organization id")
    async with unit_of_work(session, commit=commit):
        value = await _update_bytes(session, org_key, delta)
        if value is None:
            await ensure_storage_usage(session, org_key)
            value = await _update_bytes(session, org_key, delta)
        if value is None:
            raise RuntimeError(f"storage usage row missing org_id={org_key}")
    return value


async def _update_bytes(session: AsyncSession, org_id: str, delta: int) -> int | None:
    new_value = StorageUsage.bytes_used + delta
    stmt = (
        update(StorageUsage)
        .where(StorageUsage.org_id == org_id)
        .values(bytes_used=case((new_value < 0, 0), else_=new_value))
        .returning(StorageUsage.bytes_used)
        .execution_options(synchronize_session=False)
    )
    value = (await session.execute(stmt)).scalar_one_or_none()
    return int(value) if value is not None else None


async def get_storage_access(
    session: AsyncSession,
    org_id: object,
    at: datetime | None = None,
) -> StorageAccess:
    """Snapshot an organization's storage position without writing.

    An organization is read-only when the stored flag is set by a failed
    hourly charge, or when it has overage and its wallet cannot cover one
    hourly charge right now.
    """
    org_key = parse_id(org_id, label="organization id")
    moment = ensure_utc(at or utc_now())
    usage = await get_storage_usage(session, org_key)
    allowance = await load_storage_allowance(session, org_key, moment)
    wallet_balance = (
        await session.execute(select(OrgWallet.balance_kopecks).where(OrgWallet.org_id == org_key))
    ).scalar_one_or_none()

    bytes_used = int(usage.bytes_used or 0) if usage is not None else 0
    overage_gb = compute_overage_gb(bytes_used, allowance.total_gb)
    hourly_charge = compute_hourly_charge_kopecks(overage_gb, allowance.overage_rate_kopecks, moment)
    balance = int(wallet_balance or 0)
    stored_read_only = bool(usage.read_only) if usage is not None else False
    # Any overage needs a funded wallet, even in hours that round to zero.
    unfunded = overage_gb > 0 and allowance.overage_rate_kopecks > 0 and balance < max(hourly_charge, 1)
    read_only = stored_read_only or unfunded
    reason = None
    if read_only:
        reason = (usage.read_only_reason if usage is not None else None) or get_settings().storage_read_only_reason
    return StorageAccess(
        bytes_used=bytes_used,
        included_gb=allowance.total_gb,
        package_gb=allowance.package_gb,
        overage_gb=overage_gb,
        hourly_charge_kopecks=hourly_charge,
        wallet_balance_kopecks=balance,
        read_only=read_only,
        read_only_reason=reason,
    )


async def assert_writable_storage(
    session: AsyncSession,
    org_id: object,
    *,
    at: datetime | None = None,
    commit: bool = True,
) -> StorageWriteCheck:
    # Gate uploads; a failing check persists the read-only flag with its reason.
    org_key = parse_id(org_id, label="organization id")
    async with unit_of_work(session, commit=commit):
        access = await get_storage_access(session, org_key, at)
        if not access.read_only:
            return StorageWriteCheck(ok=True, access=access)
        await set_read_only_state(session, org_key, True, access.read_only_reason, commit=False)
    return StorageWriteCheck(
        ok=False,
        access=access,
        error=access.read_only_reason or READ_ONLY_FALLBACK_ERROR,
    )


async def set_read_only_state(
    session: AsyncSession,
    org_id: object,
    read_only: bool,
    reason: str | None = None,
    *,
    commit: bool = True,
) -> bool:
    # Returns True when the flag actually flipped to read-only.
    org_key = parse_id(org_id, label="organization id")
    async with unit_of_work(session, commit=commit):
        usage = await ensure_storage_usage(session, org_key)
        was_read_only = bool(usage.read_only)
        usage.read_only = read_only
        usage.read_only_reason = reason if read_only else None
    if read_only and not was_read_only:
        logger.warning("storage_read_only_enabled org_id=%s reason=%s", org_key, reason)
    elif was_read_only and not read_only:
        logger.info("storage_read_only_cleared org_id=%s", org_key)
    return read_only and not was_read_only


async def charge_hourly_overage_for_org(
    session: AsyncSession,
    org_id: object,
    now: datetime | None = None,
) -> HourlyChargeResult:
    """Charge one hour of storage overage, at most once per organization and hour.

    The wallet debit, the ledger row and clearing the read-only flag commit
    together. When the wallet cannot pay, the organization is flipped to
    read-only and no ledger row is written.
    """
    org_key = parse_id(org_id, label="organization id")
    moment = ensure_utc(now or utc_now())
    key = hour_key(moment)
    period = billing_period(moment).key
    settings = get_settings()

    already = (
        await session.execute(
            select(StorageBilling.id).where(StorageBilling.org_id == org_key, StorageBilling.hour_key == key)
        )
    ).scalar_one_or_none()
    if already is not None:
        await session.commit()
        return HourlyChargeResult(ok=True, skipped=True, reason="already_charged", hour_key=key)

    flipped = False
    try:
        async with unit_of_work(session):
            usage = await ensure_storage_usage(session, org_key)
            allowance = await load_storage_allowance(session, org_key, moment)
            bytes_used = int(usage.bytes_used or 0)
            overage_gb = compute_overage_gb(bytes_used, allowance.total_gb)
            amount = compute_hourly_charge_kopecks(overage_gb, allowance.overage_rate_kopecks, moment)

            if overage_gb <= 0:
                await set_read_only_state(session, org_key, False, commit=False)
                result = HourlyChargeResult(
                    ok=True, skipped=True, reason="no_overage", hour_key=key, overage_gb=overage_gb
                )
            elif amount <= 0:
                # Low rates leave some hours at zero after rounding; the read-only flag is left as is.
                result = HourlyChargeResult(
                    ok=True, skipped=True, reason="zero_amount_hour", hour_key=key, overage_gb=overage_gb
                )
            else:
                debit = await debit_org_wallet(
                    session,
                    org_key,
                    amount,
                    source="storage_overage",
                    meta={
                        "period": period,
                        "hour_key": key,
                        "overage_gb": overage_gb,
                        "bytes_used": bytes_used,
                        "included_gb": allowance.total_gb,
                    },
                    commit=False,
                )
                if not debit.ok:
                    flipped = await set_read_only_state(
                        session, org_key, True, settings.storage_read_only_reason, commit=False
                    )
                    result = HourlyChargeResult(
                        ok=False,
                        skipped=True,
                        reason="insufficient_funds",
                        hour_key=key,
                        amount_kopecks=amount,
                        overage_gb=overage_gb,
                    )
                else:
                    try:
                        async with session.begin_nested():
                            session.add(
                                StorageBilling(
                                    id=new_id(),
                                    org_id=org_key,
                                    period=period,
                                    hour_key=key,
                                    bytes_snapshot=bytes_used,
                                    gb_billed=overage_gb,
                                    amount_kopecks=amount,
                                    charged_at=moment,
                                )
                            )
                    except IntegrityError as exc:
                        raise _AlreadyCharged() from exc
                    await set_read_only_state(session, org_key, False, commit=False)
                    result = HourlyChargeResult(
                        ok=True,
                        skipped=False,
                        hour_key=key,
                        amount_kopecks=amount,
                        overage_gb=overage_gb,
                    )
    except _AlreadyCharged:
        logger.info("storage_overage_already_charged org_id=%s hour_key=%s", org_key, key)
        return HourlyChargeResult(ok=True, skipped=True, reason="already_charged", hour_key=key)

    if not result.skipped:
        logger.info(
            "storage_overage_charged org_id=%s hour_key=%s overage_gb=%s amount_kopecks=%s",
            org_key,
            key,
            result.overage_gb,
            result.amount_kopecks,
        )
        await send_billing_webhook_event(
            event_type="storage.overage_charged",
            payload={
                "org_id": org_key,
                "hour_key": key,
                "overage_gb": result.overage_gb,
                "amount_kopecks": result.amount_kopecks,
            },
        )
    if flipped:
        await send_billing_webhook_event(
            event_type="storage.read_only_enabled",
            payload={
                "org_id": org_key,
                "hour_key": key,
                "overage_gb": result.overage_gb,
                "hourly_charge_kopecks": result.amount_kopecks,
                "reason": settings.storage_read_only_reason,
            },
        )
    return result


async def charge_hourly_overage(now: datetime | None = None) -> list[OrgChargeOutcome]:
    # Charge every tracked organization, each in its own session and transaction.
    moment = ensure_utc(now or utc_now())
    async with SessionLocal() as session:
        org_ids = list((await session.execute(select(StorageUsage.org_id))).scalars().all())
        await session.commit()

    outcomes: list[OrgChargeOutcome] = []
    for org_id in org_ids:
        try:
            async with SessionLocal() as session:
                result = await charge_hourly_overage_for_org(session, org_id, moment)
        except SQLAlchemyError:
            # Keep charging the remaining organizations; the failure is surfaced in logs and results.
            logger.exception("storage_overage_charge_failed org_id=%s", org_id)
            result = HourlyChargeResult(ok=False, skipped=True, reason="error", hour_key=hour_key(moment))
        outcomes.append(OrgChargeOutcome(org_id=org_id, result=result))
    charged = sum(1 for outcome in outcomes if not outcome.result.skipped)
    logger.info("storage_overage_run_complete processed=%s charged=%s", len(outcomes), charged)
    return outcomes


async def reconcile_storage_bytes(
    session: AsyncSession,
    totals: Mapping[str, int],
    *,
    commit: bool = True,
) -> int:
    # Overwrite byte counters with externally computed totals.
    updated = 0
    async with unit_of_work(session, commit=commit):
        for raw_org_id, total in totals.items():
            usage = await ensure_storage_usage(session, raw_org_id)
            usage.bytes_used = max(0, int(total))
            updated += 1
    logger.info("storage_usage_reconciled orgs=%s", updated)
    return updated
