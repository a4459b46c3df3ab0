from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.core.config import get_settings
from fieldbill.core.errors import GraceAlreadyUsedError, SubscriptionNotFoundError
from fieldbill.domain.ids import new_id, parse_id
from fieldbill.domain.models import Subscription
from fieldbill.domain.periods import ensure_utc, month_bounds, utc_now
from fieldbill.persistence.db import unit_of_work
from fieldbill.services.org_wallet import debit_org_wallet
from fieldbill.services.plans import get_plan_config, normalize_plan_code


logger = logging.getLogger(__name__)

SUBSCRIPTION_STATUSES = ("active", "trial", "suspended", "past_due", "inactive")

UNPAID_REASON = "Недостаточно средств для оплаты подписки"
GRACE_REASON = "Используется grace-период"
NOT_CONFIGURED_REASON = "Подписка не настроена"

_EDITABLE_FIELDS = (
    "seats",
    "projects_limit",
    "public_tasks_limit",
    "tasks_weekly_limit",
    "storage_limit_gb",
    "period_start",
    "period_end",
    "note",
)


@dataclass(frozen=True)
class SubscriptionAccess:
    ok: bool
    plan: str
    price_kopecks_monthly: int
    status: str
    grace_until: datetime | None
    grace_available: bool
    read_only: bool
    reason: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None


@dataclass(frozen=True)
class SubscriptionChargeResult:
    ok: bool
    status: str
    charged_kopecks: int
    period_start: datetime
    period_end: datetime
    skipped: bool = False


def _as_utc(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


def _trial_active(subscription: Subscription, now: datetime) -> bool:
    end = _as_utc(subscription.period_end)
    return subscription.status == "trial" and end is not None and end > now


def _grace_active(subscription: Subscription, now: datetime) -> bool:
    grace = _as_utc(subscription.grace_until)
    return grace is not None and grace > now


def _grace_available(subscription: Subscription | None, now: datetime) -> bool:
    # Grace can be started once per calendar month.
    if subscription is None:
        return True
    used = _as_utc(subscription.grace_used_at)
    if used is None:
        return True
    start, end = month_bounds(now)
    return used < start or used >= end


async def get_subscription(session: AsyncSession, org_id: str) -> Subscription | None:
    stmt = (
        select(Subscription)
        .where(Subscription.org_id == org_id)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


def _access(
    subscription: Subscription | None,
    *,
    ok: bool,
    plan: str,
    price: int,
    status: str,
    now: datetime,
    reason: str | None = None,
) -> SubscriptionAccess:
    return SubscriptionAccess(
        ok=ok,
        plan=plan,
        price_kopecks_monthly=price,
        status=status,
        grace_until=_as_utc(subscription.grace_until) if subscription is not None else None,
        grace_available=_grace_available(subscription, now),
        read_only=not ok,
        reason=reason,
        period_start=_as_utc(subscription.period_start) if subscription is not None else None,
        period_end=_as_utc(subscription.period_end) if subscription is not None else None,
    )


async def ensure_subscription_access(
    session: AsyncSession,
    org_id: object,
    now: datetime | None = None,
) -> SubscriptionAccess:
    # Evaluate read access from the stored subscription without charging.
    org_key = parse_id(org_id, label="organization id")
    moment = ensure_utc(now or utc_now())
    subscription = await get_subscription(session, org_key)
    plan = normalize_plan_code(subscription.plan if subscription is not None else None)
    price = (await get_plan_config(session, plan)).price_kopecks_monthly
    status = subscription.status if subscription is not None else "inactive"

    def build(ok: bool, status_value: str, reason: str | None = None) -> SubscriptionAccess:
        return _access(subscription, ok=ok, plan=plan, price=price, status=status_value, now=moment, reason=reason)

    if price <= 0:
        return build(True, "active")
    if subscription is None:
        return build(False, status, UNPAID_REASON)
    if _trial_active(subscription, moment):
        return build(True, "trial")
    period_end = _as_utc(subscription.period_end)
    if status == "active" and (period_end is None or period_end > moment):
        return build(True, status)
    if _grace_active(subscription, moment):
        return build(True, status, GRACE_REASON)
    return build(False, status, UNPAID_REASON)


async def ensure_subscription_write_access(
    session: AsyncSession,
    org_id: object,
    now: datetime | None = None,
) -> SubscriptionAccess:
    # Like ensure_subscription_access, but renews an expired active period by charging the wallet.
    org_key = parse_id(org_id, label="organization id")
    moment = ensure_utc(now or utc_now())
    subscription = await get_subscription(session, org_key)
    if subscription is None:
        plan_tier = await get_plan_config(session, "basic")
        return _access(
            None,
            ok=False,
            plan="basic",
            price=plan_tier.price_kopecks_monthly,
            status="inactive",
            now=moment,
            reason=NOT_CONFIGURED_REASON,
        )
    period_end = _as_utc(subscription.period_end)
    if subscription.status == "active" and period_end is not None and period_end <= moment:
        await charge_subscription_period(session, org_key, moment)
    return await ensure_subscription_access(session, org_key, moment)


async def activate_grace_period(
    session: AsyncSession,
    org_id: object,
    now: datetime | None = None,
    *,
    commit: bool = True,
) -> Subscription:
    # Open a grace window once per calendar month; an active window is returned as-is.
    org_key = parse_id(org_id, label="organization id")
    moment = ensure_utc(now or utc_now())
    async with unit_of_work(session, commit=commit):
        subscription = await get_subscription(session, org_key)
        if subscription is None:
            raise SubscriptionNotFoundError(f"no subscription for org_id={org_key}")
        if _grace_active(subscription, moment):
            return subscription
        if not _grace_available(subscription, moment):
            raise GraceAlreadyUsedError(f"grace already used this month org_id={org_key}")
        subscription.grace_until = moment + timedelta(hours=get_settings().subscription_grace_hours)
        subscription.grace_used_at = moment
    logger.info("subscription_grace_activated org_id=%s grace_until=%s", org_key, subscription.grace_until)
    return subscription


async def charge_subscription_period(
    session: AsyncSession,
    org_id: object,
    now: datetime | None = None,
    *,
    commit: bool = True,
) -> SubscriptionChargeResult:
    """Charge the monthly plan price and move the subscription to this month.

    A paid period is charged once: when the subscription is already active
    for the current month the call is a no-op. Insufficient funds leaves the
    subscription ``past_due`` for the current month.
    """
    org_key = parse_id(org_id, label="organization id")
    moment = ensure_utc(now or utc_now())
    start, end = month_bounds(moment)
    async with unit_of_work(session, commit=commit):
        subscription = await get_subscription(session, org_key)
        if subscription is None:
            raise SubscriptionNotFoundError(f"no subscription for org_id={org_key}")
        plan = normalize_plan_code(subscription.plan)
        price = (await get_plan_config(session, plan)).price_kopecks_monthly

        if subscription.status == "active" and _as_utc(subscription.period_start) == start:
            return SubscriptionChargeResult(
                ok=True, status="active", charged_kopecks=0, period_start=start, period_end=end, skipped=True
            )

        subscription.period_start = start
        subscription.period_end = end
        if price <= 0:
            subscription.status = "active"
            charged = 0
        else:
            debit = await debit_org_wallet(
                session,
                org_key,
                price,
                source="subscription",
                meta={"plan": plan, "period_start": start.isoformat(), "period_end": end.isoformat()},
                commit=False,
            )
            if debit.ok:
                subscription.status = "active"
                subscription.grace_until = None
                charged = price
            else:
                subscription.status = "past_due"
                charged = 0
        status = subscription.status

    if status == "past_due":
        logger.warning("subscription_past_due org_id=%s plan=%s price_kopecks=%s", org_key, plan, price)
    else:
        logger.info("subscription_charged org_id=%s plan=%s charged_kopecks=%s", org_key, plan, charged)
    return SubscriptionChargeResult(
        ok=status == "active",
        status=status,
        charged_kopecks=charged,
        period_start=start,
        period_end=end,
    )


async def list_due_subscription_orgs(session: AsyncSession, now: datetime | None = None) -> list[str]:
    # Active periods that ended, and unpaid subscriptions not yet retried this month.
    moment = ensure_utc(now or utc_now())
    start, _ = month_bounds(moment)
    rows = await session.execute(
        select(Subscription.org_id).where(
            or_(
                and_(Subscription.status == "active", Subscription.period_end <= moment),
                and_(
                    Subscription.status == "past_due",
                    or_(Subscription.period_start.is_(None), Subscription.period_start < start),
                ),
            )
        )
    )
    return list(rows.scalars().all())


async def upsert_subscription(
    session: AsyncSession,
    org_id: object,
    *,
    plan: str | None = None,
    status: str | None = None,
    values: dict[str, Any] | None = None,
    actor_id: str | None = None,
    commit: bool = True,
) -> Subscription:
    # Admin edit of plan, status and per-organization overrides.
    org_key = parse_id(org_id, label="organization id")
    if plan is not None:
        await get_plan_config(session, plan)
    if status is not None and status not in SUBSCRIPTION_STATUSES:
        raise ValueError(f"unknown subscription status: {status}")
    async with unit_of_work(session, commit=commit):
        subscription = await get_subscription(session, org_key)
        if subscription is None:
            subscription = Subscription(id=new_id(), org_id=org_key, plan=plan or "basic", status=status or "active")
            try:
                async with session.begin_nested():
                    session.add(subscription)
            except IntegrityError:
                subscription = await get_subscription(session, org_key)
                if subscription is None:
                    raise
        if plan is not None:
            subscription.plan = plan
        if status is not None:
            subscription.status = status
        for key, value in (values or {}).items():
            if key in _EDITABLE_FIELDS:
                setattr(subscription, key, value)
        subscription.updated_by = actor_id
    logger.info("subscription_updated org_id=%s plan=%s status=%s", org_key, subscription.plan, subscription.status)
    return subscription
