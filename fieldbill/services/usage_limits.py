from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.core.errors import InvalidIdentifierError
from fieldbill.domain.ids import new_id, parse_id
from fieldbill.domain.models import BillingUsage
from fieldbill.domain.periods import (
    USAGE_KINDS,
    BillingPeriod,
    MonthlyPeriod,
    WeeklyPeriod,
    billing_period,
    period_for_kind,
    weekly_period,
)
from fieldbill.persistence.db import unit_of_work
from fieldbill.services.plans import DEFAULT_PLAN, PlanLimits, load_plan_for_org


logger = logging.getLogger(__name__)

INVALID_ORG_REASON = "Некорректный идентификатор организации"

_USAGE_COLUMNS = {
    "projects": "projects_used",
    "publications": "publications_used",
    "tasks": "tasks_used",
}


@dataclass(frozen=True)
class LimitCheckResult:
    # Outcome of a slot reservation; limit None means unlimited.
    ok: bool
    limit: int | None
    used: int
    plan: str
    reason: str | None = None


@dataclass(frozen=True)
class UsageOverview:
    plan: str
    limits: PlanLimits
    month: str
    week: str
    projects_used: int
    publications_used: int
    tasks_used: int


def limit_reached_reason(used: int, limit: int | None) -> str:
    if limit is None:
        return "Лимит исчерпан"
    return f"Лимит исчерпан: {used}/{limit}"


def _exceeded(limit: int | None, used: int, plan: str, reason: str) -> LimitCheckResult:
    return LimitCheckResult(ok=False, limit=limit, used=used, plan=plan, reason=reason)


def resolve_period_key(kind: str, period: BillingPeriod | str | None, now: datetime | None) -> str:
    # Typed periods must match the kind's bucketing; raw keys are trusted as-is.
    if period is None:
        return period_for_kind(kind, now).key
    if isinstance(period, str):
        return period
    expected = WeeklyPeriod if kind == "tasks" else MonthlyPeriod
    if not isinstance(period, expected):
        raise ValueError(f"{kind} counters use {expected.__name__} buckets")
    return period.key


async def consume_usage_slot(
    session: AsyncSession,
    org_id: object,
    kind: str,
    *,
    period: BillingPeriod | str | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> LimitCheckResult:
    """Reserve one unit of ``kind`` for the organization in the current period.

    Limit exhaustion and malformed organization ids come back as
    ``ok=False`` results. The increment itself is conditioned on
    ``used < limit`` in the database, so concurrent callers never push a
    counter past its limit. Pass ``commit=False`` to keep the reservation in
    the caller's transaction alongside the resource it pays for.
    """
    if kind not in USAGE_KINDS:
        raise ValueError(f"unknown usage kind: {kind}")
    try:
        org_key = parse_id(org_id, label="organization id")
    except InvalidIdentifierError:
        return _exceeded(None, 0, DEFAULT_PLAN, INVALID_ORG_REASON)

    column = _USAGE_COLUMNS[kind]
    period_key = resolve_period_key(kind, period, now)

    async with unit_of_work(session, commit=commit):
        resolved = await load_plan_for_org(session, org_key)
        limit = resolved.limits.for_kind(kind)

        # Fast path: refuse without writing when the counter is already full.
        existing = await _read_counter(session, org_key, period_key)
        current = _used(existing, column)
        if limit is not None and current >= limit:
            return _exceeded(limit, current, resolved.plan, limit_reached_reason(current, limit))

        if existing is not None:
            used = await _guarded_increment(session, existing.id, column, limit)
        else:
            used = await _insert_or_increment(session, org_key, period_key, column, limit)

        if used is None:
            # Lost the race to a concurrent reservation; report the freshest value.
            latest = _used(await _read_counter(session, org_key, period_key), column)
            logger.info(
                "usage_limit_race_lost org_id=%s kind=%s period=%s used=%s limit=%s",
                org_key,
                kind,
                period_key,
                latest,
                limit,
            )
            return _exceeded(limit, latest, resolved.plan, limit_reached_reason(latest, limit))

    return LimitCheckResult(ok=True, limit=limit, used=used, plan=resolved.plan)


async def get_usage_snapshot(
    session: AsyncSession,
    org_id: object,
    period: BillingPeriod | str | None = None,
) -> BillingUsage | None:
    # Read a counter row without incrementing; defaults to the current month.
    org_key = parse_id(org_id, label="organization id")
    if period is None:
        period_key = billing_period().key
    elif isinstance(period, str):
        period_key = period
    else:
        period_key = period.key
    return await _read_counter(session, org_key, period_key)


async def usage_overview(
    session: AsyncSession,
    org_id: object,
    *,
    now: datetime | None = None,
) -> UsageOverview:
    # Combine the plan limits with this month's and this week's counters.
    org_key = parse_id(org_id, label="organization id")
    resolved = await load_plan_for_org(session, org_key)
    month = billing_period(now).key
    week = weekly_period(now).key
    monthly = await _read_counter(session, org_key, month)
    weekly = await _read_counter(session, org_key, week)
    return UsageOverview(
        plan=resolved.plan,
        limits=resolved.limits,
        month=month,
        week=week,
        projects_used=_used(monthly, "projects_used"),
        publications_used=_used(monthly, "publications_used"),
        tasks_used=_used(weekly, "tasks_used"),
    )


def _used(counter: BillingUsage | None, column: str) -> int:
    if counter is None:
        return 0
    return int(getattr(counter, column) or 0)


async def _read_counter(
    session: AsyncSession,
    org_id: str,
    period_key: str,
) -> BillingUsage | None:
    # Always reload; guarded bulk increments bypass the identity map.
    stmt = (
        select(BillingUsage)
        .where(BillingUsage.org_id == org_id, BillingUsage.period == period_key)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def _guarded_increment(
    session: AsyncSession,
    counter_id: str,
    column: str,
    limit: int | None,
) -> int | None:
    # Compare-and-increment in one statement; None when the guard did not match.
    field = getattr(BillingUsage, column)
    stmt = update(BillingUsage).where(BillingUsage.id == counter_id)
    if limit is not None:
        stmt = stmt.where(field < limit)
    stmt = (
        stmt.values({column: field + 1})
        .returning(field)
        .execution_options(synchronize_session=False)
    )
    value = (await session.execute(stmt)).scalar_one_or_none()
    return int(value) if value is not None else None


async def _insert_or_increment(
    session: AsyncSession,
    org_id: str,
    period_key: str,
    column: str,
    limit: int | None,
) -> int | None:
    # First writer creates the row with the slot already taken.
    counter = BillingUsage(
        id=new_id(),
        org_id=org_id,
        period=period_key,
        projects_used=0,
        publications_used=0,
        tasks_used=0,
    )
    setattr(counter, column, 1)
    try:
        async with session.begin_nested():
            session.add(counter)
    except IntegrityError:
        # A concurrent first writer created the row; retry as a guarded increment.
        existing = await _read_counter(session, org_id, period_key)
        if existing is None:
            raise
        if limit is not None and _used(existing, column) >= limit:
            return None
        return await _guarded_increment(session, existing.id, column, limit)
    return 1
