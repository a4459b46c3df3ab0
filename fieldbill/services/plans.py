from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import math
from typing import Any, Mapping

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.core.errors import PlanNotFoundError
from fieldbill.domain.models import PlanConfig, Subscription
from fieldbill.persistence.db import unit_of_work


logger = logging.getLogger(__name__)

DEFAULT_PLAN = "basic"
PLAN_CODES: tuple[str, ...] = ("basic", "pro", "business", "enterprise")


@dataclass(frozen=True)
class PlanTier:
    # Normalized plan configuration; None limits are unlimited.
    plan: str
    title: str
    price_kopecks_monthly: int
    projects_limit: int | None
    seats_limit: int | None
    tasks_weekly_limit: int | None
    public_tasks_monthly_limit: int | None
    storage_included_gb: int | None
    # None falls back to the globally configured overage rate.
    storage_overage_kopecks_per_gb_month: int | None
    storage_package_gb: int | None
    storage_package_kopecks_monthly: int | None
    features: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class PlanLimits:
    projects: int | None
    seats: int | None
    publications: int | None
    tasks_weekly: int | None

    def for_kind(self, kind: str) -> int | None:
        # Map a usage kind onto the limit that throttles it.
        if kind == "projects":
            return self.projects
        if kind == "publications":
            return self.publications
        if kind == "tasks":
            return self.tasks_weekly
        raise ValueError(f"unknown usage kind: {kind}")


@dataclass(frozen=True)
class ResolvedPlan:
    plan: str
    limits: PlanLimits
    tier: PlanTier
    subscription: Subscription | None = None


DEFAULT_PLAN_CONFIGS: dict[str, PlanTier] = {
    "basic": PlanTier(
        plan="basic",
        title="Basic",
        price_kopecks_monthly=0,
        projects_limit=1,
        seats_limit=5,
        tasks_weekly_limit=10,
        public_tasks_monthly_limit=5,
        storage_included_gb=5,
        storage_overage_kopecks_per_gb_month=None,
        storage_package_gb=100,
        storage_package_kopecks_monthly=900_000,
        features=(
            "1 проект",
            "До 5 активных рабочих мест",
            "До 10 задач в неделю",
            "Хранилище 5 GB включено",
        ),
    ),
    "pro": PlanTier(
        plan="pro",
        title="Pro",
        price_kopecks_monthly=549_000,
        projects_limit=20,
        seats_limit=50,
        tasks_weekly_limit=100,
        public_tasks_monthly_limit=10,
        storage_included_gb=50,
        storage_overage_kopecks_per_gb_month=None,
        storage_package_gb=100,
        storage_package_kopecks_monthly=900_000,
        features=(
            "20 проектов",
            "До 50 активных рабочих мест",
            "До 100 задач в неделю",
            "Хранилище 50 GB включено",
            "Базовые интеграции",
            "Экспорт",
            "SLA 48ч",
        ),
    ),
    "business": PlanTier(
        plan="business",
        title="Business",
        price_kopecks_monthly=999_000,
        projects_limit=50,
        seats_limit=100,
        tasks_weekly_limit=300,
        public_tasks_monthly_limit=20,
        storage_included_gb=100,
        storage_overage_kopecks_per_gb_month=None,
        storage_package_gb=100,
        storage_package_kopecks_monthly=900_000,
        features=(
            "50 проектов",
            "До 100 активных рабочих мест",
            "До 300 задач в неделю",
            "Хранилище 100 GB включено",
            "Расширенные интеграции",
            "Аудит-лог",
            "SLA 24ч",
        ),
    ),
    "enterprise": PlanTier(
        plan="enterprise",
        title="Enterprise",
        price_kopecks_monthly=0,
        projects_limit=None,
        seats_limit=None,
        tasks_weekly_limit=None,
        public_tasks_monthly_limit=None,
        storage_included_gb=None,
        storage_overage_kopecks_per_gb_month=0,
        storage_package_gb=None,
        storage_package_kopecks_monthly=None,
        features=(
            "Индивидуальные условия",
            "Без ограничений",
            "Персональный менеджер",
        ),
    ),
}

# Subscription override column -> PlanLimits field.
_OVERRIDE_FIELDS = {
    "projects_limit": "projects",
    "seats": "seats",
    "public_tasks_limit": "publications",
    "tasks_weekly_limit": "tasks_weekly",
}

_LIMIT_COLUMNS = (
    "projects_limit",
    "seats_limit",
    "tasks_weekly_limit",
    "public_tasks_monthly_limit",
    "storage_included_gb",
    "storage_package_gb",
)
_AMOUNT_COLUMNS = (
    "price_kopecks_monthly",
    "storage_overage_kopecks_per_gb_month",
    "storage_package_kopecks_monthly",
)


def normalize_limit(value: Any) -> int | None:
    # Only finite non-negative numbers count as limits; 0 is a real limit.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value < 0:
        return None
    return int(value)


def normalize_plan_code(plan: str | None) -> str:
    if plan is not None and plan in DEFAULT_PLAN_CONFIGS:
        return plan
    return DEFAULT_PLAN


def resolve_plan_limits(tier: PlanTier, overrides: Mapping[str, Any] | None = None) -> PlanLimits:
    """Resolve effective limits for a plan tier.

    ``overrides`` maps subscription column names (``projects_limit``, ``seats``,
    ``public_tasks_limit``, ``tasks_weekly_limit``) to values. A key that is
    present with a valid number, including 0, wins over the plan default; an
    absent key or an invalid value falls back to the tier. A tier default of
    None means unlimited.
    """
    overrides = overrides or {}
    defaults = {
        "projects": tier.projects_limit,
        "seats": tier.seats_limit,
        "publications": tier.public_tasks_monthly_limit,
        "tasks_weekly": tier.tasks_weekly_limit,
    }
    resolved = dict(defaults)
    for column, limit_field in _OVERRIDE_FIELDS.items():
        if column not in overrides:
            continue
        value = normalize_limit(overrides[column])
        if value is not None:
            resolved[limit_field] = value
    return PlanLimits(**resolved)


def subscription_overrides(subscription: Subscription | None) -> dict[str, Any]:
    # Only columns that were actually set count as overrides.
    if subscription is None:
        return {}
    overrides: dict[str, Any] = {}
    for column in _OVERRIDE_FIELDS:
        value = getattr(subscription, column)
        if value is not None:
            overrides[column] = value
    return overrides


def _normalize_tier(plan: str, row: PlanConfig | None) -> PlanTier:
    # Overlay stored values onto built-in defaults, ignoring invalid entries.
    fallback = DEFAULT_PLAN_CONFIGS[plan]
    if row is None:
        return fallback
    updates: dict[str, Any] = {}
    title = (row.title or "").strip()
    if title:
        updates["title"] = title
    for column in _LIMIT_COLUMNS:
        value = normalize_limit(getattr(row, column))
        if value is not None:
            updates[column] = value
    for column in _AMOUNT_COLUMNS:
        value = getattr(row, column)
        if value is not None and int(value) >= 0:
            updates[column] = int(value)
    if isinstance(row.features, list):
        updates["features"] = tuple(str(item) for item in row.features if item)
    return replace(fallback, **updates)


async def get_plan_config(session: AsyncSession, plan: str) -> PlanTier:
    if plan not in DEFAULT_PLAN_CONFIGS:
        raise PlanNotFoundError(f"unknown plan: {plan}")
    row = await session.get(PlanConfig, plan)
    return _normalize_tier(plan, row)


async def list_plan_configs(session: AsyncSession) -> list[PlanTier]:
    rows = (await session.execute(select(PlanConfig))).scalars().all()
    by_plan = {row.plan: row for row in rows}
    return [_normalize_tier(plan, by_plan.get(plan)) for plan in PLAN_CODES]


async def ensure_plan_configs(session: AsyncSession, *, commit: bool = True) -> list[str]:
    # Insert built-in defaults for plans that have no stored row yet.
    existing = set((await session.execute(select(PlanConfig.plan))).scalars().all())
    inserted: list[str] = []
    async with unit_of_work(session, commit=commit):
        for plan, tier in DEFAULT_PLAN_CONFIGS.items():
            if plan in existing:
                continue
            session.add(_row_from_tier(tier))
            inserted.append(plan)
    if inserted:
        logger.info("plan_configs_seeded plans=%s", ",".join(inserted))
    return inserted


async def update_plan_config(
    session: AsyncSession,
    plan: str,
    values: Mapping[str, Any],
    *,
    commit: bool = True,
) -> PlanTier:
    # Patch a stored plan row, creating it from defaults when missing.
    if plan not in DEFAULT_PLAN_CONFIGS:
        raise PlanNotFoundError(f"unknown plan: {plan}")
    async with unit_of_work(session, commit=commit):
        row = await session.get(PlanConfig, plan)
        if row is None:
            row = _row_from_tier(DEFAULT_PLAN_CONFIGS[plan])
            session.add(row)
        for key, value in values.items():
            if key == "title":
                # Blank titles read back as the built-in title.
                row.title = value or ""
            elif key == "features" or key in _LIMIT_COLUMNS or key in _AMOUNT_COLUMNS:
                setattr(row, key, list(value) if key == "features" and value is not None else value)
    logger.info("plan_config_updated plan=%s fields=%s", plan, ",".join(sorted(values)))
    return _normalize_tier(plan, row)


async def delete_plan_config(session: AsyncSession, plan: str, *, commit: bool = True) -> PlanTier:
    # Dropping the stored row reverts the plan to its built-in defaults.
    if plan not in DEFAULT_PLAN_CONFIGS:
        raise PlanNotFoundError(f"unknown plan: {plan}")
    async with unit_of_work(session, commit=commit):
        await session.execute(delete(PlanConfig).where(PlanConfig.plan == plan))
    return DEFAULT_PLAN_CONFIGS[plan]


async def load_plan_for_org(session: AsyncSession, org_id: str) -> ResolvedPlan:
    # Subscription override -> plan-config default -> unlimited.
    subscription = (
        await session.execute(select(Subscription).where(Subscription.org_id == org_id))
    ).scalar_one_or_none()
    raw_plan = subscription.plan if subscription is not None else DEFAULT_PLAN
    plan = normalize_plan_code(raw_plan)
    if plan != raw_plan:
        logger.warning("subscription_plan_unknown org_id=%s plan=%s", org_id, raw_plan)
    tier = await get_plan_config(session, plan)
    limits = resolve_plan_limits(tier, subscription_overrides(subscription))
    return ResolvedPlan(plan=plan, limits=limits, tier=tier, subscription=subscription)


def _row_from_tier(tier: PlanTier) -> PlanConfig:
    return PlanConfig(
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
