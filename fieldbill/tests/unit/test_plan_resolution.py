from __future__ import annotations

import math

import pytest

from fieldbill.core.errors import PlanNotFoundError
from fieldbill.domain.ids import new_id
from fieldbill.persistence.db import SessionLocal
from fieldbill.services.billing_config import get_billing_config, update_billing_config
from fieldbill.services.plans import (
    DEFAULT_PLAN_CONFIGS,
    get_plan_config,
    load_plan_for_org,
    normalize_limit,
    normalize_plan_code,
    resolve_plan_limits,
    update_plan_config,
    delete_plan_config,
)
from fieldbill.tests.utils.billing import create_subscription


def test_normalize_limit_keeps_zero_and_drops_invalid() -> None:
    assert normalize_limit(0) == 0
    assert normalize_limit(7) == 7
    assert normalize_limit(3.0) == 3
    for bad in (None, -1, math.inf, math.nan, "5", True):
        assert normalize_limit(bad) is None


def test_unknown_plan_codes_fall_back_to_basic() -> None:
    assert normalize_plan_code("pro") == "pro"
    assert normalize_plan_code("platinum") == "basic"
    assert normalize_plan_code(None) == "basic"


def test_zero_override_wins_over_plan_default() -> None:
    tier = DEFAULT_PLAN_CONFIGS["pro"]
    limits = resolve_plan_limits(tier, {"projects_limit": 0, "tasks_weekly_limit": -3})
    assert limits.projects == 0
    # Invalid override falls back to the tier value.
    assert limits.tasks_weekly == tier.tasks_weekly_limit
    assert limits.publications == tier.public_tasks_monthly_limit


def test_enterprise_is_unlimited() -> None:
    limits = resolve_plan_limits(DEFAULT_PLAN_CONFIGS["enterprise"])
    assert limits.projects is None
    assert limits.for_kind("tasks") is None
    with pytest.raises(ValueError):
        limits.for_kind("seats")


@pytest.mark.asyncio
async def test_org_without_subscription_resolves_basic() -> None:
    async with SessionLocal() as session:
        resolved = await load_plan_for_org(session, new_id())
    assert resolved.plan == "basic"
    assert resolved.limits.projects == 1
    assert resolved.subscription is None


@pytest.mark.asyncio
async def test_subscription_overrides_apply() -> None:
    org_id = new_id()
    await create_subscription(org_id, plan="pro", projects_limit=3, public_tasks_limit=0)
    async with SessionLocal() as session:
        resolved = await load_plan_for_org(session, org_id)
    assert resolved.plan == "pro"
    assert resolved.limits.projects == 3
    assert resolved.limits.publications == 0
    assert resolved.limits.seats == 50


@pytest.mark.asyncio
async def test_stored_plan_config_overlays_defaults_and_resets() -> None:
    async with SessionLocal() as session:
        updated = await update_plan_config(session, "business", {"projects_limit": 75, "title": "Business+"})
        assert updated.projects_limit == 75
        assert updated.title == "Business+"
        assert updated.seats_limit == DEFAULT_PLAN_CONFIGS["business"].seats_limit

        stored = await get_plan_config(session, "business")
        assert stored.projects_limit == 75

        reset = await delete_plan_config(session, "business")
        assert reset == DEFAULT_PLAN_CONFIGS["business"]
        assert await get_plan_config(session, "business") == DEFAULT_PLAN_CONFIGS["business"]

        with pytest.raises(PlanNotFoundError):
            await get_plan_config(session, "platinum")


@pytest.mark.asyncio
async def test_billing_config_defaults_and_patch() -> None:
    async with SessionLocal() as session:
        before = await get_billing_config(session)
        updated = await update_billing_config(session, bid_cost_kopecks=before.bid_cost_kopecks)
        assert updated.bid_cost_kopecks == before.bid_cost_kopecks
        assert updated.task_publish_cost_kopecks == before.task_publish_cost_kopecks
        assert (await get_billing_config(session)) == updated
