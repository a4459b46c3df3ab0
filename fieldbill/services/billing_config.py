from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.core.config import get_settings
from fieldbill.domain.models import BillingConfig
from fieldbill.domain.money import rub_to_kopecks
from fieldbill.persistence.db import unit_of_work


logger = logging.getLogger(__name__)

_CONFIG_ID = 1


@dataclass(frozen=True)
class BillingCosts:
    task_publish_cost_kopecks: int
    bid_cost_kopecks: int


def default_billing_costs() -> BillingCosts:
    settings = get_settings()
    return BillingCosts(
        task_publish_cost_kopecks=rub_to_kopecks(settings.task_publish_cost_rub),
        bid_cost_kopecks=rub_to_kopecks(settings.bid_cost_rub),
    )


def _costs_from_row(row: BillingConfig) -> BillingCosts:
    return BillingCosts(
        task_publish_cost_kopecks=int(row.task_publish_cost_kopecks),
        bid_cost_kopecks=int(row.bid_cost_kopecks),
    )


async def get_billing_config(session: AsyncSession) -> BillingCosts:
    # Read the singleton row without creating it; defaults come from settings.
    row = await session.get(BillingConfig, _CONFIG_ID)
    if row is None:
        return default_billing_costs()
    return _costs_from_row(row)


async def update_billing_config(
    session: AsyncSession,
    *,
    task_publish_cost_kopecks: int | None = None,
    bid_cost_kopecks: int | None = None,
    commit: bool = True,
) -> BillingCosts:
    # Patch only the provided costs; negative values are rejected by the caller.
    async with unit_of_work(session, commit=commit):
        row = await session.get(BillingConfig, _CONFIG_ID)
        if row is None:
            defaults = default_billing_costs()
            row = BillingConfig(
                id=_CONFIG_ID,
                task_publish_cost_kopecks=defaults.task_publish_cost_kopecks,
                bid_cost_kopecks=defaults.bid_cost_kopecks,
            )
            try:
                async with session.begin_nested():
                    session.add(row)
            except IntegrityError:
                # Another admin created the row first; patch theirs.
                row = await session.get(BillingConfig, _CONFIG_ID, populate_existing=True)
                if row is None:
                    raise
        if task_publish_cost_kopecks is not None:
            row.task_publish_cost_kopecks = int(task_publish_cost_kopecks)
        if bid_cost_kopecks is not None:
            row.bid_cost_kopecks = int(bid_cost_kopecks)
    logger.info(
        "billing_config_updated task_publish_cost_kopecks=%s bid_cost_kopecks=%s",
        row.task_publish_cost_kopecks,
        row.bid_cost_kopecks,
    )
    return _costs_from_row(row)
