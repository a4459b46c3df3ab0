from __future__ import annotations

from datetime import datetime
import logging

from arq import cron
from arq.connections import RedisSettings

from fieldbill.core.config import get_settings
from fieldbill.core.logging import configure_logging
from fieldbill.domain.periods import utc_now
from fieldbill.persistence.db import SessionLocal
from fieldbill.services.storage_usage import charge_hourly_overage, charge_hourly_overage_for_org
from fieldbill.services.subscription_billing import charge_subscription_period, list_due_subscription_orgs

logger = logging.getLogger(__name__)


async def charge_storage_overage_job(ctx) -> dict[str, int]:
    # Hourly sweep over every organization with tracked storage.
    outcomes = await charge_hourly_overage(utc_now())
    summary = {
        "processed": len(outcomes),
        "charged": sum(1 for outcome in outcomes if not outcome.result.skipped),
        "read_only": sum(1 for outcome in outcomes if outcome.result.reason == "insufficient_funds"),
        "failed": sum(1 for outcome in outcomes if outcome.result.reason == "error"),
    }
    logger.info(
        "storage_overage_job_complete processed=%s charged=%s read_only=%s failed=%s",
        summary["processed"],
        summary["charged"],
        summary["read_only"],
        summary["failed"],
    )
    return summary


async def charge_org_storage_overage(ctx, org_id: str, at: str | None = None) -> str:
    # Per-organization charge; the hour key makes retries harmless.
    moment = datetime.fromisoformat(at) if at else utc_now()
    async with SessionLocal() as session:
        result = await charge_hourly_overage_for_org(session, org_id, moment)
    return result.reason or "charged"


async def charge_org_subscription(ctx, org_id: str) -> str:
    async with SessionLocal() as session:
        result = await charge_subscription_period(session, org_id)
    return result.status


async def charge_due_subscriptions_job(ctx) -> dict[str, int]:
    # Daily renewal pass; organizations already paid for this month are not selected.
    now = utc_now()
    async with SessionLocal() as session:
        org_ids = await list_due_subscription_orgs(session, now)
        await session.commit()
    paid = 0
    past_due = 0
    for org_id in org_ids:
        async with SessionLocal() as session:
            result = await charge_subscription_period(session, org_id, now)
        if result.ok:
            paid += 1
        else:
            past_due += 1
    logger.info("subscription_renewal_complete due=%s paid=%s past_due=%s", len(org_ids), paid, past_due)
    return {"due": len(org_ids), "paid": paid, "past_due": past_due}


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("billing_worker_started queue=%s", get_settings().billing_queue_name)


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.billing_queue_name
    functions = [charge_org_storage_overage, charge_org_subscription]
    cron_jobs = [
        cron(
            charge_storage_overage_job,
            minute={settings.storage_billing_cron_minute},
            run_at_startup=False,
            unique=True,
        ),
        cron(
            charge_due_subscriptions_job,
            hour={settings.subscription_renewal_cron_hour},
            minute={15},
            run_at_startup=False,
            unique=True,
        ),
    ]
    on_startup = _startup
