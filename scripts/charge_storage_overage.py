from __future__ import annotations

import argparse
import asyncio
from datetime import datetime

from sqlalchemy import select

from fieldbill.core.logging import configure_logging
from fieldbill.domain.models import StorageUsage
from fieldbill.domain.periods import ensure_utc, hour_key, utc_now
from fieldbill.persistence.db import SessionLocal
from fieldbill.services.billing_queue import enqueue_org_storage_charge
from fieldbill.services.storage_usage import charge_hourly_overage


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Charge one hour of storage overage for every organization")
    parser.add_argument("--at", default=None, help="ISO timestamp inside the hour to charge (default: now)")
    parser.add_argument(
        "--enqueue",
        action="store_true",
        help="Fan out one billing worker job per organization instead of charging inline",
    )
    return parser


async def _charge_inline(moment: datetime) -> int:
    outcomes = await charge_hourly_overage(moment)
    charged = sum(1 for outcome in outcomes if not outcome.result.skipped)
    failed = sum(1 for outcome in outcomes if outcome.result.reason == "error")
    print(f"hour_key={hour_key(moment)} processed={len(outcomes)} charged={charged} failed={failed}")
    return 1 if failed else 0


async def _enqueue(moment: datetime) -> int:
    async with SessionLocal() as session:
        org_ids = list((await session.execute(select(StorageUsage.org_id))).scalars().all())
    for org_id in org_ids:
        await enqueue_org_storage_charge(org_id, moment)
    print(f"hour_key={hour_key(moment)} enqueued={len(org_ids)}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    moment = ensure_utc(datetime.fromisoformat(args.at)) if args.at else utc_now()
    if args.enqueue:
        return asyncio.run(_enqueue(moment))
    return asyncio.run(_charge_inline(moment))


if __name__ == "__main__":
    raise SystemExit(main())
