from __future__ import annotations

import argparse
import asyncio
from datetime import datetime

from fieldbill.core.logging import configure_logging
from fieldbill.domain.periods import ensure_utc, utc_now
from fieldbill.persistence.db import SessionLocal
from fieldbill.services.billing_queue import enqueue_subscription_charge
from fieldbill.services.subscription_billing import charge_subscription_period, list_due_subscription_orgs


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Renew subscriptions whose paid period has ended")
    parser.add_argument("--at", default=None, help="ISO timestamp to evaluate periods against (default: now)")
    parser.add_argument("--enqueue", action="store_true", help="Hand each renewal to the billing worker")
    parser.add_argument("--dry-run", action="store_true", help="List due organizations without charging")
    return parser


async def _run(moment: datetime, *, enqueue: bool, dry_run: bool) -> int:
    async with SessionLocal() as session:
        org_ids = await list_due_subscription_orgs(session, moment)
    if dry_run:
        for org_id in org_ids:
            print(org_id)
        print(f"due={len(org_ids)}")
        return 0
    if enqueue:
        for org_id in org_ids:
            await enqueue_subscription_charge(org_id)
        print(f"enqueued={len(org_ids)}")
        return 0
    past_due = 0
    for org_id in org_ids:
        async with SessionLocal() as session:
            result = await charge_subscription_period(session, org_id, moment)
        if not result.ok:
            past_due += 1
    print(f"due={len(org_ids)} past_due={past_due}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    moment = ensure_utc(datetime.fromisoformat(args.at)) if args.at else utc_now()
    return asyncio.run(_run(moment, enqueue=args.enqueue, dry_run=args.dry_run))


if __name__ == "__main__":
    raise SystemExit(main())
