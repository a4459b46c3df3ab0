from __future__ import annotations

import argparse
import asyncio

from fieldbill.core.logging import configure_logging
from fieldbill.persistence.db import SessionLocal
from fieldbill.services.billing_config import get_billing_config, update_billing_config
from fieldbill.services.plans import ensure_plan_configs


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed plan configs and billing costs")
    parser.add_argument("--bid-cost-kopecks", type=int, default=None, help="Override the bid cost")
    parser.add_argument("--task-publish-cost-kopecks", type=int, default=None, help="Override the task publish cost")
    return parser


async def _seed(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        inserted = await ensure_plan_configs(session)
        current = await get_billing_config(session)
        costs = await update_billing_config(
            session,
            task_publish_cost_kopecks=(
                args.task_publish_cost_kopecks
                if args.task_publish_cost_kopecks is not None
                else current.task_publish_cost_kopecks
            ),
            bid_cost_kopecks=args.bid_cost_kopecks if args.bid_cost_kopecks is not None else current.bid_cost_kopecks,
        )
    print(f"plans_inserted={','.join(inserted) or '-'}")
    print(f"bid_cost_kopecks={costs.bid_cost_kopecks} task_publish_cost_kopecks={costs.task_publish_cost_kopecks}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    for value in (args.bid_cost_kopecks, args.task_publish_cost_kopecks):
        if value is not None and value < 0:
            raise SystemExit("costs must be non-negative")
    return asyncio.run(_seed(args))


if __name__ == "__main__":
    raise SystemExit(main())
