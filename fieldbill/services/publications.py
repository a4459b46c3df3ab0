from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.domain.ids import parse_id
from fieldbill.domain.money import kopecks_to_rub
from fieldbill.persistence.db import unit_of_work
from fieldbill.services.billing_config import get_billing_config
from fieldbill.services.org_wallet import debit_org_wallet, ensure_org_wallet
from fieldbill.services.usage_limits import consume_usage_slot


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublicationChargeResult:
    """Outcome of publishing a task.

    ``reason`` is ``"limit_reached"`` or ``"insufficient_funds"`` when
    ``ok`` is false; neither the slot nor the wallet was touched then.
    """

    ok: bool
    cost_kopecks: int
    used: int = 0
    limit: int | None = None
    plan: str | None = None
    balance_kopecks: int | None = None
    available_kopecks: int | None = None
    transaction_id: str | None = None
    reason: str | None = None
    error: str | None = None


class _PublicationDeclined(Exception):
    # Raised inside the unit of work so a reserved slot is rolled back with the decline.
    def __init__(self, result: PublicationChargeResult) -> None:
        super().__init__(result.error)
        self.result = result


def insufficient_funds_message(cost_kopecks: int) -> str:
    return f"Недостаточно средств для публикации: нужно {kopecks_to_rub(cost_kopecks)} ₽"


async def charge_publication(
    session: AsyncSession,
    org_id: object,
    task_id: object,
    *,
    now: datetime | None = None,
) -> PublicationChargeResult:
    """Reserve a publication slot and pay for it from the organization wallet.

    The slot and the debit commit together. A full publication limit or a
    wallet that cannot cover ``task_publish_cost_kopecks`` is returned as a
    declined result with nothing written.
    """
    org_key = parse_id(org_id, label="organization id")
    task_key = parse_id(task_id, label="task id")
    try:
        async with unit_of_work(session):
            cost = (await get_billing_config(session)).task_publish_cost_kopecks
            if cost > 0:
                # Refuse early so an unfunded organization does not burn a slot attempt.
                wallet, _ = await ensure_org_wallet(session, org_key)
                available = int(wallet.balance_kopecks or 0)
                if available < cost:
                    raise _PublicationDeclined(
                        PublicationChargeResult(
                            ok=False,
                            cost_kopecks=cost,
                            available_kopecks=available,
                            reason="insufficient_funds",
                            error=insufficient_funds_message(cost),
                        )
                    )

            slot = await consume_usage_slot(session, org_key, "publications", now=now, commit=False)
            if not slot.ok:
                raise _PublicationDeclined(
                    PublicationChargeResult(
                        ok=False,
                        cost_kopecks=cost,
                        used=slot.used,
                        limit=slot.limit,
                        plan=slot.plan,
                        reason="limit_reached",
                        error=slot.reason,
                    )
                )

            balance = None
            transaction_id = None
            if cost > 0:
                debit = await debit_org_wallet(
                    session,
                    org_key,
                    cost,
                    source="publication",
                    meta={"task_id": task_key, "visibility": "public"},
                    commit=False,
                )
                if not debit.ok:
                    raise _PublicationDeclined(
                        PublicationChargeResult(
                            ok=False,
                            cost_kopecks=cost,
                            used=slot.used,
                            limit=slot.limit,
                            plan=slot.plan,
                            available_kopecks=debit.available_kopecks,
                            reason="insufficient_funds",
                            error=insufficient_funds_message(cost),
                        )
                    )
                balance = debit.balance_kopecks
                transaction_id = debit.transaction_id
    except _PublicationDeclined as declined:
        logger.info(
            "publication_declined org_id=%s task_id=%s reason=%s",
            org_key,
            task_key,
            declined.result.reason,
        )
        return declined.result

    logger.info("publication_charged org_id=%s task_id=%s cost_kopecks=%s", org_key, task_key, cost)
    return PublicationChargeResult(
        ok=True,
        cost_kopecks=cost,
        used=slot.used,
        limit=slot.limit,
        plan=slot.plan,
        balance_kopecks=balance,
        transaction_id=transaction_id,
    )
