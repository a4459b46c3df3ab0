from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.core.errors import WalletUpdateError
from fieldbill.domain.ids import new_id
from fieldbill.domain.models import OrgWallet, OrgWalletTransaction
from fieldbill.persistence.db import unit_of_work


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrgWalletDebitResult:
    ok: bool
    balance_kopecks: int
    # Balance seen when a debit was declined.
    available_kopecks: int | None = None
    transaction_id: str | None = None


async def get_org_wallet(session: AsyncSession, org_id: str) -> OrgWallet | None:
    # Always reload; guarded bulk updates bypass the identity map.
    stmt = (
        select(OrgWallet)
        .where(OrgWallet.org_id == org_id)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def ensure_org_wallet(session: AsyncSession, org_id: str) -> tuple[OrgWallet, bool]:
    # Lazily create a zero-balance wallet; the caller owns the transaction.
    existing = await get_org_wallet(session, org_id)
    if existing is not None:
        return existing, False
    wallet = OrgWallet(id=new_id(), org_id=org_id, balance_kopecks=0, currency="RUB")
    try:
        async with session.begin_nested():
            session.add(wallet)
    except IntegrityError:
        # Concurrent first request created it; use theirs.
        existing = await get_org_wallet(session, org_id)
        if existing is None:
            raise
        return existing, False
    return wallet, True


async def credit_org_wallet(
    session: AsyncSession,
    org_id: str,
    amount_kopecks: int,
    *,
    source: str = "manual",
    meta: dict[str, Any] | None = None,
    commit: bool = True,
) -> int:
    # Add funds and append a credit entry; returns the new balance.
    if amount_kopecks <= 0:
        raise ValueError("credit amount must be positive")
    async with unit_of_work(session, commit=commit):
        wallet, _ = await ensure_org_wallet(session, org_id)
        balance = await _apply_delta(session, wallet.id, amount_kopecks)
        if balance is None:
            raise WalletUpdateError(f"org wallet update failed org_id={org_id}")
        _append_entry(session, wallet, amount_kopecks, "credit", source, balance, meta)
    return balance


async def debit_org_wallet(
    session: AsyncSession,
    org_id: str,
    amount_kopecks: int,
    *,
    source: str = "storage_overage",
    meta: dict[str, Any] | None = None,
    commit: bool = True,
) -> OrgWalletDebitResult:
    """Debit an organization wallet, never letting the balance go negative.

    Insufficient funds is reported as ``ok=False`` with the balance that was
    available; nothing is written in that case.
    """
    if amount_kopecks < 0:
        raise ValueError("debit amount must be non-negative")
    async with unit_of_work(session, commit=commit):
        wallet, _ = await ensure_org_wallet(session, org_id)
        available = int(wallet.balance_kopecks or 0)
        if available < amount_kopecks:
            return OrgWalletDebitResult(ok=False, balance_kopecks=available, available_kopecks=available)
        balance = await _apply_delta(session, wallet.id, -amount_kopecks)
        if balance is None:
            # A concurrent debit drained the wallet between the read and the update.
            latest = await get_org_wallet(session, org_id)
            available = int(latest.balance_kopecks) if latest is not None else 0
            return OrgWalletDebitResult(ok=False, balance_kopecks=available, available_kopecks=available)
        entry = _append_entry(session, wallet, amount_kopecks, "debit", source, balance, meta)
    return OrgWalletDebitResult(ok=True, balance_kopecks=balance, transaction_id=entry.id)


async def set_org_wallet_balance(
    session: AsyncSession,
    org_id: str,
    *,
    balance_kopecks: int | None = None,
    delta_kopecks: int | None = None,
    actor_id: str | None = None,
    commit: bool = True,
) -> int:
    # Admin correction by absolute balance or signed delta, recorded as a manual entry.
    if (balance_kopecks is None) == (delta_kopecks is None):
        raise ValueError("provide exactly one of balance_kopecks or delta_kopecks")
    async with unit_of_work(session, commit=commit):
        wallet, _ = await ensure_org_wallet(session, org_id)
        current = int(wallet.balance_kopecks or 0)
        delta = int(delta_kopecks) if delta_kopecks is not None else int(balance_kopecks) - current
        if delta == 0:
            return current
        balance = await _apply_delta(session, wallet.id, delta)
        if balance is None:
            raise WalletUpdateError("org wallet balance cannot go negative")
        _append_entry(
            session,
            wallet,
            abs(delta),
            "credit" if delta > 0 else "debit",
            "manual",
            balance,
            {"actor_id": actor_id} if actor_id else None,
        )
    logger.info("org_wallet_adjusted org_id=%s delta_kopecks=%s balance_kopecks=%s", org_id, delta, balance)
    return balance


async def list_org_wallet_transactions(
    session: AsyncSession,
    org_id: str,
    *,
    limit: int = 50,
) -> list[OrgWalletTransaction]:
    rows = await session.execute(
        select(OrgWalletTransaction)
        .where(OrgWalletTransaction.org_id == org_id)
        .order_by(OrgWalletTransaction.created_at.desc(), OrgWalletTransaction.id.desc())
        .limit(limit)
    )
    return list(rows.scalars().all())


async def _apply_delta(session: AsyncSession, wallet_id: str, delta: int) -> int | None:
    # Signed update guarded so the balance never drops below zero.
    stmt = (
        update(OrgWallet)
        .where(OrgWallet.id == wallet_id, OrgWallet.balance_kopecks + delta >= 0)
        .values(balance_kopecks=OrgWallet.balance_kopecks + delta)
        .returning(OrgWallet.balance_kopecks)
        .execution_options(synchronize_session=False)
    )
    value = (await session.execute(stmt)).scalar_one_or_none()
    return int(value) if value is not None else None


def _append_entry(
    session: AsyncSession,
    wallet: OrgWallet,
    amount_kopecks: int,
    entry_type: str,
    source: str,
    balance_after: int,
    meta: dict[str, Any] | None,
) -> OrgWalletTransaction:
    entry = OrgWalletTransaction(
        id=new_id(),
        wallet_id=wallet.id,
        org_id=wallet.org_id,
        amount_kopecks=amount_kopecks,
        type=entry_type,
        source=source,
        balance_after_kopecks=balance_after,
        meta=meta or {},
    )
    session.add(entry)
    return entry
