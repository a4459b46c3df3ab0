from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldbill.core.config import get_settings
from fieldbill.core.errors import InvalidIdentifierError, WalletUpdateError
from fieldbill.domain.ids import new_id, parse_id
from fieldbill.domain.models import Wallet, WalletTransaction
from fieldbill.domain.money import rub_to_kopecks
from fieldbill.persistence.db import SessionLocal, unit_of_work
from fieldbill.services.billing_config import get_billing_config


logger = logging.getLogger(__name__)

INSUFFICIENT_FUNDS_ERROR = "Недостаточно средств: пополните кошелёк или дождитесь начислений"
INVALID_ID_ERROR = "Некорректный идентификатор"


@dataclass(frozen=True)
class WalletSnapshot:
    wallet_id: str
    contractor_id: str
    balance_kopecks: int
    bonus_balance_kopecks: int
    currency: str = "RUB"

    @property
    def available_kopecks(self) -> int:
        return self.balance_kopecks + self.bonus_balance_kopecks


@dataclass(frozen=True)
class BidDebitResult:
    """Outcome of a bid debit.

    On success ``debited_from_bonus`` + ``debited_from_balance`` equals the
    bid cost and ``wallet`` holds the balances after the debit. On failure
    ``available`` is the spendable total that was seen and ``error`` is a
    user-facing message; the wallet was not changed.
    """

    ok: bool
    wallet: WalletSnapshot | None
    debited_from_bonus: int = 0
    debited_from_balance: int = 0
    available: int | None = None
    error: str | None = None
    transaction_id: str | None = None


OnDebited = Callable[[AsyncSession, BidDebitResult], Awaitable[None]]


class _BidDeclined(Exception):
    # Raised inside charge_bid to roll the transaction back on a declined debit.
    def __init__(self, result: BidDebitResult) -> None:
        super().__init__(result.error)
        self.result = result


def _snapshot(wallet: Wallet) -> WalletSnapshot:
    return WalletSnapshot(
        wallet_id=wallet.id,
        contractor_id=wallet.contractor_id,
        balance_kopecks=int(wallet.balance_kopecks or 0),
        bonus_balance_kopecks=int(wallet.bonus_balance_kopecks or 0),
        currency=wallet.currency or "RUB",
    )


def split_charge(bonus_balance: int, cost: int) -> tuple[int, int]:
    # Bonus is always exhausted before real balance.
    from_bonus = min(max(bonus_balance, 0), cost)
    return from_bonus, cost - from_bonus


async def get_wallet(session: AsyncSession, contractor_id: str) -> Wallet | None:
    # Always reload; guarded bulk updates bypass the identity map.
    stmt = (
        select(Wallet)
        .where(Wallet.contractor_id == contractor_id)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def ensure_wallet_with_bonus(session: AsyncSession, contractor_id: str) -> tuple[Wallet, bool]:
    # First wallet for a contractor is seeded with the signup bonus; caller owns the transaction.
    existing = await get_wallet(session, contractor_id)
    if existing is not None:
        return existing, False
    bonus = rub_to_kopecks(get_settings().signup_bonus_rub)
    wallet = Wallet(
        id=new_id(),
        contractor_id=contractor_id,
        balance_kopecks=0,
        bonus_balance_kopecks=bonus,
        currency="RUB",
    )
    try:
        async with session.begin_nested():
            session.add(wallet)
            session.add(
                WalletTransaction(
                    id=new_id(),
                    wallet_id=wallet.id,
                    contractor_id=contractor_id,
                    amount_kopecks=bonus,
                    type="credit",
                    source="signup_bonus",
                    balance_after_kopecks=0,
                    bonus_balance_after_kopecks=bonus,
                    meta={"reason": "signup_bonus"},
                )
            )
    except IntegrityError:
        # Concurrent first request already created and seeded the wallet.
        existing = await get_wallet(session, contractor_id)
        if existing is None:
            raise
        return existing, False
    logger.info("wallet_created contractor_id=%s bonus_kopecks=%s", contractor_id, bonus)
    return wallet, True


async def debit_for_bid(
    session: AsyncSession,
    contractor_id: object,
    task_id: object,
    *,
    application_id: object | None = None,
    cost_kopecks: int | None = None,
    commit: bool = True,
) -> BidDebitResult:
    """Charge a contractor for submitting a bid, bonus balance first.

    The debit is a single conditional update guarded on both balances, so a
    concurrent debit can make this call fail but can never drive either
    balance negative. Declines are returned, not raised.
    """
    try:
        contractor_key = parse_id(contractor_id, label="contractor id")
        task_key = parse_id(task_id, label="task id")
        application_key = (
            parse_id(application_id, label="application id") if application_id is not None else None
        )
    except InvalidIdentifierError:
        return BidDebitResult(ok=False, wallet=None, available=0, error=INVALID_ID_ERROR)

    async with unit_of_work(session, commit=commit):
        cost = cost_kopecks
        if cost is None:
            cost = (await get_billing_config(session)).bid_cost_kopecks
        if cost < 0:
            raise ValueError("bid cost must be non-negative")

        wallet, _ = await ensure_wallet_with_bonus(session, contractor_key)
        before = _snapshot(wallet)
        if before.available_kopecks < cost:
            return BidDebitResult(
                ok=False,
                wallet=before,
                available=before.available_kopecks,
                error=INSUFFICIENT_FUNDS_ERROR,
            )

        from_bonus, from_balance = split_charge(before.bonus_balance_kopecks, cost)
        stmt = (
            update(Wallet)
            .where(
                Wallet.id == before.wallet_id,
                Wallet.bonus_balance_kopecks >= from_bonus,
                Wallet.balance_kopecks >= from_balance,
            )
            .values(
                bonus_balance_kopecks=Wallet.bonus_balance_kopecks - from_bonus,
                balance_kopecks=Wallet.balance_kopecks - from_balance,
            )
            .returning(Wallet.balance_kopecks, Wallet.bonus_balance_kopecks)
            .execution_options(synchronize_session=False)
        )
        row = (await session.execute(stmt)).one_or_none()
        if row is None:
            # Lost the race; report what is left now without retrying.
            latest = await get_wallet(session, contractor_key)
            current = _snapshot(latest) if latest is not None else before
            return BidDebitResult(
                ok=False,
                wallet=current,
                available=current.available_kopecks,
                error=INSUFFICIENT_FUNDS_ERROR,
            )

        after = WalletSnapshot(
            wallet_id=before.wallet_id,
            contractor_id=contractor_key,
            balance_kopecks=int(row[0]),
            bonus_balance_kopecks=int(row[1]),
            currency=before.currency,
        )
        meta: dict[str, Any] = {"task_id": task_key}
        if application_key is not None:
            meta["application_id"] = application_key
        entry = WalletTransaction(
            id=new_id(),
            wallet_id=before.wallet_id,
            contractor_id=contractor_key,
            amount_kopecks=cost,
            type="debit",
            source="bid",
            balance_after_kopecks=after.balance_kopecks,
            bonus_balance_after_kopecks=after.bonus_balance_kopecks,
            meta=meta,
        )
        session.add(entry)

    return BidDebitResult(
        ok=True,
        wallet=after,
        debited_from_bonus=from_bonus,
        debited_from_balance=from_balance,
        transaction_id=entry.id,
    )


async def charge_bid(
    contractor_id: object,
    task_id: object,
    *,
    application_id: object | None = None,
    cost_kopecks: int | None = None,
    on_debited: OnDebited | None = None,
    session: AsyncSession | None = None,
) -> BidDebitResult:
    """Debit a bid and run ``on_debited`` in the same transaction.

    Either both the debit and the callback's writes commit, or neither does.
    A declined debit rolls back everything, including a wallet created by
    this call, and the decline is returned. Exceptions from the callback
    roll back and propagate.
    """
    if session is None:
        async with SessionLocal() as own_session:
            return await _charge_bid(
                own_session,
                contractor_id,
                task_id,
                application_id=application_id,
                cost_kopecks=cost_kopecks,
                on_debited=on_debited,
            )
    return await _charge_bid(
        session,
        contractor_id,
        task_id,
        application_id=application_id,
        cost_kopecks=cost_kopecks,
        on_debited=on_debited,
    )


async def _charge_bid(
    session: AsyncSession,
    contractor_id: object,
    task_id: object,
    *,
    application_id: object | None,
    cost_kopecks: int | None,
    on_debited: OnDebited | None,
) -> BidDebitResult:
    try:
        async with unit_of_work(session):
            result = await debit_for_bid(
                session,
                contractor_id,
                task_id,
                application_id=application_id,
                cost_kopecks=cost_kopecks,
                commit=False,
            )
            if not result.ok:
                raise _BidDeclined(result)
            if on_debited is not None:
                await on_debited(session, result)
    except _BidDeclined as declined:
        logger.info("bid_charge_declined contractor_id=%s available=%s", contractor_id, declined.result.available)
        return declined.result
    return result


async def adjust_wallet(
    session: AsyncSession,
    contractor_id: object,
    *,
    balance_delta_kopecks: int = 0,
    bonus_delta_kopecks: int = 0,
    actor_id: str | None = None,
    commit: bool = True,
) -> WalletSnapshot:
    # Admin correction of either balance; refused when a balance would go negative.
    contractor_key = parse_id(contractor_id, label="contractor id")
    async with unit_of_work(session, commit=commit):
        wallet, _ = await ensure_wallet_with_bonus(session, contractor_key)
        if balance_delta_kopecks == 0 and bonus_delta_kopecks == 0:
            return _snapshot(wallet)
        stmt = (
            update(Wallet)
            .where(
                Wallet.id == wallet.id,
                Wallet.balance_kopecks + balance_delta_kopecks >= 0,
                Wallet.bonus_balance_kopecks + bonus_delta_kopecks >= 0,
            )
            .values(
                balance_kopecks=Wallet.balance_kopecks + balance_delta_kopecks,
                bonus_balance_kopecks=Wallet.bonus_balance_kopecks + bonus_delta_kopecks,
            )
            .returning(Wallet.balance_kopecks, Wallet.bonus_balance_kopecks)
            .execution_options(synchronize_session=False)
        )
        row = (await session.execute(stmt)).one_or_none()
        if row is None:
            raise WalletUpdateError("wallet balance cannot go negative")
        # One ledger row per balance that moved, so mixed-sign corrections stay readable.
        for balance_name, delta in (("balance", balance_delta_kopecks), ("bonus", bonus_delta_kopecks)):
            if delta == 0:
                continue
            session.add(
                WalletTransaction(
                    id=new_id(),
                    wallet_id=wallet.id,
                    contractor_id=contractor_key,
                    amount_kopecks=abs(delta),
                    type="credit" if delta > 0 else "debit",
                    source="manual_adjustment",
                    balance_after_kopecks=int(row[0]),
                    bonus_balance_after_kopecks=int(row[1]),
                    meta={"actor_id": actor_id, "balance": balance_name},
                )
            )
    logger.info(
        "wallet_adjusted contractor_id=%s balance_delta=%s bonus_delta=%s",
        contractor_key,
        balance_delta_kopecks,
        bonus_delta_kopecks,
    )
    return WalletSnapshot(
        wallet_id=wallet.id,
        contractor_id=contractor_key,
        balance_kopecks=int(row[0]),
        bonus_balance_kopecks=int(row[1]),
        currency=wallet.currency or "RUB",
    )


async def list_wallet_transactions(
    session: AsyncSession,
    contractor_id: object,
    *,
    limit: int = 50,
) -> list[WalletTransaction]:
    contractor_key = parse_id(contractor_id, label="contractor id")
    rows = await session.execute(
        select(WalletTransaction)
        .where(WalletTransaction.contractor_id == contractor_key)
        .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        .limit(limit)
    )
    return list(rows.scalars().all())


async def get_wallet_snapshot(session: AsyncSession, contractor_id: object) -> WalletSnapshot:
    # Reading a wallet provisions it, matching the first visit to the wallet page.
    contractor_key = parse_id(contractor_id, label="contractor id")
    async with unit_of_work(session):
        wallet, _ = await ensure_wallet_with_bonus(session, contractor_key)
    return _snapshot(wallet)
