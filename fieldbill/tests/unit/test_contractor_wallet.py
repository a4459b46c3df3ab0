from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select

from fieldbill.core.errors import WalletUpdateError
from fieldbill.domain.ids import new_id
from fieldbill.domain.models import AuditEvent, Wallet, WalletTransaction
from fieldbill.persistence.db import SessionLocal
from fieldbill.services.audit import record_event
from fieldbill.services.wallet import (
    INSUFFICIENT_FUNDS_ERROR,
    INVALID_ID_ERROR,
    adjust_wallet,
    charge_bid,
    debit_for_bid,
    get_wallet,
    get_wallet_snapshot,
    list_wallet_transactions,
    split_charge,
)
from fieldbill.tests.utils.billing import create_contractor_wallet


async def _wallet(contractor_id: str) -> Wallet | None:
    async with SessionLocal() as session:
        return await get_wallet(session, contractor_id)


def test_split_charge_spends_bonus_first() -> None:
    assert split_charge(30, 50) == (30, 20)
    assert split_charge(80, 50) == (50, 0)
    assert split_charge(0, 50) == (0, 50)


@pytest.mark.asyncio
async def test_insufficient_funds_leaves_wallet_unchanged() -> None:
    contractor_id = new_id()
    await create_contractor_wallet(contractor_id, balance=0, bonus=30)
    async with SessionLocal() as session:
        result = await debit_for_bid(session, contractor_id, new_id(), cost_kopecks=50)
    assert result.ok is False
    assert result.available == 30
    assert result.error == INSUFFICIENT_FUNDS_ERROR
    wallet = await _wallet(contractor_id)
    assert (wallet.balance_kopecks, wallet.bonus_balance_kopecks) == (0, 30)


@pytest.mark.asyncio
async def test_debit_drains_bonus_then_balance() -> None:
    contractor_id = new_id()
    task_id = new_id()
    application_id = new_id()
    await create_contractor_wallet(contractor_id, balance=20, bonus=30)
    async with SessionLocal() as session:
        result = await debit_for_bid(
            session, contractor_id, task_id, application_id=application_id, cost_kopecks=50
        )
    assert result.ok is True
    assert (result.debited_from_bonus, result.debited_from_balance) == (30, 20)
    assert (result.wallet.balance_kopecks, result.wallet.bonus_balance_kopecks) == (0, 0)

    async with SessionLocal() as session:
        entries = await list_wallet_transactions(session, contractor_id)
    assert len(entries) == 1
    entry = entries[0]
    assert (entry.type, entry.source, entry.amount_kopecks) == ("debit", "bid", 50)
    assert (entry.balance_after_kopecks, entry.bonus_balance_after_kopecks) == (0, 0)
    assert entry.meta == {"task_id": task_id, "application_id": application_id}


@pytest.mark.asyncio
async def test_first_debit_creates_wallet_with_signup_bonus() -> None:
    contractor_id = new_id()
    async with SessionLocal() as session:
        result = await debit_for_bid(session, contractor_id, new_id(), cost_kopecks=5000)
    assert result.ok is True
    assert result.debited_from_bonus == 5000
    assert result.wallet.bonus_balance_kopecks == 100_000 - 5000

    async with SessionLocal() as session:
        sources = sorted(entry.source for entry in await list_wallet_transactions(session, contractor_id))
    assert sources == ["bid", "signup_bonus"]


@pytest.mark.asyncio
async def test_invalid_ids_are_rejected_without_writes() -> None:
    contractor_id = new_id()
    async with SessionLocal() as session:
        result = await debit_for_bid(session, contractor_id, "task-42", cost_kopecks=50)
    assert result.ok is False
    assert result.error == INVALID_ID_ERROR
    assert await _wallet(contractor_id) is None


@pytest.mark.asyncio
async def test_concurrent_debits_never_go_negative() -> None:
    contractor_id = new_id()
    await create_contractor_wallet(contractor_id, balance=100, bonus=60)

    async def _debit():
        async with SessionLocal() as session:
            return await debit_for_bid(session, contractor_id, new_id(), cost_kopecks=50)

    results = await asyncio.gather(*[_debit() for _ in range(6)])
    assert sum(1 for result in results if result.ok) == 3
    wallet = await _wallet(contractor_id)
    assert wallet.balance_kopecks >= 0
    assert wallet.bonus_balance_kopecks >= 0
    assert wallet.balance_kopecks + wallet.bonus_balance_kopecks == 10
    for result in results:
        if result.ok:
            # Bonus is used up before any real balance within one debit.
            assert result.debited_from_balance == 0 or result.wallet.bonus_balance_kopecks == 0


@pytest.mark.asyncio
async def test_charge_bid_commits_callback_writes_with_debit() -> None:
    contractor_id = new_id()
    task_id = new_id()
    await create_contractor_wallet(contractor_id, balance=100, bonus=0)

    async def _mark_paid(session, result) -> None:
        await record_event(
            session=session,
            org_id=None,
            actor_type="contractor",
            actor_id=contractor_id,
            actor_role="contractor",
            event_type="bid.paid",
            outcome="success",
            resource_id=task_id,
            commit=False,
            best_effort=False,
        )

    result = await charge_bid(contractor_id, task_id, cost_kopecks=50, on_debited=_mark_paid)
    assert result.ok is True

    async with SessionLocal() as session:
        events = (
            await session.execute(select(AuditEvent).where(AuditEvent.resource_id == task_id))
        ).scalars().all()
    assert [event.event_type for event in events] == ["bid.paid"]
    assert (await _wallet(contractor_id)).balance_kopecks == 50


@pytest.mark.asyncio
async def test_charge_bid_rolls_back_debit_when_callback_fails() -> None:
    contractor_id = new_id()
    await create_contractor_wallet(contractor_id, balance=100, bonus=0)

    async def _explode(session, result) -> None:
        raise RuntimeError("bid row update failed")

    with pytest.raises(RuntimeError):
        await charge_bid(contractor_id, new_id(), cost_kopecks=50, on_debited=_explode)

    assert (await _wallet(contractor_id)).balance_kopecks == 100
    async with SessionLocal() as session:
        assert await list_wallet_transactions(session, contractor_id) == []


@pytest.mark.asyncio
async def test_declined_charge_bid_rolls_back_new_wallet() -> None:
    contractor_id = new_id()
    called = []

    async def _never(session, result) -> None:
        called.append(result)

    result = await charge_bid(contractor_id, new_id(), cost_kopecks=10_000_000, on_debited=_never)
    assert result.ok is False
    assert result.available == 100_000
    assert called == []
    assert await _wallet(contractor_id) is None


@pytest.mark.asyncio
async def test_adjust_wallet_refuses_negative_balances() -> None:
    contractor_id = new_id()
    await create_contractor_wallet(contractor_id, balance=100, bonus=0)
    async with SessionLocal() as session:
        snapshot = await adjust_wallet(session, contractor_id, balance_delta_kopecks=250, actor_id="ops")
        assert snapshot.balance_kopecks == 350
        with pytest.raises(WalletUpdateError):
            await adjust_wallet(session, contractor_id, bonus_delta_kopecks=-1)

    async with SessionLocal() as session:
        entries = await list_wallet_transactions(session, contractor_id)
    assert [(entry.source, entry.type, entry.amount_kopecks) for entry in entries] == [
        ("manual_adjustment", "credit", 250)
    ]


@pytest.mark.asyncio
async def test_adjust_wallet_logs_each_balance_separately() -> None:
    contractor_id = new_id()
    await create_contractor_wallet(contractor_id, balance=0, bonus=500)
    async with SessionLocal() as session:
        snapshot = await adjust_wallet(
            session,
            contractor_id,
            balance_delta_kopecks=500,
            bonus_delta_kopecks=-500,
            actor_id="ops",
        )
        entries = await list_wallet_transactions(session, contractor_id)
    assert (snapshot.balance_kopecks, snapshot.bonus_balance_kopecks) == (500, 0)
    assert sorted((entry.meta["balance"], entry.type, entry.amount_kopecks) for entry in entries) == [
        ("balance", "credit", 500),
        ("bonus", "debit", 500),
    ]


@pytest.mark.asyncio
async def test_snapshot_provisions_wallet_once() -> None:
    contractor_id = new_id()
    async with SessionLocal() as session:
        first = await get_wallet_snapshot(session, contractor_id)
        second = await get_wallet_snapshot(session, contractor_id)
    assert first.wallet_id == second.wallet_id
    assert first.available_kopecks == 100_000

    async with SessionLocal() as session:
        count = len(
            (
                await session.execute(
                    select(WalletTransaction).where(WalletTransaction.contractor_id == contractor_id)
                )
            ).scalars().all()
        )
    assert count == 1
