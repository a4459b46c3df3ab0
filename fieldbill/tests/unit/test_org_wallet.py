from __future__ import annotations

import asyncio

import pytest

from fieldbill.core.errors import WalletUpdateError
from fieldbill.domain.ids import new_id
from fieldbill.persistence.db import SessionLocal
from fieldbill.services.org_wallet import (
    credit_org_wallet,
    debit_org_wallet,
    ensure_org_wallet,
    get_org_wallet,
    list_org_wallet_transactions,
    set_org_wallet_balance,
)
from fieldbill.tests.utils.billing import create_org_wallet


@pytest.mark.asyncio
async def test_ensure_org_wallet_is_idempotent() -> None:
    org_id = new_id()
    async with SessionLocal() as session:
        wallet, created = await ensure_org_wallet(session, org_id)
        await session.commit()
        again, created_again = await ensure_org_wallet(session, org_id)
    assert created is True
    assert created_again is False
    assert again.id == wallet.id
    assert again.balance_kopecks == 0


@pytest.mark.asyncio
async def test_debit_declines_without_writing() -> None:
    org_id = new_id()
    await create_org_wallet(org_id, 100)
    async with SessionLocal() as session:
        result = await debit_org_wallet(session, org_id, 101)
        assert result.ok is False
        assert result.available_kopecks == 100
        assert await list_org_wallet_transactions(session, org_id) == []


@pytest.mark.asyncio
async def test_credit_then_debit_appends_ledger() -> None:
    org_id = new_id()
    async with SessionLocal() as session:
        balance = await credit_org_wallet(session, org_id, 1000, source="manual")
        assert balance == 1000
        result = await debit_org_wallet(session, org_id, 400, source="subscription", meta={"plan": "pro"})
        assert result.ok is True
        assert result.balance_kopecks == 600
        entries = await list_org_wallet_transactions(session, org_id)
    assert {(entry.type, entry.source, entry.balance_after_kopecks) for entry in entries} == {
        ("credit", "manual", 1000),
        ("debit", "subscription", 600),
    }
    with pytest.raises(ValueError):
        async with SessionLocal() as session:
            await credit_org_wallet(session, org_id, 0)


@pytest.mark.asyncio
async def test_concurrent_debits_keep_balance_non_negative() -> None:
    org_id = new_id()
    await create_org_wallet(org_id, 250)

    async def _debit():
        async with SessionLocal() as session:
            return await debit_org_wallet(session, org_id, 100)

    results = await asyncio.gather(*[_debit() for _ in range(5)])
    assert sum(1 for result in results if result.ok) == 2
    async with SessionLocal() as session:
        wallet = await get_org_wallet(session, org_id)
    assert wallet.balance_kopecks == 50


@pytest.mark.asyncio
async def test_admin_balance_adjustments() -> None:
    org_id = new_id()
    async with SessionLocal() as session:
        assert await set_org_wallet_balance(session, org_id, balance_kopecks=500, actor_id="ops") == 500
        assert await set_org_wallet_balance(session, org_id, delta_kopecks=-200) == 300
        with pytest.raises(WalletUpdateError):
            await set_org_wallet_balance(session, org_id, delta_kopecks=-301)
        with pytest.raises(ValueError):
            await set_org_wallet_balance(session, org_id)
        entries = await list_org_wallet_transactions(session, org_id)
    assert sorted((entry.type, entry.amount_kopecks) for entry in entries) == [("credit", 500), ("debit", 200)]
    assert all(entry.source == "manual" for entry in entries)
