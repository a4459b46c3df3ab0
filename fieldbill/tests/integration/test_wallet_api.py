from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from fieldbill.apps.api.main import create_app
from fieldbill.domain.ids import new_id
from fieldbill.persistence.db import SessionLocal
from fieldbill.services.audit import list_audit_events
from fieldbill.services.billing_config import get_billing_config
from fieldbill.tests.utils.billing import contractor_headers, create_contractor_wallet, org_headers


@pytest.mark.asyncio
async def test_first_visit_grants_signup_bonus() -> None:
    contractor_id = new_id()
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.get("/v1/wallet/me", headers=contractor_headers(contractor_id))
        second = await client.get("/v1/wallet/me", headers=contractor_headers(contractor_id))
        ledger = await client.get("/v1/wallet/me/transactions", headers=contractor_headers(contractor_id))
        org_user = await client.get("/v1/wallet/me", headers=org_headers(new_id()))

    assert first.status_code == 200
    wallet = first.json()["data"]
    assert wallet["bonus_balance_kopecks"] == 100_000
    assert wallet["balance_kopecks"] == 0
    assert wallet["available_kopecks"] == 100_000
    assert second.json()["data"] == wallet
    assert [(entry["source"], entry["amount_kopecks"]) for entry in ledger.json()["data"]] == [
        ("signup_bonus", 100_000)
    ]
    assert org_user.status_code == 403


@pytest.mark.asyncio
async def test_bid_charge_debits_bonus_first_and_audits() -> None:
    contractor_id = new_id()
    task_id = new_id()
    await create_contractor_wallet(contractor_id, balance=100_000, bonus=1_000)
    async with SessionLocal() as session:
        cost = (await get_billing_config(session)).bid_cost_kopecks
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/v1/bids/charge",
            json={"task_id": task_id},
            headers=contractor_headers(contractor_id),
        )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["debited_from_bonus"] == min(1_000, cost)
    assert data["debited_from_balance"] == cost - min(1_000, cost)
    assert data["wallet"]["available_kopecks"] == 101_000 - cost
    assert data["transaction_id"] is not None

    async with SessionLocal() as session:
        events = await list_audit_events(session, event_type="wallet.bid_charged", limit=50)
    assert any(event.actor_id == contractor_id and event.resource_id == task_id for event in events)


@pytest.mark.asyncio
async def test_bid_charge_declines() -> None:
    contractor_id = new_id()
    await create_contractor_wallet(contractor_id, balance=0, bonus=10)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        broke = await client.post(
            "/v1/bids/charge",
            json={"task_id": new_id()},
            headers=contractor_headers(contractor_id),
        )
        bad_task = await client.post(
            "/v1/bids/charge",
            json={"task_id": "task-42"},
            headers=contractor_headers(contractor_id),
        )

    assert broke.status_code == 402
    assert broke.json()["error"]["code"] == "INSUFFICIENT_FUNDS"
    assert broke.json()["error"]["details"] == {"available_kopecks": 10}
    assert bad_task.status_code == 400
    assert bad_task.json()["error"]["code"] == "INVALID_IDENTIFIER"
