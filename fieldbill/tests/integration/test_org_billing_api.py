from __future__ import annotations

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from fieldbill.apps.api.main import create_app
from fieldbill.domain.ids import new_id
from fieldbill.domain.periods import utc_now
from fieldbill.persistence.db import SessionLocal
from fieldbill.services.org_wallet import credit_org_wallet, debit_org_wallet
from fieldbill.services.subscription_billing import UNPAID_REASON
from fieldbill.tests.utils.billing import create_subscription, org_headers


@pytest.mark.asyncio
async def test_org_wallet_and_ledger() -> None:
    org_id = new_id()
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        empty = await client.get(f"/v1/orgs/{org_id}/wallet", headers=org_headers(org_id, role="manager"))

        async with SessionLocal() as session:
            await credit_org_wallet(session, org_id, 10_000, source="topup")
            await debit_org_wallet(session, org_id, 2_500, source="storage_overage", meta={"hour_key": "x"})

        funded = await client.get(f"/v1/orgs/{org_id}/wallet", headers=org_headers(org_id))
        ledger = await client.get(
            f"/v1/orgs/{org_id}/wallet/transactions",
            params={"limit": 10},
            headers=org_headers(org_id),
        )
        executor = await client.get(f"/v1/orgs/{org_id}/wallet", headers=org_headers(org_id, role="executor"))

    assert empty.json()["data"] == {"org_id": org_id, "balance_kopecks": 0, "currency": "RUB"}
    assert funded.json()["data"]["balance_kopecks"] == 7_500
    entries = ledger.json()["data"]
    assert sorted((entry["type"], entry["balance_after_kopecks"]) for entry in entries) == [
        ("credit", 10_000),
        ("debit", 7_500),
    ]
    assert executor.status_code == 403


@pytest.mark.asyncio
async def test_subscription_state_and_grace() -> None:
    org_id = new_id()
    now = utc_now()
    await create_subscription(org_id, plan="pro", status="past_due", period_end=now - timedelta(days=1))
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        before = await client.get(f"/v1/orgs/{org_id}/subscription", headers=org_headers(org_id, role="viewer"))
        viewer_grace = await client.post(
            f"/v1/orgs/{org_id}/subscription/grace",
            headers=org_headers(org_id, role="viewer"),
        )
        grace = await client.post(f"/v1/orgs/{org_id}/subscription/grace", headers=org_headers(org_id))

    state = before.json()["data"]
    assert state["plan"] == "pro"
    assert state["read_only"] is True
    assert state["reason"] == UNPAID_REASON
    assert state["grace_available"] is True
    assert viewer_grace.status_code == 403
    assert grace.status_code == 200
    assert grace.json()["data"]["read_only"] is False
    assert grace.json()["data"]["grace_available"] is False
    assert grace.json()["data"]["grace_until"] is not None


@pytest.mark.asyncio
async def test_grace_without_subscription_is_not_found() -> None:
    org_id = new_id()
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(f"/v1/orgs/{org_id}/subscription/grace", headers=org_headers(org_id))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "SUBSCRIPTION_NOT_FOUND"
