from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from fieldbill.apps.api.main import create_app
from fieldbill.domain.ids import new_id
from fieldbill.persistence.db import SessionLocal
from fieldbill.services.storage_usage import get_storage_usage
from fieldbill.tests.utils.billing import (
    CRON_HEADERS,
    create_org_wallet,
    create_storage_usage,
    create_subscription,
    gb,
)


@pytest.mark.asyncio
async def test_internal_routes_require_cron_secret() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        missing = await client.post("/v1/internal/storage/charge-hourly", json={})
        wrong = await client.post(
            "/v1/internal/storage/charge-hourly",
            json={},
            headers={"X-Cron-Secret": "guess"},
        )
    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert wrong.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_hourly_charge_run_is_idempotent() -> None:
    paying, broke = new_id(), new_id()
    await create_storage_usage(paying, gb(6))
    await create_org_wallet(paying, 100_000)
    await create_storage_usage(broke, gb(6))
    body = {"at": "2032-03-05T10:20:00Z"}
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post("/v1/internal/storage/charge-hourly", json=body, headers=CRON_HEADERS)
        second = await client.post("/v1/internal/storage/charge-hourly", json=body, headers=CRON_HEADERS)

    assert first.status_code == 200
    run = first.json()["data"]
    assert run["hour_key"] == "2032-03-05-10"
    by_org = {item["org_id"]: item for item in run["results"]}
    assert by_org[paying]["ok"] is True
    assert by_org[paying]["skipped"] is False
    assert by_org[paying]["overage_gb"] == 1
    assert by_org[paying]["amount_kopecks"] > 0
    assert by_org[broke]["reason"] == "insufficient_funds"
    assert run["charged"] >= 1
    assert run["read_only"] >= 1

    rerun = {item["org_id"]: item for item in second.json()["data"]["results"]}
    assert rerun[paying]["reason"] == "already_charged"

    async with SessionLocal() as session:
        assert (await get_storage_usage(session, broke)).read_only is True


@pytest.mark.asyncio
async def test_reconcile_validates_ids_before_writing() -> None:
    org_id = new_id()
    await create_storage_usage(org_id, 5)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        rejected = await client.post(
            "/v1/internal/storage/reconcile",
            json={"totals": {org_id: 777, "bucket-1": 1}},
            headers=CRON_HEADERS,
        )
        async with SessionLocal() as session:
            untouched = (await get_storage_usage(session, org_id)).bytes_used
        accepted = await client.post(
            "/v1/internal/storage/reconcile",
            json={"totals": {org_id: 777}},
            headers=CRON_HEADERS,
        )
    assert rejected.status_code == 400
    assert rejected.json()["error"]["code"] == "INVALID_IDENTIFIER"
    assert untouched == 5
    assert accepted.json()["data"] == {"updated": 1}
    async with SessionLocal() as session:
        assert (await get_storage_usage(session, org_id)).bytes_used == 777


@pytest.mark.asyncio
async def test_subscription_charge_endpoint() -> None:
    org_id = new_id()
    await create_subscription(org_id, plan="pro", status="past_due")
    await create_org_wallet(org_id, 600_000)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post(f"/v1/internal/subscriptions/{org_id}/charge", headers=CRON_HEADERS)
        second = await client.post(f"/v1/internal/subscriptions/{org_id}/charge", headers=CRON_HEADERS)
        missing = await client.post(f"/v1/internal/subscriptions/{new_id()}/charge", headers=CRON_HEADERS)

    assert first.json()["data"]["ok"] is True
    assert first.json()["data"]["charged_kopecks"] == 549_000
    assert second.json()["data"]["skipped"] is True
    assert missing.status_code == 404
