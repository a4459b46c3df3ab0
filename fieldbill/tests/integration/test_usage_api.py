from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from fieldbill.apps.api.main import create_app
from fieldbill.apps.api.routes import usage as usage_routes
from fieldbill.domain.ids import new_id
from fieldbill.persistence.db import SessionLocal
from fieldbill.services.audit import list_audit_events
from fieldbill.tests.utils.billing import create_subscription, org_headers


@pytest.mark.asyncio
async def test_usage_overview_shows_plan_limits() -> None:
    org_id = new_id()
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get(f"/v1/orgs/{org_id}/usage", headers=org_headers(org_id, role="viewer"))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["plan"] == "basic"
    assert data["limits"] == {"projects": 1, "seats": 5, "publications": 5, "tasks_weekly": 10}
    assert data["projects_used"] == 0
    assert response.json()["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_consume_until_limit_returns_payment_required(monkeypatch: pytest.MonkeyPatch) -> None:
    org_id = new_id()
    sent: list[dict] = []

    async def _record_webhook(*, event_type, payload, require_enabled=True):
        sent.append({"event_type": event_type, **payload})

    monkeypatch.setattr(usage_routes, "send_billing_webhook_event", _record_webhook)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post(f"/v1/orgs/{org_id}/usage/projects/consume", headers=org_headers(org_id))
        second = await client.post(f"/v1/orgs/{org_id}/usage/projects/consume", headers=org_headers(org_id))

    assert first.status_code == 200
    assert first.json()["data"] == {"kind": "projects", "plan": "basic", "used": 1, "limit": 1}
    assert second.status_code == 402
    error = second.json()["error"]
    assert error["code"] == "USAGE_LIMIT_REACHED"
    assert error["message"] == "Лимит исчерпан: 1/1"
    assert error["details"] == {"kind": "projects", "plan": "basic", "limit": 1, "used": 1}
    assert sent == [{"event_type": "usage.limit_reached", "org_id": org_id, "kind": "projects", "plan": "basic", "limit": 1, "used": 1}]

    async with SessionLocal() as session:
        events = await list_audit_events(session, org_id=org_id)
    assert [event.event_type for event in events] == ["usage.limit_reached", "usage.slot_consumed"]


@pytest.mark.asyncio
async def test_zero_override_blocks_publications() -> None:
    org_id = new_id()
    await create_subscription(org_id, plan="pro", public_tasks_limit=0)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            f"/v1/orgs/{org_id}/usage/publications/consume",
            headers=org_headers(org_id, role="manager"),
        )
    assert response.status_code == 402
    assert response.json()["error"]["details"]["limit"] == 0


@pytest.mark.asyncio
async def test_usage_routes_enforce_identity_and_scope() -> None:
    org_id = new_id()
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        anonymous = await client.get(f"/v1/orgs/{org_id}/usage")
        foreign = await client.get(f"/v1/orgs/{org_id}/usage", headers=org_headers(new_id()))
        viewer = await client.post(
            f"/v1/orgs/{org_id}/usage/tasks/consume",
            headers=org_headers(org_id, role="viewer"),
        )
        bad_role = await client.get(f"/v1/orgs/{org_id}/usage", headers=org_headers(org_id, role="root"))
        bad_kind = await client.post(f"/v1/orgs/{org_id}/usage/seats/consume", headers=org_headers(org_id))
        bad_org = await client.get("/v1/orgs/not-an-id/usage", headers=org_headers(org_id))

    assert anonymous.status_code == 401
    assert anonymous.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert foreign.status_code == 403
    assert viewer.status_code == 403
    assert bad_role.status_code == 400
    assert bad_role.json()["error"]["code"] == "AUTH_INVALID_ROLE"
    assert bad_kind.status_code == 422
    assert bad_kind.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert bad_org.status_code == 400
    assert bad_org.json()["error"]["code"] == "INVALID_IDENTIFIER"
