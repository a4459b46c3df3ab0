from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest

from fieldbill.services import billing_webhook
from fieldbill.services.billing_webhook import build_billing_signature, send_billing_webhook_event


def test_build_billing_signature_matches_hmac() -> None:
    secret = "supersecret"
    payload = b'{"event":"test"}'
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    assert build_billing_signature(secret, payload) == expected


def _mock_client(monkeypatch: pytest.MonkeyPatch, status_code: int) -> list[httpx.Request]:
    # Route the webhook client through an in-process transport and keep the requests.
    seen: list[httpx.Request] = []
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status_code)

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(billing_webhook.httpx, "AsyncClient", factory)
    return seen


@pytest.mark.asyncio
async def test_disabled_webhook_is_not_sent(monkeypatch: pytest.MonkeyPatch, settings_env) -> None:
    settings_env(billing_webhook_enabled="false", billing_webhook_url="http://hooks.test/billing")
    seen = _mock_client(monkeypatch, 200)
    result = await send_billing_webhook_event(event_type="storage.read_only_enabled", payload={"org_id": "a"})
    assert result.sent is False
    assert seen == []


@pytest.mark.asyncio
async def test_unconfigured_webhook_is_not_sent(monkeypatch: pytest.MonkeyPatch, settings_env) -> None:
    settings_env(billing_webhook_enabled="true")
    seen = _mock_client(monkeypatch, 200)
    result = await send_billing_webhook_event(event_type="usage.limit_reached", payload={})
    assert result.sent is False
    assert result.message == "Billing webhook is not configured"
    assert seen == []


@pytest.mark.asyncio
async def test_webhook_is_signed(monkeypatch: pytest.MonkeyPatch, settings_env) -> None:
    settings_env(
        billing_webhook_enabled="true",
        billing_webhook_url="http://hooks.test/billing",
        billing_webhook_secret="hook-secret",
    )
    seen = _mock_client(monkeypatch, 204)
    result = await send_billing_webhook_event(
        event_type="storage.overage_charged",
        payload={"org_id": "org-1", "amount_kopecks": 7},
    )
    assert result.sent is True
    assert result.status_code == 204

    request = seen[0]
    body = request.content
    assert request.headers["X-Billing-Event"] == "storage.overage_charged"
    assert request.headers["X-Billing-Signature"] == build_billing_signature("hook-secret", body)
    envelope = json.loads(body)
    assert envelope["event_type"] == "storage.overage_charged"
    assert envelope["data"] == {"org_id": "org-1", "amount_kopecks": 7}


@pytest.mark.asyncio
async def test_rejected_webhook_reports_status(monkeypatch: pytest.MonkeyPatch, settings_env) -> None:
    settings_env(
        billing_webhook_enabled="true",
        billing_webhook_url="http://hooks.test/billing",
        billing_webhook_secret="hook-secret",
    )
    _mock_client(monkeypatch, 503)
    result = await send_billing_webhook_event(event_type="usage.limit_reached", payload={})
    assert result.sent is False
    assert result.status_code == 503
