from __future__ import annotations

import json

import httpx
import pytest

from cronshift.core.config import get_settings
from cronshift.services.notifications import NotificationGateway
from cronshift.services.telemetry import external_call_stats


@pytest.mark.asyncio
async def test_send_email_posts_sendgrid_payload(settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    gateway = NotificationGateway(settings, transport=httpx.MockTransport(handler))
    result = await gateway.send_email(subject="Rollback", html="<p>done</p>")

    assert result.sent
    assert result.status_code == 202
    body = json.loads(seen[0].content)
    assert seen[0].headers["Authorization"] == "Bearer SG.test"
    assert body["personalizations"] == [{"to": [{"email": "ops@example.com"}]}]
    assert body["from"] == {"email": "ops@example.com"}
    assert body["content"] == [{"type": "text/html", "value": "<p>done</p>"}]
    assert external_call_stats()["sendgrid.mail"]["failures"] == 0


@pytest.mark.asyncio
async def test_rejected_request_is_reported_not_raised(settings) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"errors": []}))
    result = await NotificationGateway(settings, transport=transport).send_email(subject="s", html="h", to="a@b.test")
    assert not result.sent
    assert result.status_code == 400
    assert result.message == "SendGrid responded with status 400"


@pytest.mark.asyncio
async def test_server_errors_are_retried(settings) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503 if calls["count"] == 1 else 202)

    result = await NotificationGateway(settings, transport=httpx.MockTransport(handler)).send_email(
        subject="s", html="h"
    )
    assert result.sent
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_unconfigured_gateway_skips_delivery(settings, monkeypatch) -> None:
    monkeypatch.delenv("SENDGRID_API_KEY")
    get_settings.cache_clear()

    gateway = NotificationGateway(get_settings())
    result = await gateway.send_email(subject="s", html="h")

    assert not gateway.is_configured()
    assert not result.sent
    assert result.message == "SendGrid not configured"
