"""Tests for the HTTP notification publisher.

Uses httpx.MockTransport for deterministic HTTP simulation.
"""

from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest
from billing_api.services.event_bus import EventPayload, EventType
from billing_api.services.notification_publisher import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    NotificationPublisher,
    sign_body,
)

URL = "https://hooks.test/billing"
SECRET = "notifier-secret"


@pytest.fixture
def payload() -> EventPayload:
    return EventPayload(
        event_type=EventType.PLAN_UPDATED,
        tenant_id="acme",
        correlation_id="corr123abc",
        data={"plan_id": "plan_pro", "plan_tier": "basic_pro"},
    )


def _publisher(handler, *, secret: str = SECRET) -> NotificationPublisher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return NotificationPublisher(URL, secret, http_client=client, backoff_base=0)


class TestSigning:
    def test_matches_manual_hmac(self) -> None:
        body = '{"event_type": "billing.plan_updated"}'
        expected = hmac.new(SECRET.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
        assert sign_body(body, SECRET) == expected

    def test_empty_secret_gives_empty_signature(self) -> None:
        assert sign_body("body", "") == ""


class TestPublish:
    @pytest.mark.asyncio
    async def test_delivers_signed_json(self, payload: EventPayload) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        assert await _publisher(handler).publish(payload) is True

        request = seen[0]
        body = request.content.decode("utf-8")
        assert str(request.url) == URL
        assert request.headers[SIGNATURE_HEADER] == sign_body(body, SECRET)
        assert request.headers[EVENT_HEADER] == "billing.plan_updated"
        assert request.headers[DELIVERY_HEADER] == "corr123abc"
        assert json.loads(body)["data"]["plan_tier"] == "basic_pro"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, payload: EventPayload) -> None:
        codes = iter([500, 503, 202])
        assert await _publisher(lambda request: httpx.Response(next(codes))).publish(payload) is True

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, payload: EventPayload) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        assert await _publisher(handler).publish(payload) is False
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, payload: EventPayload) -> None:
        attempts = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise httpx.ConnectError("connection refused", request=request)
            if attempts["n"] == 2:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200)

        assert await _publisher(handler).publish(payload) is True
        assert attempts["n"] == 3

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self, payload: EventPayload) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        publisher = NotificationPublisher(URL, SECRET, http_client=client)
        await publisher.close()
        assert client.is_closed is False
        await client.aclose()
