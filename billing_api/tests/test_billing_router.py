"""Tests for the billing HTTP endpoints.

Covers:
- Public catalog and configuration endpoints
- Role checks on subscription management
- Mapping of domain errors to HTTP responses
- Webhook acknowledgement semantics
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest
from billing_api.config import APISettings
from billing_api.dependencies import get_reconciler, get_settings
from billing_core.errors import GatewayFailure
from billing_core.licensing.ledger import LicenseLedger
from httpx import AsyncClient

STUDENT_PLAN_ID = "11111111-1111-1111-1111-111111111111"
BASIC_PLAN_ID = "22222222-2222-2222-2222-222222222222"

CREATED = 1746100800  # 2025-05-01T12:00:00Z


def _checkout_completed(event_id: str = "evt_1") -> str:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": "checkout.session.completed",
            "created": CREATED,
            "data": {
                "object": {
                    "id": "cs_1",
                    "object": "checkout.session",
                    "customer": "cus_1",
                    "subscription": "sub_1",
                    "metadata": {"tenant_id": "acme", "plan_id": BASIC_PLAN_ID, "period": "monthly"},
                }
            },
        }
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


class TestPublicCatalog:
    @pytest.mark.asyncio
    async def test_config_needs_no_auth(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/billing/config")
        assert resp.status_code == 200
        assert resp.json() == {"publishable_key": "pk_test_xxx", "billing_enabled": True}

    @pytest.mark.asyncio
    async def test_plans_cheapest_first(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/billing/plans")
        assert resp.status_code == 200
        plans = resp.json()["plans"]
        assert len(plans) == 6
        assert plans[0]["id"] == STUDENT_PLAN_ID
        assert plans[0]["has_monthly_price"] is False
        prices = [float(p["monthly_price"]) for p in plans]
        assert prices == sorted(prices)
        basic = next(p for p in plans if p["id"] == BASIC_PLAN_ID)
        assert basic["has_monthly_price"] is True
        assert basic["has_yearly_price"] is True


# ---------------------------------------------------------------------------
# Subscription management
# ---------------------------------------------------------------------------


class TestCheckout:
    @pytest.mark.asyncio
    async def test_free_plan_activates(self, client: AsyncClient, auth_headers: Callable[..., dict[str, str]]) -> None:
        resp = await client.post(
            "/api/v1/billing/checkout",
            json={"plan_id": STUDENT_PLAN_ID},
            headers=auth_headers(),
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["activated"] is True
        assert body["plan_id"] == STUDENT_PLAN_ID

        sub = await client.get("/api/v1/billing/subscription", headers=auth_headers(role="viewer"))
        assert sub.status_code == 200
        assert sub.json()["plan"]["id"] == STUDENT_PLAN_ID
        assert sub.json()["status"] == "active"

    @pytest.mark.asyncio
    async def test_paid_plan_returns_checkout_url(
        self, client: AsyncClient, auth_headers: Callable[..., dict[str, str]], mock_gateway: AsyncMock
    ) -> None:
        resp = await client.post(
            "/api/v1/billing/checkout",
            json={"plan_id": BASIC_PLAN_ID, "period": "monthly"},
            headers=auth_headers(),
        )
        assert resp.status_code == 200
        assert resp.json()["activated"] is False
        assert resp.json()["url"] == "https://checkout.stripe.test/cs_test_1"
        kwargs = mock_gateway.create_checkout_session.await_args.kwargs
        assert kwargs["customer_email"] == "owner@acme.test"
        assert kwargs["metadata"]["tenant_id"] == "acme"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("role", ["viewer", "member"])
    async def test_requires_manage_permission(
        self, client: AsyncClient, auth_headers: Callable[..., dict[str, str]], mock_gateway: AsyncMock, role: str
    ) -> None:
        resp = await client.post(
            "/api/v1/billing/checkout",
            json={"plan_id": BASIC_PLAN_ID},
            headers=auth_headers(role=role),
        )
        assert resp.status_code == 403
        mock_gateway.create_checkout_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_role_denied(self, client: AsyncClient, auth_headers: Callable[..., dict[str, str]]) -> None:
        resp = await client.get("/api/v1/billing/subscription", headers=auth_headers(role="superuser"))
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_plan_is_404(self, client: AsyncClient, auth_headers: Callable[..., dict[str, str]]) -> None:
        resp = await client.post("/api/v1/billing/checkout", json={"plan_id": "nope"}, headers=auth_headers())
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_bad_period_is_400(self, client: AsyncClient, auth_headers: Callable[..., dict[str, str]]) -> None:
        resp = await client.post(
            "/api/v1/billing/checkout",
            json={"plan_id": BASIC_PLAN_ID, "period": "weekly"},
            headers=auth_headers(),
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_failed"

    @pytest.mark.asyncio
    async def test_gateway_failure_is_502_with_processor_message(
        self, client: AsyncClient, auth_headers: Callable[..., dict[str, str]], mock_gateway: AsyncMock
    ) -> None:
        mock_gateway.create_checkout_session.side_effect = GatewayFailure("Your card was declined.")
        resp = await client.post(
            "/api/v1/billing/checkout",
            json={"plan_id": BASIC_PLAN_ID},
            headers=auth_headers(),
        )
        assert resp.status_code == 502
        assert resp.json() == {"detail": "Your card was declined.", "error": "gateway_error"}


class TestSubscription:
    @pytest.mark.asyncio
    async def test_missing_license_is_404(
        self, client: AsyncClient, auth_headers: Callable[..., dict[str, str]]
    ) -> None:
        resp = await client.get("/api/v1/billing/subscription", headers=auth_headers(role="viewer"))
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_subscription_is_tenant_scoped(
        self, client: AsyncClient, auth_headers: Callable[..., dict[str, str]]
    ) -> None:
        await client.post("/api/v1/billing/checkout", json={"plan_id": STUDENT_PLAN_ID}, headers=auth_headers())
        resp = await client.get("/api/v1/billing/subscription", headers=auth_headers(tenant_id="globex"))
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(
        self, client: AsyncClient, auth_headers: Callable[..., dict[str, str]]
    ) -> None:
        resp = await client.post("/api/v1/billing/cancel", headers=auth_headers())
        assert resp.status_code == 404
        assert resp.json()["detail"] == "No active subscription found"


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


class TestWebhook:
    @pytest.mark.asyncio
    async def test_processed_event_creates_license(
        self, client: AsyncClient, sign_webhook: Callable[..., str], in_session: Any
    ) -> None:
        body = _checkout_completed()
        resp = await client.post(
            "/api/v1/billing/webhook",
            content=body,
            headers={"Stripe-Signature": sign_webhook(body)},
        )
        assert resp.status_code == 200
        assert resp.json() == {"received": True, "status": "processed", "event_id": "evt_1"}

        row = await in_session(lambda s: LicenseLedger(s).find_active_license("acme"))
        assert row.plan_id == BASIC_PLAN_ID
        assert row.stripe_subscription_id == "sub_1"

    @pytest.mark.asyncio
    async def test_bad_signature_is_400(self, client: AsyncClient, sign_webhook: Callable[..., str]) -> None:
        body = _checkout_completed()
        resp = await client.post(
            "/api/v1/billing/webhook",
            content=body,
            headers={"Stripe-Signature": sign_webhook(body, secret="whsec_other")},
        )
        assert resp.status_code == 400
        assert resp.json() == {"error": "Webhook signature verification failed", "authentication_failed": True}

    @pytest.mark.asyncio
    async def test_missing_signature_is_400(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/billing/webhook", content=_checkout_completed())
        assert resp.status_code == 400
        assert resp.json()["authentication_failed"] is True

    @pytest.mark.asyncio
    async def test_signed_garbage_is_400(self, client: AsyncClient, sign_webhook: Callable[..., str]) -> None:
        resp = await client.post(
            "/api/v1/billing/webhook",
            content="not json",
            headers={"Stripe-Signature": sign_webhook("not json")},
        )
        assert resp.status_code == 400
        assert resp.json() == {"error": "Webhook body is not valid JSON"}

    @pytest.mark.asyncio
    async def test_processing_failure_is_500(
        self, app, client: AsyncClient, sign_webhook: Callable[..., str]
    ) -> None:
        failing = AsyncMock()
        failing.handle.side_effect = RuntimeError("database unavailable")
        app.dependency_overrides[get_reconciler] = lambda: failing

        body = _checkout_completed()
        resp = await client.post(
            "/api/v1/billing/webhook",
            content=body,
            headers={"Stripe-Signature": sign_webhook(body)},
        )
        assert resp.status_code == 500
        assert resp.json() == {"error": "Webhook processing failed"}

    @pytest.mark.asyncio
    async def test_billing_disabled_acknowledges_without_processing(
        self,
        app,
        client: AsyncClient,
        test_settings: APISettings,
        in_session: Any,
    ) -> None:
        app.dependency_overrides[get_settings] = lambda: test_settings.model_copy(update={"billing_enabled": False})

        resp = await client.post("/api/v1/billing/webhook", content=_checkout_completed())
        assert resp.status_code == 200
        assert resp.json() == {"received": True, "status": "billing_disabled"}
        assert await in_session(lambda s: LicenseLedger(s).find_active_license("acme")) is None

    @pytest.mark.asyncio
    async def test_redelivery_acknowledged_as_duplicate(
        self, client: AsyncClient, sign_webhook: Callable[..., str]
    ) -> None:
        checkout = _checkout_completed()
        await client.post(
            "/api/v1/billing/webhook",
            content=checkout,
            headers={"Stripe-Signature": sign_webhook(checkout)},
        )
        invoice = json.dumps(
            {
                "id": "evt_2",
                "object": "event",
                "type": "invoice.payment_succeeded",
                "created": CREATED + 60,
                "data": {
                    "object": {
                        "id": "in_1",
                        "object": "invoice",
                        "customer": "cus_1",
                        "subscription": "sub_1",
                        "amount_paid": 3990,
                        "currency": "brl",
                    }
                },
            }
        )
        statuses = []
        for _ in range(2):
            resp = await client.post(
                "/api/v1/billing/webhook",
                content=invoice,
                headers={"Stripe-Signature": sign_webhook(invoice)},
            )
            assert resp.status_code == 200
            statuses.append(resp.json()["status"])
        assert statuses == ["processed", "duplicate"]
