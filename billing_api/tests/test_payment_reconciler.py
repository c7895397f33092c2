"""Tests for the payment event reconciler.

Covers:
- Signature verification before any parsing
- Checkout completion creating and updating licenses
- Idempotent invoice recording on re-delivery
- Subscription status mapping, plan correction and notifications
- Orphaned, stale and unhandled events
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
from billing_api.config import APISettings
from billing_api.services.event_bus import EventBus, EventPayload, EventType
from billing_api.services.payment_reconciler import PaymentReconciler, ReconcileStatus
from billing_core.errors import AuthenticationFailure, ValidationFailure
from billing_core.licensing.events import PaymentEventKind
from billing_core.licensing.ledger import LicenseLedger
from billing_core.licensing.models import LicenseStatus
from billing_core.state.repository import PaymentInvoiceRepository, TenantLicenseRepository
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

BASIC_PLAN_ID = "22222222-2222-2222-2222-222222222222"
PRO_PLAN_ID = "33333333-3333-3333-3333-333333333333"

CREATED = 1746100800  # 2025-05-01T12:00:00Z
PERIOD_END = 1748779200  # 2025-06-01T12:00:00Z


def _event(event_type: str, obj: dict[str, Any], *, created: int = CREATED, event_id: str = "evt_1") -> str:
    envelope = {"id": event_id, "object": "event", "type": event_type, "created": created, "data": {"object": obj}}
    return json.dumps(envelope)


def _checkout_body(tenant: str = "acme", plan_id: str | None = BASIC_PLAN_ID, **kwargs: Any) -> str:
    metadata = {"tenant_id": tenant, "period": "monthly"}
    if plan_id:
        metadata["plan_id"] = plan_id
    obj = {
        "id": "cs_1",
        "object": "checkout.session",
        "customer": "cus_1",
        "subscription": "sub_1",
        "metadata": metadata,
    }
    return _event("checkout.session.completed", obj, **kwargs)


def _invoice_body(invoice_id: str = "in_1", customer: str = "cus_1", **kwargs: Any) -> str:
    obj = {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "subscription": "sub_1",
        "amount_paid": 3990,
        "currency": "brl",
        "payment_intent": "pi_1",
        "lines": {"data": [{"period": {"start": CREATED, "end": PERIOD_END}}]},
    }
    return _event("invoice.payment_succeeded", obj, **kwargs)


def _subscription_body(
    status: str = "active",
    *,
    price: str = "price_basic_monthly",
    cancel_at_period_end: bool = False,
    **kwargs: Any,
) -> str:
    obj = {
        "id": "sub_1",
        "object": "subscription",
        "customer": "cus_1",
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {"data": [{"id": "si_1", "current_period_end": PERIOD_END, "price": {"id": price}}]},
    }
    return _event("customer.subscription.updated", obj, **kwargs)


@pytest.fixture()
def reconciler(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    recording_bus: EventBus,
) -> PaymentReconciler:
    return PaymentReconciler(test_settings, session_factory, recording_bus)


@pytest.fixture()
def deliver(reconciler: PaymentReconciler, sign_webhook: Callable[..., str]):
    """Sign *body* and push it through the reconciler."""

    async def _deliver(body: str):
        return await reconciler.handle(body.encode("utf-8"), sign_webhook(body))

    return _deliver


async def _license(session_factory: async_sessionmaker[AsyncSession], tenant: str = "acme"):
    async with session_factory() as session:
        return await LicenseLedger(session).find_active_license(tenant)


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------


class TestSignatureVerification:
    @pytest.mark.asyncio
    async def test_bad_signature_rejected_before_parsing(
        self, reconciler: PaymentReconciler, sign_webhook: Callable[..., str]
    ) -> None:
        body = _checkout_body()
        with pytest.raises(AuthenticationFailure):
            await reconciler.handle(body.encode(), sign_webhook(body, secret="whsec_wrong"))

    @pytest.mark.asyncio
    async def test_missing_header_rejected(self, reconciler: PaymentReconciler) -> None:
        with pytest.raises(AuthenticationFailure, match="Missing"):
            await reconciler.handle(_checkout_body().encode(), None)

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(
        self, reconciler: PaymentReconciler, sign_webhook: Callable[..., str]
    ) -> None:
        body = _checkout_body()
        tampered = _checkout_body(tenant="mallory")
        with pytest.raises(AuthenticationFailure):
            await reconciler.handle(tampered.encode(), sign_webhook(body))

    @pytest.mark.asyncio
    async def test_expired_timestamp_rejected(
        self, reconciler: PaymentReconciler, sign_webhook: Callable[..., str]
    ) -> None:
        body = _checkout_body()
        old = int(datetime.now(UTC).timestamp()) - 3600
        with pytest.raises(AuthenticationFailure):
            await reconciler.handle(body.encode(), sign_webhook(body, timestamp=old))

    def test_unconfigured_secret_rejects_everything(
        self,
        test_settings: APISettings,
        session_factory: async_sessionmaker[AsyncSession],
        sign_webhook: Callable[..., str],
    ) -> None:
        settings = test_settings.model_copy(update={"stripe_webhook_secret": SecretStr("")})
        reconciler = PaymentReconciler(settings, session_factory)
        body = _checkout_body()
        with pytest.raises(AuthenticationFailure, match="not configured"):
            reconciler.verify(body.encode(), sign_webhook(body))

    def test_signed_non_json_body(self, reconciler: PaymentReconciler, sign_webhook: Callable[..., str]) -> None:
        with pytest.raises(ValidationFailure):
            reconciler.verify(b"not json", sign_webhook("not json"))


# ---------------------------------------------------------------------------
# Checkout completion
# ---------------------------------------------------------------------------


class TestCheckoutCompleted:
    @pytest.mark.asyncio
    async def test_creates_license(self, deliver, session_factory) -> None:
        result = await deliver(_checkout_body())

        assert result.status is ReconcileStatus.PROCESSED
        assert result.event_id == "evt_1"
        row = await _license(session_factory)
        assert row is not None
        assert row.plan_id == BASIC_PLAN_ID
        assert row.status == LicenseStatus.ACTIVE.value
        assert row.stripe_customer_id == "cus_1"
        assert row.stripe_subscription_id == "sub_1"

    @pytest.mark.asyncio
    async def test_redelivery_keeps_single_license(self, deliver, session_factory) -> None:
        await deliver(_checkout_body())
        await deliver(_checkout_body())

        async with session_factory() as session:
            rows = await TenantLicenseRepository(session).list_for_tenant("acme")
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_unknown_plan_keeps_current_plan(self, deliver, session_factory) -> None:
        await deliver(_checkout_body())
        result = await deliver(_checkout_body(plan_id="not-a-plan", created=CREATED + 60, event_id="evt_2"))

        assert result.status is ReconcileStatus.PROCESSED
        row = await _license(session_factory)
        assert row.plan_id == BASIC_PLAN_ID

    @pytest.mark.asyncio
    async def test_unknown_plan_without_license_is_orphaned(self, deliver, session_factory) -> None:
        result = await deliver(_checkout_body(plan_id="not-a-plan"))
        assert result.status is ReconcileStatus.ORPHANED
        assert await _license(session_factory) is None

    @pytest.mark.asyncio
    async def test_missing_tenant_is_ignored(self, deliver, session_factory) -> None:
        result = await deliver(_checkout_body(tenant=""))
        assert result.status is ReconcileStatus.IGNORED

    @pytest.mark.asyncio
    async def test_redelivery_after_deletion_does_not_reopen_license(self, deliver, session_factory) -> None:
        await deliver(_checkout_body())
        deleted = _event(
            "customer.subscription.deleted",
            {"id": "sub_1", "object": "subscription", "customer": "cus_1"},
            created=CREATED + 3600,
            event_id="evt_2",
        )
        await deliver(deleted)

        result = await deliver(_checkout_body())

        assert result.status is ReconcileStatus.STALE
        assert await _license(session_factory) is None
        async with session_factory() as session:
            rows = await TenantLicenseRepository(session).list_for_tenant("acme")
        assert [(r.status, r.is_active, r.stripe_subscription_id) for r in rows] == [
            (LicenseStatus.CANCELLED.value, False, "sub_1")
        ]

    @pytest.mark.asyncio
    async def test_new_subscription_after_deletion_opens_license(self, deliver, session_factory) -> None:
        await deliver(_checkout_body())
        deleted = _event(
            "customer.subscription.deleted",
            {"id": "sub_1", "object": "subscription", "customer": "cus_1"},
            created=CREATED + 60,
            event_id="evt_2",
        )
        await deliver(deleted)

        fresh = json.loads(_checkout_body(created=CREATED + 120, event_id="evt_3"))
        fresh["data"]["object"]["subscription"] = "sub_2"
        result = await deliver(json.dumps(fresh))

        assert result.status is ReconcileStatus.PROCESSED
        row = await _license(session_factory)
        assert row.stripe_subscription_id == "sub_2"
        assert row.status == LicenseStatus.ACTIVE.value


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class TestInvoicePaid:
    @pytest.mark.asyncio
    async def test_payment_extends_expiry_with_grace(self, deliver, session_factory) -> None:
        await deliver(_checkout_body())
        result = await deliver(_invoice_body(created=CREATED + 60, event_id="evt_2"))

        assert result.status is ReconcileStatus.PROCESSED
        row = await _license(session_factory)
        period_end = datetime.fromtimestamp(PERIOD_END, tz=UTC)
        assert row.end_date == period_end
        assert row.expires_at == period_end + timedelta(days=3)
        assert row.last_payment_date == datetime.fromtimestamp(CREATED + 60, tz=UTC)
        assert row.status == LicenseStatus.ACTIVE.value
        assert row.plan_id == BASIC_PLAN_ID
        async with session_factory() as session:
            invoices = await PaymentInvoiceRepository(session).list_for_license(row.id)
        assert [(i.stripe_invoice_id, i.status) for i in invoices] == [("in_1", "paid")]

    @pytest.mark.asyncio
    async def test_redelivered_invoice_recorded_once(self, deliver, session_factory) -> None:
        await deliver(_checkout_body())
        first = await deliver(_invoice_body(created=CREATED + 60, event_id="evt_2"))
        second = await deliver(_invoice_body(created=CREATED + 60, event_id="evt_2"))

        assert first.status is ReconcileStatus.PROCESSED
        assert second.status is ReconcileStatus.DUPLICATE
        row = await _license(session_factory)
        async with session_factory() as session:
            invoices = await PaymentInvoiceRepository(session).list_for_license(row.id)
        assert len(invoices) == 1
        assert invoices[0].stripe_invoice_id == "in_1"
        assert invoices[0].amount == Decimal("39.90")

    @pytest.mark.asyncio
    async def test_unknown_customer_is_orphaned(self, deliver, session_factory) -> None:
        result = await deliver(_invoice_body(customer="cus_unknown"))
        assert result.status is ReconcileStatus.ORPHANED

    @pytest.mark.asyncio
    async def test_failed_payment_marks_license(self, deliver, session_factory) -> None:
        await deliver(_checkout_body())
        body = _event(
            "invoice.payment_failed",
            {"id": "in_2", "object": "invoice", "customer": "cus_1"},
            created=CREATED + 60,
            event_id="evt_3",
        )
        result = await deliver(body)

        assert result.status is ReconcileStatus.PROCESSED
        row = await _license(session_factory)
        assert row.status == LicenseStatus.PAYMENT_FAILED.value


# ---------------------------------------------------------------------------
# Subscription lifecycle
# ---------------------------------------------------------------------------


class TestSubscriptionUpdated:
    @pytest.mark.parametrize(
        ("external", "cancel_at_period_end", "expected"),
        [
            ("active", False, LicenseStatus.ACTIVE),
            ("active", True, LicenseStatus.CANCELLING),
            ("past_due", False, LicenseStatus.PAST_DUE),
            ("canceled", False, LicenseStatus.CANCELLED),
            ("unpaid", False, LicenseStatus.PAYMENT_FAILED),
            ("trialing", False, LicenseStatus.TRIAL),
        ],
    )
    @pytest.mark.asyncio
    async def test_status_mapping(
        self, deliver, session_factory, external: str, cancel_at_period_end: bool, expected: LicenseStatus
    ) -> None:
        await deliver(_checkout_body())
        await deliver(
            _subscription_body(external, cancel_at_period_end=cancel_at_period_end, created=CREATED + 60, event_id="e2")
        )
        async with session_factory() as session:
            row = await TenantLicenseRepository(session).get_by_subscription("sub_1")
        assert row.status == expected.value
        assert row.expires_at == datetime.fromtimestamp(PERIOD_END, tz=UTC) + timedelta(days=3)

    @pytest.mark.asyncio
    async def test_unrecognised_status_leaves_status_unchanged(self, deliver, session_factory) -> None:
        await deliver(_checkout_body())
        result = await deliver(_subscription_body("incomplete", created=CREATED + 60, event_id="e2"))
        assert result.status is ReconcileStatus.PROCESSED
        row = await _license(session_factory)
        assert row.status == LicenseStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_status_change_published_after_commit(
        self,
        deliver,
        session_factory,
        recording_bus: EventBus,
        published: list[EventPayload],
    ) -> None:
        seen_in_db: list[str] = []

        async def _check_committed(payload: EventPayload) -> None:
            row = await _license(session_factory)
            seen_in_db.append(row.status)

        recording_bus.register_handler(_check_committed, event_type=EventType.SUBSCRIPTION_STATUS_CHANGED)

        await deliver(_checkout_body())
        await deliver(_subscription_body("past_due", created=CREATED + 60, event_id="e2"))

        status_events = [p for p in published if p.event_type is EventType.SUBSCRIPTION_STATUS_CHANGED]
        assert len(status_events) == 1
        assert status_events[0].tenant_id == "acme"
        assert status_events[0].data["status"] == "past_due"
        assert status_events[0].data["previous_status"] == "active"
        assert seen_in_db == ["past_due"]

    @pytest.mark.asyncio
    async def test_price_change_corrects_plan_and_notifies(
        self, deliver, session_factory, published: list[EventPayload]
    ) -> None:
        await deliver(_checkout_body())
        await deliver(_subscription_body("active", price="price_pro_yearly", created=CREATED + 60, event_id="e2"))

        row = await _license(session_factory)
        assert row.plan_id == PRO_PLAN_ID
        plan_events = [p for p in published if p.event_type is EventType.PLAN_UPDATED]
        assert len(plan_events) == 1
        assert plan_events[0].data["plan_id"] == PRO_PLAN_ID
        assert plan_events[0].data["plan_tier"] == "BasicPro"

    @pytest.mark.asyncio
    async def test_older_update_is_stale(self, deliver, session_factory, published: list[EventPayload]) -> None:
        await deliver(_checkout_body())
        await deliver(_subscription_body("past_due", created=CREATED + 120, event_id="e2"))
        published.clear()

        result = await deliver(_subscription_body("active", created=CREATED + 60, event_id="e3"))

        assert result.status is ReconcileStatus.STALE
        assert published == []
        row = await _license(session_factory)
        assert row.status == LicenseStatus.PAST_DUE.value

    @pytest.mark.asyncio
    async def test_unknown_subscription_is_orphaned(self, deliver, published: list[EventPayload]) -> None:
        result = await deliver(_subscription_body("active"))
        assert result.status is ReconcileStatus.ORPHANED
        assert published == []


class TestSubscriptionDeleted:
    @pytest.mark.asyncio
    async def test_deletion_cancels_and_deactivates(self, deliver, session_factory) -> None:
        await deliver(_checkout_body())
        body = _event(
            "customer.subscription.deleted",
            {"id": "sub_1", "object": "subscription", "customer": "cus_1"},
            created=CREATED + 60,
            event_id="e2",
        )
        result = await deliver(body)

        assert result.status is ReconcileStatus.PROCESSED
        assert await _license(session_factory) is None
        async with session_factory() as session:
            row = await TenantLicenseRepository(session).get_by_subscription("sub_1")
        assert row.status == LicenseStatus.CANCELLED.value
        assert row.is_active is False
        assert row.cancelled_at is not None


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    def test_every_event_kind_has_a_handler(self, reconciler: PaymentReconciler) -> None:
        assert set(reconciler._handlers) == set(PaymentEventKind)

    @pytest.mark.asyncio
    async def test_unhandled_type_acknowledged(self, deliver, published: list[EventPayload]) -> None:
        result = await deliver(_event("charge.refunded", {"id": "ch_1", "object": "charge"}))
        assert result.status is ReconcileStatus.IGNORED
        assert result.event_type == "charge.refunded"
        assert published == []
