"""Payment Event Reconciler: applies processor webhooks to the license ledger.

Processing order for one delivery:

1. Verify the ``Stripe-Signature`` header against the webhook secret.
   Nothing is parsed before this succeeds.
2. Decode the body into a typed :class:`PaymentEvent`.
3. Apply it inside one database transaction and commit.
4. Publish outbound notifications, only after the commit.

Re-delivery is safe: checkout completion is an upsert keyed on the
tenant, invoice rows are inserted with ``ON CONFLICT DO NOTHING`` on the
processor invoice id, and status changes are plain overwrites guarded by
the event's ``created`` timestamp.  Events that reference no ledger row
and event types nobody handles are acknowledged and dropped.  Any other
failure propagates so the webhook responds 500 and the processor retries.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import stripe
from billing_core.errors import AuthenticationFailure, NotFoundError, ValidationFailure
from billing_core.licensing.catalog import PlanCatalog
from billing_core.licensing.events import (
    CheckoutCompleted,
    InvoiceFailed,
    InvoicePaid,
    PaymentEvent,
    PaymentEventKind,
    SubscriptionDeleted,
    SubscriptionUpdated,
    parse_payment_event,
)
from billing_core.licensing.ledger import LicenseLedger
from billing_core.licensing.models import PAYMENT_GRACE_WINDOW, LicenseStatus, map_external_status
from billing_core.state.repository import PaymentInvoiceRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.config import APISettings
from billing_api.services.event_bus import EventBus, EventType

logger = logging.getLogger(__name__)


class ReconcileStatus(str, Enum):
    """How a verified event was disposed of."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    STALE = "stale"
    ORPHANED = "orphaned"
    IGNORED = "ignored"


@dataclass
class Notification:
    event_type: EventType
    tenant_id: str
    data: dict[str, Any]


@dataclass
class ReconcileResult:
    event_id: str
    event_type: str
    status: ReconcileStatus
    notifications: list[Notification] = field(default_factory=list)


_Handler = Callable[[AsyncSession, PaymentEvent], Awaitable[ReconcileResult]]


class PaymentReconciler:
    """Translate verified processor events into ledger mutations.

    Parameters
    ----------
    settings:
        Supplies the webhook secret and signature tolerance.
    session_factory:
        Factory for the per-event transaction.
    event_bus:
        Outbound notifier; ``None`` disables notifications.
    """

    def __init__(
        self,
        settings: APISettings,
        session_factory: async_sessionmaker[AsyncSession],
        event_bus: EventBus | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._event_bus = event_bus
        self._handlers: dict[PaymentEventKind, _Handler] = {
            PaymentEventKind.CHECKOUT_COMPLETED: self._on_checkout_completed,
            PaymentEventKind.INVOICE_PAID: self._on_invoice_paid,
            PaymentEventKind.INVOICE_FAILED: self._on_invoice_failed,
            PaymentEventKind.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            PaymentEventKind.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            PaymentEventKind.UNHANDLED: self._on_unhandled,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def verify(self, payload: bytes, signature_header: str | None) -> dict[str, Any]:
        """Check the signature of *payload* and return the decoded body.

        Raises
        ------
        AuthenticationFailure
            If the header is missing, the secret is not configured, or the
            signature does not match.
        """
        secret = self._settings.stripe_webhook_secret.get_secret_value()
        if not secret:
            logger.error("Webhook secret is not configured; rejecting event")
            raise AuthenticationFailure("Webhook secret is not configured")
        if not signature_header:
            raise AuthenticationFailure("Missing Stripe-Signature header")

        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                text,
                signature_header,
                secret,
                self._settings.stripe_webhook_tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise AuthenticationFailure("Webhook signature verification failed") from exc

        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValidationFailure("Webhook body is not valid JSON") from exc

    async def handle(
        self,
        payload: bytes,
        signature_header: str | None,
        *,
        correlation_id: str | None = None,
    ) -> ReconcileResult:
        """Verify, apply, commit, and then notify for one webhook delivery."""
        event = parse_payment_event(self.verify(payload, signature_header))
        logger.info("Webhook received: %s (%s)", event.raw_type, event.id)

        async with self._session_factory() as session:
            try:
                result = await self.apply(session, event)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info("Webhook %s (%s) %s", event.raw_type, event.id, result.status.value)
        await self._publish(result, correlation_id)
        return result

    async def apply(self, session: AsyncSession, event: PaymentEvent) -> ReconcileResult:
        """Apply *event* within *session* without committing."""
        return await self._handlers[event.kind](session, event)

    async def _publish(self, result: ReconcileResult, correlation_id: str | None) -> None:
        if self._event_bus is None:
            return
        for note in result.notifications:
            await self._event_bus.emit(
                note.event_type,
                tenant_id=note.tenant_id,
                data=note.data,
                correlation_id=correlation_id,
            )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _result(self, event: PaymentEvent, status: ReconcileStatus, **kwargs: Any) -> ReconcileResult:
        return ReconcileResult(event_id=event.id, event_type=event.raw_type, status=status, **kwargs)

    async def _on_checkout_completed(self, session: AsyncSession, event: PaymentEvent) -> ReconcileResult:
        data: CheckoutCompleted = event.data  # type: ignore[assignment]
        if not data.tenant_id:
            logger.warning("checkout.session.completed %s has no tenant_id in metadata", data.session_id)
            return self._result(event, ReconcileStatus.IGNORED)

        plan_id = data.plan_id
        if plan_id and await PlanCatalog(session).find(plan_id) is None:
            logger.warning("Checkout %s references unknown plan %s; keeping current plan", data.session_id, plan_id)
            plan_id = None

        try:
            transition = await LicenseLedger(session).upsert_on_checkout(
                data.tenant_id,
                plan_id,
                data.customer_id,
                data.subscription_id,
                event_at=event.created,
            )
        except ValidationFailure as exc:
            logger.warning("Checkout %s dropped: %s", data.session_id, exc.message)
            return self._result(event, ReconcileStatus.ORPHANED)

        if not transition.applied:
            logger.info("Checkout %s older than license %s; skipped", data.session_id, transition.license.id)
            return self._result(event, ReconcileStatus.STALE)
        return self._result(event, ReconcileStatus.PROCESSED)

    async def _on_invoice_paid(self, session: AsyncSession, event: PaymentEvent) -> ReconcileResult:
        data: InvoicePaid = event.data  # type: ignore[assignment]
        if not data.customer_id:
            logger.warning("Invoice %s has no customer; ignored", data.invoice_id)
            return self._result(event, ReconcileStatus.IGNORED)

        paid_at = event.created or datetime.now(UTC)
        try:
            transition = await LicenseLedger(session).record_payment(
                data.customer_id,
                period_end=data.period_end,
                paid_at=paid_at,
                event_at=event.created,
            )
        except NotFoundError:
            logger.warning("Invoice %s paid by unknown customer %s; dropped", data.invoice_id, data.customer_id)
            return self._result(event, ReconcileStatus.ORPHANED)

        license_row = transition.license
        inserted = await PaymentInvoiceRepository(session).record_if_absent(
            invoice_id=str(uuid.uuid4()),
            tenant_id=license_row.tenant_id,
            license_id=license_row.id,
            stripe_invoice_id=data.invoice_id,
            stripe_payment_intent_id=data.payment_intent_id,
            amount=data.amount,
            currency=data.currency,
            status="paid",
            paid_at=paid_at,
        )
        if not inserted:
            logger.info("Invoice %s already recorded", data.invoice_id)
            return self._result(event, ReconcileStatus.DUPLICATE)

        logger.info(
            "Invoice %s recorded for tenant %s (%s %s)",
            data.invoice_id,
            license_row.tenant_id,
            data.amount,
            data.currency.upper(),
        )
        status = ReconcileStatus.PROCESSED if transition.applied else ReconcileStatus.STALE
        return self._result(event, status)

    async def _on_invoice_failed(self, session: AsyncSession, event: PaymentEvent) -> ReconcileResult:
        data: InvoiceFailed = event.data  # type: ignore[assignment]
        if not data.customer_id:
            return self._result(event, ReconcileStatus.IGNORED)
        try:
            transition = await LicenseLedger(session).mark_payment_failed(data.customer_id, event_at=event.created)
        except NotFoundError:
            logger.warning("Invoice %s failed for unknown customer %s; dropped", data.invoice_id, data.customer_id)
            return self._result(event, ReconcileStatus.ORPHANED)

        logger.warning("Payment failed for tenant %s (invoice %s)", transition.license.tenant_id, data.invoice_id)
        return self._result(event, ReconcileStatus.PROCESSED if transition.applied else ReconcileStatus.STALE)

    async def _on_subscription_deleted(self, session: AsyncSession, event: PaymentEvent) -> ReconcileResult:
        data: SubscriptionDeleted = event.data  # type: ignore[assignment]
        try:
            transition = await LicenseLedger(session).cancel_subscription(data.subscription_id, event_at=event.created)
        except NotFoundError:
            logger.warning("Deleted subscription %s has no license; dropped", data.subscription_id)
            return self._result(event, ReconcileStatus.ORPHANED)

        logger.info("Subscription %s deleted; license %s cancelled", data.subscription_id, transition.license.id)
        return self._result(event, ReconcileStatus.PROCESSED if transition.applied else ReconcileStatus.STALE)

    async def _on_subscription_updated(self, session: AsyncSession, event: PaymentEvent) -> ReconcileResult:
        data: SubscriptionUpdated = event.data  # type: ignore[assignment]

        new_status = map_external_status(data.status)
        if data.status and new_status is None:
            logger.info(
                "Subscription %s has unrecognised status %r; status unchanged", data.subscription_id, data.status
            )
        # A pending period-end cancellation is still active at the processor.
        if new_status == LicenseStatus.ACTIVE and data.cancel_at_period_end:
            new_status = LicenseStatus.CANCELLING

        end = data.ended_at or data.current_period_end
        expires_at = end + PAYMENT_GRACE_WINDOW if end else None

        plan = await PlanCatalog(session).plan_for_price(data.price_id)

        try:
            transition = await LicenseLedger(session).apply_status_transition(
                data.subscription_id,
                new_status,
                expires_at,
                plan_id=plan.id if plan else None,
                event_at=event.created,
            )
        except NotFoundError:
            logger.warning("Updated subscription %s has no license; dropped", data.subscription_id)
            return self._result(event, ReconcileStatus.ORPHANED)

        if not transition.applied:
            logger.info("Subscription update %s older than license state; skipped", event.id)
            return self._result(event, ReconcileStatus.STALE)

        license_row = transition.license
        notifications = [
            Notification(
                event_type=EventType.SUBSCRIPTION_STATUS_CHANGED,
                tenant_id=license_row.tenant_id,
                data={
                    "subscription_id": data.subscription_id,
                    "customer_id": data.customer_id,
                    "status": license_row.status,
                    "previous_status": transition.previous_status,
                    "ended_at": data.ended_at.isoformat() if data.ended_at else None,
                },
            )
        ]
        if plan is not None and transition.plan_changed:
            notifications.append(
                Notification(
                    event_type=EventType.PLAN_UPDATED,
                    tenant_id=license_row.tenant_id,
                    data={
                        "plan_id": plan.id,
                        "plan_tier": plan.tier,
                        "updated_at": license_row.updated_at.isoformat() if license_row.updated_at else None,
                    },
                )
            )
        return self._result(event, ReconcileStatus.PROCESSED, notifications=notifications)

    async def _on_unhandled(self, session: AsyncSession, event: PaymentEvent) -> ReconcileResult:
        logger.info("Unhandled Stripe event type: %s", event.raw_type)
        return self._result(event, ReconcileStatus.IGNORED)
