"""Typed payment-processor events.

Raw webhook bodies are parsed once, after signature verification, into a
closed set of event models.  Every processor event type maps to exactly one
:class:`PaymentEventKind`; types the reconciler does not act on map to
``UNHANDLED`` so dispatch is an exhaustive match rather than a string
switch with an implicit fallthrough.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from billing_core.errors import ValidationFailure

# ---------------------------------------------------------------------------
# Kinds
# ---------------------------------------------------------------------------


class PaymentEventKind(str, Enum):
    """Processor event types the reconciler understands."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAID = "invoice.payment_succeeded"
    INVOICE_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    UNHANDLED = "unhandled"

    @classmethod
    def from_type(cls, raw_type: str) -> PaymentEventKind:
        try:
            kind = cls(raw_type)
        except ValueError:
            return cls.UNHANDLED
        return kind


def _timestamp(value: Any) -> datetime | None:
    """Convert a processor epoch-seconds value into an aware UTC datetime."""
    if value in (None, "", 0):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    return datetime.fromtimestamp(int(value), tz=UTC)


def _ref(value: Any) -> str | None:
    """Return an object id whether the field is expanded or a bare string."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value) or None


# ---------------------------------------------------------------------------
# Event data models
# ---------------------------------------------------------------------------


class CheckoutCompleted(BaseModel):
    session_id: str
    tenant_id: str | None = None
    plan_id: str | None = None
    period: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> CheckoutCompleted:
        metadata = obj.get("metadata") or {}
        return cls(
            session_id=obj.get("id", ""),
            tenant_id=metadata.get("tenant_id") or None,
            plan_id=metadata.get("plan_id") or None,
            period=metadata.get("period") or None,
            customer_id=_ref(obj.get("customer")),
            subscription_id=_ref(obj.get("subscription")),
        )


class InvoicePaid(BaseModel):
    invoice_id: str
    customer_id: str | None = None
    subscription_id: str | None = None
    payment_intent_id: str | None = None
    amount: Decimal = Decimal("0")
    currency: str = "brl"
    period_end: datetime | None = None

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> InvoicePaid:
        return cls(
            invoice_id=obj.get("id", ""),
            customer_id=_ref(obj.get("customer")),
            subscription_id=_ref(obj.get("subscription")),
            payment_intent_id=_payment_intent_of(obj),
            amount=Decimal(int(obj.get("amount_paid") or 0)) / 100,
            currency=(obj.get("currency") or "brl").lower(),
            period_end=_invoice_period_end(obj),
        )


class InvoiceFailed(BaseModel):
    invoice_id: str
    customer_id: str | None = None

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> InvoiceFailed:
        return cls(invoice_id=obj.get("id", ""), customer_id=_ref(obj.get("customer")))


class SubscriptionDeleted(BaseModel):
    subscription_id: str
    customer_id: str | None = None

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> SubscriptionDeleted:
        return cls(subscription_id=obj.get("id", ""), customer_id=_ref(obj.get("customer")))


class SubscriptionUpdated(BaseModel):
    subscription_id: str
    customer_id: str | None = None
    status: str | None = None
    ended_at: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    price_id: str | None = None

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> SubscriptionUpdated:
        items = (obj.get("items") or {}).get("data") or []
        first = items[0] if items else {}
        period_end = first.get("current_period_end") or obj.get("current_period_end")
        return cls(
            subscription_id=obj.get("id", ""),
            customer_id=_ref(obj.get("customer")),
            status=obj.get("status"),
            ended_at=_timestamp(obj.get("ended_at")),
            current_period_end=_timestamp(period_end),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            price_id=_ref(first.get("price")),
        )


class Unhandled(BaseModel):
    object_type: str | None = None


def _payment_intent_of(invoice: dict[str, Any]) -> str | None:
    # Newer API versions expose payments as a list; older ones a top-level field.
    payments = (invoice.get("payments") or {}).get("data") or []
    for entry in payments:
        if entry.get("status") == "paid":
            intent = _ref((entry.get("payment") or {}).get("payment_intent"))
            if intent:
                return intent
    return _ref(invoice.get("payment_intent"))


def _invoice_period_end(invoice: dict[str, Any]) -> datetime | None:
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        end = (line.get("period") or {}).get("end")
        if end:
            return _timestamp(end)
    return _timestamp(invoice.get("period_end"))


EventData = CheckoutCompleted | InvoicePaid | InvoiceFailed | SubscriptionDeleted | SubscriptionUpdated | Unhandled

_PARSERS: dict[PaymentEventKind, Any] = {
    PaymentEventKind.CHECKOUT_COMPLETED: CheckoutCompleted,
    PaymentEventKind.INVOICE_PAID: InvoicePaid,
    PaymentEventKind.INVOICE_FAILED: InvoiceFailed,
    PaymentEventKind.SUBSCRIPTION_DELETED: SubscriptionDeleted,
    PaymentEventKind.SUBSCRIPTION_UPDATED: SubscriptionUpdated,
}


class PaymentEvent(BaseModel):
    """A verified processor event with its typed payload."""

    id: str
    kind: PaymentEventKind
    raw_type: str
    created: datetime | None = None
    livemode: bool = False
    data: EventData = Field(default_factory=Unhandled)


def parse_payment_event(body: dict[str, Any]) -> PaymentEvent:
    """Build a :class:`PaymentEvent` from a decoded webhook body.

    Raises
    ------
    ValidationFailure
        If the body is not a processor event envelope.
    """
    if not isinstance(body, dict) or "type" not in body:
        raise ValidationFailure("Webhook body is not an event envelope")

    raw_type = str(body["type"])
    kind = PaymentEventKind.from_type(raw_type)
    obj = (body.get("data") or {}).get("object") or {}
    if not isinstance(obj, dict):
        raise ValidationFailure("Webhook event has no data object")

    parser = _PARSERS.get(kind)
    data: EventData = parser.from_object(obj) if parser else Unhandled(object_type=obj.get("object"))
    return PaymentEvent(
        id=str(body.get("id", "")),
        kind=kind,
        raw_type=raw_type,
        created=_timestamp(body.get("created")),
        livemode=bool(body.get("livemode", False)),
        data=data,
    )
