"""Outbound notifier: in-process event bus for billing domain events.

Emission is fire-and-forget.  Handler errors are logged but never
propagate, so a failed notification cannot undo or block a ledger change
that has already been committed.

Usage::

    bus = get_event_bus()
    await bus.emit(EventType.PLAN_UPDATED, tenant_id="t1", data={...})

Handlers are registered at startup by :func:`init_event_bus`.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    import httpx

    from billing_api.config import APISettings

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Domain events published to other services."""

    PLAN_UPDATED = "billing.plan_updated"
    SUBSCRIPTION_STATUS_CHANGED = "billing.subscription_status_changed"


class EventPayload(BaseModel):
    """Structured event payload dispatched to handlers."""

    event_type: EventType
    tenant_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    data: dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[EventPayload], Awaitable[None]]


class EventBus:
    """In-process event bus with concurrent async handler dispatch."""

    def __init__(self) -> None:
        self._handlers: dict[EventType | None, list[EventHandler]] = {}

    def register_handler(
        self,
        handler: EventHandler,
        *,
        event_type: EventType | None = None,
    ) -> None:
        """Register a handler for *event_type*, or for all events when ``None``."""
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug("Registered event handler %s for %s", handler.__name__, event_type or "ALL")

    async def emit(
        self,
        event_type: EventType,
        *,
        tenant_id: str,
        data: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        """Deliver an event to every matching handler.

        Parameters
        ----------
        event_type:
            The domain event that occurred.
        tenant_id:
            Tenant the event concerns.
        data:
            Event-specific payload.
        correlation_id:
            Request correlation id, when the event originates from a request.
        """
        payload = EventPayload(
            event_type=event_type,
            tenant_id=tenant_id,
            data=data or {},
            correlation_id=correlation_id or uuid.uuid4().hex,
        )

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._handlers.get(None, []))
        if not handlers:
            logger.debug("No handlers for event %s", event_type.value)
            return

        async def _safe_call(handler: EventHandler) -> None:
            try:
                await handler(payload)
            except Exception:
                logger.exception(
                    "Handler %s failed for event %s (tenant=%s)",
                    handler.__name__,
                    event_type.value,
                    tenant_id,
                )

        await asyncio.gather(*[_safe_call(h) for h in handlers])

    @property
    def handler_count(self) -> int:
        """Total number of registered handlers across all event types."""
        return sum(len(v) for v in self._handlers.values())


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


async def log_event_handler(payload: EventPayload) -> None:
    """Record every published event on the service log."""
    logger.info(
        "EVENT: %s tenant=%s corr=%s",
        payload.event_type.value,
        payload.tenant_id,
        payload.correlation_id[:8],
        extra={"event": payload.model_dump(mode="json")},
    )


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_event_bus: EventBus | None = None
_publisher: Any = None


def init_event_bus(
    settings: APISettings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> EventBus:
    """Create the global event bus with its built-in handlers.

    When ``settings.notifier_url`` is set an HTTP publisher is registered
    in addition to the log handler.
    """
    global _event_bus, _publisher  # noqa: PLW0603
    _event_bus = EventBus()
    _event_bus.register_handler(log_event_handler)

    if settings is not None and settings.notifier_url:
        from billing_api.services.notification_publisher import NotificationPublisher

        _publisher = NotificationPublisher(
            url=settings.notifier_url,
            secret=settings.notifier_secret.get_secret_value(),
            timeout=settings.notifier_timeout_seconds,
            http_client=http_client,
        )
        _event_bus.register_handler(_publisher.publish)

    logger.info("Event bus initialised with %d handler(s)", _event_bus.handler_count)
    return _event_bus


async def dispose_event_bus() -> None:
    """Close the HTTP publisher (call during shutdown)."""
    global _event_bus, _publisher  # noqa: PLW0603
    if _publisher is not None:
        await _publisher.close()
        _publisher = None
    _event_bus = None


def get_event_bus() -> EventBus:
    """Return the module-level event bus instance."""
    if _event_bus is None:
        return init_event_bus()
    return _event_bus
