"""Stripe gateway: the payment processor's checkout, portal, subscription and invoice APIs.

The SDK is synchronous, so every call runs in a worker thread and is bounded
by ``stripe_timeout_seconds``.  Idempotent reads (subscription lookups) are
retried on transient network and rate-limit errors; mutating calls are issued exactly once, since replaying them would
duplicate side effects on the processor.  Processor errors are re-raised as
:class:`GatewayFailure` carrying Stripe's own message.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar

import stripe
from billing_core.errors import GatewayFailure
from billing_core.retry import RetryConfig, async_retry_with_backoff

from billing_api.config import APISettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Transient failures worth retrying on reads.
_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (stripe.APIConnectionError, stripe.RateLimitError)

_http_client_timeout: float | None = None


def as_dict(obj: Any) -> dict[str, Any]:
    """Return a plain ``dict`` for a Stripe object (or a dict passed through)."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _to_gateway_failure(exc: stripe.StripeError) -> GatewayFailure:
    message = getattr(exc, "user_message", None) or str(exc) or "Payment processor error"
    return GatewayFailure(
        message,
        http_status=getattr(exc, "http_status", None),
        gateway_code=getattr(exc, "code", None),
    )


class StripeGateway:
    """Thin wrapper over the Stripe SDK used by the orchestrator and catalog sync.

    Parameters
    ----------
    settings:
        API settings containing Stripe credentials and timeouts.
    retry_config:
        Backoff parameters for idempotent reads.  Defaults to
        ``settings.stripe_read_max_retries`` attempts.
    """

    def __init__(self, settings: APISettings, retry_config: RetryConfig | None = None) -> None:
        self._settings = settings
        self._retry_config = retry_config or RetryConfig(max_retries=settings.stripe_read_max_retries)

    def _get_stripe(self) -> Any:
        """Configure and return the Stripe module."""
        global _http_client_timeout  # noqa: PLW0603
        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        if self._settings.stripe_api_version:
            stripe.api_version = self._settings.stripe_api_version
        # Retries are decided here, not inside the SDK.
        stripe.max_network_retries = 0
        if _http_client_timeout != self._settings.stripe_timeout_seconds:
            stripe.default_http_client = stripe.RequestsClient(timeout=self._settings.stripe_timeout_seconds)
            _http_client_timeout = self._settings.stripe_timeout_seconds
        return stripe

    async def _mutate(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", operation, exc)
            raise _to_gateway_failure(exc) from exc

    async def _read(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return await async_retry_with_backoff(
                lambda: asyncio.to_thread(fn),
                self._retry_config,
                _RETRYABLE_ERRORS,
                operation=f"stripe {operation}",
            )
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", operation, exc)
            raise _to_gateway_failure(exc) from exc

    # ------------------------------------------------------------------
    # Checkout and portal
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self,
        *,
        price_id: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_id: str | None = None,
        customer_email: str | None = None,
        extra_seat_price_id: str | None = None,
        extra_seats: int = 0,
    ) -> dict[str, Any]:
        """Create a subscription-mode checkout session.

        Returns
        -------
        dict
            ``{"session_id": ..., "url": ...}``.
        """
        sdk = self._get_stripe()
        line_items: list[dict[str, Any]] = [{"price": price_id, "quantity": 1}]
        if extra_seat_price_id and extra_seats > 0:
            line_items.append({"price": extra_seat_price_id, "quantity": extra_seats})

        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        session = as_dict(await self._mutate("checkout.create", lambda: sdk.checkout.Session.create(**params)))
        return {"session_id": session.get("id"), "url": session.get("url")}

    async def create_portal_session(self, customer_id: str, return_url: str) -> dict[str, Any]:
        """Create a billing-portal session; returns ``{"url": ...}``."""
        sdk = self._get_stripe()
        session = as_dict(
            await self._mutate(
                "portal.create",
                lambda: sdk.billing_portal.Session.create(customer=customer_id, return_url=return_url),
            )
        )
        return {"url": session.get("url")}

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        """Fetch a subscription with its items (retried on transient errors)."""
        sdk = self._get_stripe()
        sub = await self._read("subscription.retrieve", lambda: sdk.Subscription.retrieve(subscription_id))
        return as_dict(sub)

    async def preview_price_change(
        self,
        *,
        customer_id: str | None,
        subscription_id: str,
        item_id: str,
        new_price_id: str,
    ) -> dict[str, Any]:
        """Compute the prorated invoice for swapping *item_id* to *new_price_id*.

        Read-only on the processor side, so it is retried like other reads.
        """
        sdk = self._get_stripe()
        params: dict[str, Any] = {
            "subscription": subscription_id,
            "subscription_details": {
                "items": [{"id": item_id, "price": new_price_id}],
                "proration_behavior": "create_prorations",
            },
        }
        if customer_id:
            params["customer"] = customer_id
        invoice = await self._read("invoice.create_preview", lambda: sdk.Invoice.create_preview(**params))
        return as_dict(invoice)

    async def change_subscription_price(
        self,
        subscription_id: str,
        item_id: str,
        new_price_id: str,
    ) -> dict[str, Any]:
        """Swap the subscription item to *new_price_id* with proration."""
        sdk = self._get_stripe()
        sub = await self._mutate(
            "subscription.modify",
            lambda: sdk.Subscription.modify(
                subscription_id,
                items=[{"id": item_id, "price": new_price_id}],
                proration_behavior="create_prorations",
            ),
        )
        return as_dict(sub)

    async def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> dict[str, Any]:
        """Toggle deferred cancellation on the subscription."""
        sdk = self._get_stripe()
        sub = await self._mutate(
            "subscription.cancel_at_period_end",
            lambda: sdk.Subscription.modify(subscription_id, cancel_at_period_end=cancel),
        )
        return as_dict(sub)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def create_product(self, name: str, description: str | None, metadata: dict[str, str]) -> str:
        """Create a product and return its id."""
        sdk = self._get_stripe()
        params: dict[str, Any] = {"name": name, "metadata": metadata}
        if description:
            params["description"] = description
        product = as_dict(await self._mutate("product.create", lambda: sdk.Product.create(**params)))
        return str(product["id"])

    async def create_recurring_price(
        self,
        *,
        product_id: str,
        unit_amount: int,
        currency: str,
        interval: str,
        metadata: dict[str, str],
    ) -> str:
        """Create a recurring price (amount in minor units) and return its id."""
        sdk = self._get_stripe()
        price = as_dict(
            await self._mutate(
                "price.create",
                lambda: sdk.Price.create(
                    product=product_id,
                    unit_amount=unit_amount,
                    currency=currency,
                    recurring={"interval": interval},
                    metadata=metadata,
                ),
            )
        )
        return str(price["id"])
