"""HTTP publisher for outbound billing events.

POSTs each :class:`EventPayload` as JSON to the configured notifier URL
with an HMAC-SHA256 signature of the body.  Transport errors and non-2xx
responses are retried a bounded number of times with exponential backoff;
after that the failure is logged and dropped.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging

import httpx

from billing_api.services.event_bus import EventPayload

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 3
_BACKOFF_BASE = 1.0  # seconds: 1, 2

SIGNATURE_HEADER = "X-Billing-Signature"
EVENT_HEADER = "X-Billing-Event"
DELIVERY_HEADER = "X-Billing-Delivery"


def sign_body(body: str, secret: str) -> str:
    """Compute the hex HMAC-SHA256 of *body*; empty when no secret is set."""
    if not secret:
        return ""
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


class NotificationPublisher:
    """Deliver events to a single HTTP endpoint.

    Parameters
    ----------
    url:
        Receiver endpoint.
    secret:
        HMAC signing secret shared with the receiver.
    timeout:
        Per-attempt request timeout in seconds.
    http_client:
        Optional client, injected by tests.
    """

    def __init__(
        self,
        url: str,
        secret: str,
        *,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
        backoff_base: float = _BACKOFF_BASE,
    ) -> None:
        self._url = url
        self._secret = secret
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self._backoff_base = backoff_base

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def publish(self, payload: EventPayload) -> bool:
        """Send *payload*; returns ``True`` once a 2xx response is received."""
        body = payload.model_dump_json()
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_body(body, self._secret),
            EVENT_HEADER: payload.event_type.value,
            DELIVERY_HEADER: payload.correlation_id,
        }

        last_error: str | None = None
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            try:
                response = await self._client.post(self._url, content=body, headers=headers)
                if 200 <= response.status_code < 300:
                    logger.info(
                        "Event delivered: %s tenant=%s attempt=%d",
                        payload.event_type.value,
                        payload.tenant_id,
                        attempt,
                    )
                    return True
                last_error = f"HTTP {response.status_code}"
            except httpx.TimeoutException:
                last_error = "timeout"
            except httpx.RequestError as exc:
                last_error = str(exc)

            logger.warning(
                "Event delivery failed: %s attempt=%d/%d error=%s",
                payload.event_type.value,
                attempt,
                _MAX_ATTEMPTS,
                last_error,
            )
            if attempt < _MAX_ATTEMPTS:
                await asyncio.sleep(self._backoff_base * (2 ** (attempt - 1)))

        logger.error(
            "Event delivery exhausted retries: %s tenant=%s error=%s",
            payload.event_type.value,
            payload.tenant_id,
            last_error,
        )
        return False
