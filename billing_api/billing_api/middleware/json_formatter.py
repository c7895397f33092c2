"""Single-line JSON log formatter.

Enabled with ``API_STRUCTURED_LOGGING=true``; the application lifespan
then replaces the root handlers with a ``StreamHandler`` using this
formatter.

Output schema per line::

    {
        "timestamp": "2026-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "billing_api.access",
        "message": "request completed",
        "trace_id": "...",          // when TraceLoggingFilter is attached
        "request": { ... },         // from RequestLoggingMiddleware
        "event": { ... },           // from the outbound notifier log handler
        "exc_info": "Traceback ..." // only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Structured payloads passed through ``extra=`` that are copied verbatim.
_STRUCTURED_FIELDS: tuple[str, ...] = ("request", "event")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        trace_id = getattr(record, "trace_id", None)
        if trace_id:
            payload["trace_id"] = trace_id
        span_id = getattr(record, "span_id", None)
        if span_id:
            payload["span_id"] = span_id

        for field in _STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
