"""Authentication middleware that resolves the caller's tenant and identity.

Extracts ``Authorization: Bearer <token>`` from every request, validates
it via :class:`TokenManager`, and populates ``request.state`` with
``tenant_id``, ``sub``, ``email``, ``scopes``, and ``role``.

An ``X-Tenant-Code`` header, when present, selects the tenant (trimmed and
lower-cased).  It must name the same tenant as the token's claim; a
mismatch is rejected with 403.

Endpoints listed in ``_PUBLIC_PATHS`` bypass authentication, including the
payment webhook, which authenticates by signature instead.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
from typing import Any

from pydantic import SecretStr
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from billing_api.security import TokenManager

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-Code"

_TENANT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/billing/webhook",
        "/api/v1/billing/config",
        "/api/v1/billing/plans",
    }
)

# Prefixes that skip auth (e.g. static docs assets).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)


def _load_secret() -> SecretStr:
    """Read ``JWT_SECRET``; generate a per-process secret when unset."""
    value = os.environ.get("JWT_SECRET", "")
    if not value:
        value = f"dev-{secrets.token_hex(32)}"
        logger.warning(
            "JWT_SECRET not set; generated random per-process dev secret. Tokens will not survive process restarts."
        )
    return SecretStr(value)


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Skips public paths (health, docs, webhook, public catalog).
    2. Validates the ``Authorization: Bearer <token>`` header.
    3. Resolves the tenant from ``X-Tenant-Code`` or the token claim.
    4. Stores the identity on ``request.state``.
    5. Returns a 401/403 JSON response on failure.
    """

    def __init__(self, app: Any) -> None:
        super().__init__(app)
        self._token_manager = TokenManager(_load_secret())

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        if _is_public_path(path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(status_code=401, content={"detail": "Missing Authorization header"})

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        try:
            claims = self._token_manager.validate_token(parts[1])
        except PermissionError as exc:
            error_msg = str(exc)
            # Distinguish expired tokens (403) from invalid tokens (401).
            if "expired" in error_msg.lower():
                return JSONResponse(status_code=403, content={"detail": "Token has expired"})
            return JSONResponse(status_code=401, content={"detail": f"Invalid token: {error_msg}"})

        tenant_id = claims.tenant_id
        header_tenant = request.headers.get(TENANT_HEADER)
        if header_tenant is not None:
            resolved = header_tenant.strip().lower()
            if resolved != claims.tenant_id.strip().lower():
                logger.warning(
                    "Tenant header %s does not match token tenant %s (sub=%s)",
                    resolved,
                    claims.tenant_id,
                    claims.sub,
                )
                return JSONResponse(status_code=403, content={"detail": "Tenant does not match credentials"})
            tenant_id = resolved

        if not _TENANT_ID_RE.match(tenant_id):
            return JSONResponse(status_code=401, content={"detail": "Invalid tenant identifier"})

        request.state.tenant_id = tenant_id
        request.state.sub = claims.sub
        request.state.email = claims.email
        request.state.scopes = claims.scopes
        request.state.role = claims.role or "viewer"

        return await call_next(request)
