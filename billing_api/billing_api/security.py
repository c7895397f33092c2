"""HMAC-signed bearer tokens.

Tokens have the form ``bmdev.<urlsafe-b64(payload_json)>.<hex(hmac_sha256)>``
where the HMAC is computed with ``JWT_SECRET`` over the raw payload JSON.
The payload carries the tenant, the user, and the user's role.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
import uuid
from typing import Any

from pydantic import BaseModel, SecretStr, ValidationError

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "bmdev."
TOKEN_ISSUER = "billing"


class TokenClaims(BaseModel):
    """Validated token payload."""

    sub: str
    tenant_id: str
    iss: str = TOKEN_ISSUER
    iat: float
    exp: float
    scopes: list[str] = []
    jti: str | None = None
    identity_kind: str = "user"
    role: str | None = None
    email: str | None = None


class TokenManager:
    """Issue and validate HMAC bearer tokens.

    Parameters
    ----------
    secret:
        Shared signing secret.
    ttl_seconds:
        Lifetime of tokens issued by :meth:`issue`.
    """

    def __init__(self, secret: SecretStr, ttl_seconds: int = 3600) -> None:
        self._secret = secret
        self._ttl = ttl_seconds

    def _sign(self, payload_json: str) -> str:
        return hmac.new(
            self._secret.get_secret_value().encode("utf-8"),
            payload_json.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def issue(
        self,
        tenant_id: str,
        sub: str,
        *,
        role: str = "viewer",
        email: str | None = None,
        scopes: list[str] | None = None,
    ) -> str:
        """Return a signed token for *sub* in *tenant_id*."""
        now = time.time()
        payload: dict[str, Any] = {
            "sub": sub,
            "tenant_id": tenant_id,
            "iss": TOKEN_ISSUER,
            "iat": now,
            "exp": now + self._ttl,
            "scopes": scopes or ["read", "write"],
            "jti": uuid.uuid4().hex,
            "identity_kind": "user",
            "role": role,
        }
        if email:
            payload["email"] = email
        payload_json = json.dumps(payload)
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{TOKEN_PREFIX}{encoded}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify *token* and return its claims.

        Raises
        ------
        PermissionError
            If the token is malformed, badly signed, or expired.
        """
        if not token.startswith(TOKEN_PREFIX):
            raise PermissionError("Unsupported token format")

        body = token[len(TOKEN_PREFIX) :]
        encoded, sep, signature = body.rpartition(".")
        if not sep or not encoded or not signature:
            raise PermissionError("Malformed token")

        try:
            payload_json = base64.urlsafe_b64decode(encoded.encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise PermissionError("Malformed token payload")

        if not hmac.compare_digest(self._sign(payload_json), signature):
            raise PermissionError("Invalid token signature")

        try:
            claims = TokenClaims.model_validate(json.loads(payload_json))
        except (json.JSONDecodeError, ValidationError):
            raise PermissionError("Malformed token claims")

        if claims.exp < time.time():
            raise PermissionError("Token expired")
        return claims
