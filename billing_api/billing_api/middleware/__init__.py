"""Middleware components for the billing API."""

from __future__ import annotations

from billing_api.middleware.auth import AuthenticationMiddleware
from billing_api.middleware.logging import RequestLoggingMiddleware
from billing_api.middleware.rbac import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    get_user_role,
    require_permission,
)
from billing_api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter

__all__ = [
    "AuthenticationMiddleware",
    "Permission",
    "ROLE_PERMISSIONS",
    "RequestLoggingMiddleware",
    "Role",
    "TraceContextMiddleware",
    "TraceLoggingFilter",
    "get_user_role",
    "require_permission",
]
