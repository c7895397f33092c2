"""FastAPI dependency injection for settings, database sessions, and billing collaborators."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from billing_core.state.database import get_engine, get_session_factory_for
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_api.config import APISettings, load_api_settings
from billing_api.services.billing_gateway import StripeGateway
from billing_api.services.event_bus import EventBus
from billing_api.services.event_bus import get_event_bus as _get_global_event_bus
from billing_api.services.payment_reconciler import PaymentReconciler
from billing_api.services.storage_service import LocalStorageService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = get_session_factory_for(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that own their transaction boundary (the webhook
    reconciler) rather than sharing the request-scoped session.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that is not bound to a tenant.

    Used for public reads (plan catalog).  The session commits on clean
    exit and rolls back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_tenant_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` for an authenticated tenant request.

    Rejects the request with 401 before opening a session when the
    authentication middleware did not resolve a tenant.  Queries are
    tenant-filtered by the services and repositories that receive the
    tenant id.
    """
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_tenant_session)]
PublicSessionDep = Annotated[AsyncSession, Depends(get_db_session)]


async def get_admin_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a cross-tenant ``AsyncSession`` for the verification review queue.

    Only used by endpoints guarded by
    ``require_permission(Permission.REVIEW_VERIFICATIONS)``.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


AdminSessionDep = Annotated[AsyncSession, Depends(get_admin_session)]

# ---------------------------------------------------------------------------
# Tenant / user identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_tenant_id(request: Request) -> str:
    """Extract tenant_id from authenticated request state."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return tenant_id


TenantDep = Annotated[str, Depends(get_tenant_id)]


def get_user_identity(request: Request) -> str:
    """Extract user identity from authenticated request state."""
    return getattr(request.state, "sub", "anonymous")


UserDep = Annotated[str, Depends(get_user_identity)]


def get_user_email(request: Request) -> str | None:
    return getattr(request.state, "email", None)


EmailDep = Annotated[str | None, Depends(get_user_email)]


def get_correlation_id(request: Request) -> str | None:
    return getattr(request.state, "correlation_id", None)


CorrelationDep = Annotated[str | None, Depends(get_correlation_id)]

# ---------------------------------------------------------------------------
# Billing collaborators
# ---------------------------------------------------------------------------


def get_gateway(settings: SettingsDep) -> StripeGateway:
    """Return a Stripe gateway configured from *settings*."""
    return StripeGateway(settings)


GatewayDep = Annotated[StripeGateway, Depends(get_gateway)]


def get_storage(settings: SettingsDep) -> LocalStorageService:
    """Return the filesystem storage backend rooted at ``storage_path``."""
    return LocalStorageService(settings.storage_path)


StorageDep = Annotated[LocalStorageService, Depends(get_storage)]


def get_event_bus() -> EventBus:
    """Return the process-wide outbound notifier."""
    return _get_global_event_bus()


EventBusDep = Annotated[EventBus, Depends(get_event_bus)]


def get_reconciler(settings: SettingsDep, event_bus: EventBusDep) -> PaymentReconciler:
    """Return a reconciler that opens its own per-event transaction."""
    return PaymentReconciler(settings, get_session_factory(), event_bus)


ReconcilerDep = Annotated[PaymentReconciler, Depends(get_reconciler)]
