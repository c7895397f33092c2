"""FastAPI application entry-point for the billing service."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from billing_core.errors import (
    AuthenticationFailure,
    BillingError,
    ConflictFailure,
    GatewayFailure,
    NotFoundError,
    ValidationFailure,
    VerificationBlockedError,
)
from billing_core.licensing.catalog import PlanCatalog
from billing_core.state.database import get_session
from billing_core.state.sqlite_adapter import create_local_tables
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from billing_api import __version__
from billing_api.config import APISettings, PlatformEnv, load_api_settings
from billing_api.dependencies import dispose_engine, init_engine
from billing_api.middleware.auth import AuthenticationMiddleware
from billing_api.middleware.logging import RequestLoggingMiddleware
from billing_api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter
from billing_api.routers import billing, health, student_verification
from billing_api.services.billing_gateway import StripeGateway
from billing_api.services.catalog_sync import CatalogSyncService
from billing_api.services.event_bus import dispose_event_bus, init_event_bus

logger = logging.getLogger(__name__)

# Most specific class first; the first isinstance match wins.
_ERROR_STATUS: tuple[tuple[type[BillingError], int], ...] = (
    (AuthenticationFailure, 401),
    (NotFoundError, 404),
    (ValidationFailure, 400),
    (VerificationBlockedError, 409),
    (ConflictFailure, 409),
    (GatewayFailure, 502),
)


def status_for(exc: BillingError) -> int:
    """Return the HTTP status for a billing error."""
    for exc_type, status in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status
    return 500


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


async def _bootstrap_catalog(settings: APISettings, engine: AsyncEngine) -> None:
    """Seed default plans and, when enabled, create missing processor prices."""
    async with get_session(engine) as session:
        await PlanCatalog(session).seed_defaults()
        if settings.billing_enabled and settings.stripe_seed_products:
            if settings.stripe_secret_key.get_secret_value():
                await CatalogSyncService(session, StripeGateway(settings), settings.billing_currency).sync()
            else:
                logger.warning("Stripe secret key not configured; skipping catalog sync")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables in dev or local SQLite mode (production uses migrations).
    - Seed the default plan catalog and optionally sync processor prices.
    - Initialise the outbound event bus.

    On shutdown:
    - Close the notifier HTTP client and dispose the engine pool.
    """
    settings: APISettings = load_api_settings()

    # Refuse to start in production/staging without a token secret.
    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and not os.environ.get("JWT_SECRET"):
        raise RuntimeError(
            f"JWT_SECRET environment variable is required in {settings.platform_env.value} mode. Refusing to start."
        )
    if settings.billing_enabled and not settings.stripe_webhook_secret.get_secret_value():
        logger.warning("API_STRIPE_WEBHOOK_SECRET is not set; every webhook delivery will be rejected")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.platform_env == PlatformEnv.DEV or is_local:
        await create_local_tables(engine)

    await _bootstrap_catalog(settings, engine)

    event_bus = init_event_bus(settings)
    logger.info("Event bus initialised with %d handler(s)", event_bus.handler_count)

    if settings.structured_logging:
        from billing_api.middleware.json_formatter import JSONFormatter

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        handler.addFilter(TraceLoggingFilter())
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        logger.info("Structured JSON logging enabled")

    yield

    await dispose_event_bus()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Billing API",
        description="Tenant licensing, subscription billing, and student verification.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost last) -----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "X-Tenant-Code",
            "Accept",
        ],
    )
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(TraceContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(student_verification.router, prefix="/api/v1")
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500 or isinstance(exc, GatewayFailure):
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        else:
            logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        content: dict[str, object] = {"detail": exc.message, "error": exc.code}
        if isinstance(exc, VerificationBlockedError):
            content["blocked_until"] = exc.blocked_until.isoformat()
        return JSONResponse(status_code=status, content=content)

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn billing_api.main:app``.
app = create_app()
