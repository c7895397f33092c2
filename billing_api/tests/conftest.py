"""Shared fixtures for billing API tests.

Provides a seeded on-disk SQLite database, a mocked Stripe gateway, a
recording event bus, Stripe-style webhook signing, and an async httpx
client bound to the FastAPI app.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set JWT_SECRET env var BEFORE importing application modules so the
# AuthenticationMiddleware picks up a deterministic secret instead of
# generating a random one.
_TEST_JWT_SECRET = "test-secret-key-for-billing-tests"
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from billing_api import dependencies
from billing_api.config import APISettings
from billing_api.dependencies import get_event_bus, get_gateway, get_settings
from billing_api.main import create_app
from billing_api.services.billing_gateway import StripeGateway
from billing_api.services.event_bus import EventBus, EventPayload
from billing_core.licensing.catalog import PlanCatalog
from billing_core.state.sqlite_adapter import create_local_tables, get_local_engine
from billing_core.state.tables import PaymentPlanTable
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

TEST_WEBHOOK_SECRET = "whsec_test_secret"

STUDENT_PLAN_ID = "11111111-1111-1111-1111-111111111111"
BASIC_PLAN_ID = "22222222-2222-2222-2222-222222222222"
PRO_PLAN_ID = "33333333-3333-3333-3333-333333333333"
ENTERPRISE_PLUS_PLAN_ID = "66666666-6666-6666-6666-666666666666"


# ---------------------------------------------------------------------------
# Auth tokens
# ---------------------------------------------------------------------------


def _make_dev_token(
    tenant_id: str = "acme",
    sub: str = "user-1",
    role: str = "owner",
    email: str | None = "owner@acme.test",
    ttl: float = 3600,
) -> str:
    """Generate a token signed the same way as :class:`TokenManager`."""
    now = time.time()
    payload: dict[str, Any] = {
        "sub": sub,
        "tenant_id": tenant_id,
        "iss": "billing",
        "iat": now,
        "exp": now + ttl,
        "scopes": ["read", "write"],
        "jti": "test-jti-conftest",
        "identity_kind": "user",
        "role": role,
    }
    if email:
        payload["email"] = email
    payload_json = json.dumps(payload)
    signature = hmac.new(
        _TEST_JWT_SECRET.encode("utf-8"),
        payload_json.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    token_bytes = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
    return f"bmdev.{token_bytes}.{signature}"


@pytest.fixture()
def auth_headers() -> Callable[..., dict[str, str]]:
    """Return a factory for ``Authorization`` headers (accepts ``_make_dev_token`` kwargs)."""

    def _headers(**kwargs: Any) -> dict[str, str]:
        return {"Authorization": f"Bearer {_make_dev_token(**kwargs)}"}

    return _headers


# ---------------------------------------------------------------------------
# Webhook signing
# ---------------------------------------------------------------------------


def _sign_webhook(payload: str, secret: str = TEST_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


@pytest.fixture()
def sign_webhook() -> Callable[..., str]:
    """Return a function producing a valid ``Stripe-Signature`` header for a body."""
    return _sign_webhook


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> APISettings:
    """Return settings backed by a temporary SQLite file and document root."""
    return APISettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        billing_enabled=True,
        stripe_secret_key="sk_test_xxx",
        stripe_publishable_key="pk_test_xxx",
        stripe_webhook_secret=TEST_WEBHOOK_SECRET,
        frontend_url="http://localhost:3000",
        storage_path=str(tmp_path / "documents"),
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(tmp_path / "billing.db")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory over a database seeded with the default plans.

    Basic, Pro and Enterprise Plus carry fake processor price references.
    """
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        await PlanCatalog(session).seed_defaults()
        for plan_id, suffix in ((BASIC_PLAN_ID, "basic"), (PRO_PLAN_ID, "pro"), (ENTERPRISE_PLUS_PLAN_ID, "plus")):
            plan = await session.get(PaymentPlanTable, plan_id)
            assert plan is not None
            plan.stripe_product_id = f"prod_{suffix}"
            plan.stripe_price_id_monthly = f"price_{suffix}_monthly"
            plan.stripe_price_id_yearly = f"price_{suffix}_yearly"
            if plan.extra_seat_price:
                plan.stripe_price_id_per_seat = f"price_{suffix}_seat"
        await session.commit()
    return factory


@pytest_asyncio.fixture()
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_gateway() -> AsyncMock:
    """Return a Stripe gateway double with plausible default responses."""
    gateway = AsyncMock(spec=StripeGateway)
    gateway.create_checkout_session.return_value = {
        "session_id": "cs_test_1",
        "url": "https://checkout.stripe.test/cs_test_1",
    }
    gateway.create_portal_session.return_value = {"url": "https://billing.stripe.test/session"}
    gateway.retrieve_subscription.return_value = {
        "id": "sub_1",
        "status": "active",
        "items": {"data": [{"id": "si_1", "current_period_end": 1748779200, "price": {"id": "price_basic_monthly"}}]},
    }
    gateway.preview_price_change.return_value = {"amount_due": 4000, "currency": "brl"}
    gateway.change_subscription_price.return_value = {
        "id": "sub_1",
        "status": "active",
        "items": {"data": [{"id": "si_1", "current_period_end": 1748779200, "price": {"id": "price_pro_monthly"}}]},
    }
    gateway.set_cancel_at_period_end.return_value = {
        "id": "sub_1",
        "status": "active",
        "cancel_at_period_end": True,
        "items": {"data": [{"id": "si_1", "current_period_end": 1748779200}]},
    }
    return gateway


@pytest.fixture()
def published() -> list[EventPayload]:
    """Events delivered through :func:`recording_bus`."""
    return []


@pytest.fixture()
def recording_bus(published: list[EventPayload]) -> EventBus:
    """Return an event bus that appends every event to ``published``."""
    bus = EventBus()

    async def _record(payload: EventPayload) -> None:
        published.append(payload)

    bus.register_handler(_record)
    return bus


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    monkeypatch: pytest.MonkeyPatch,
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    mock_gateway: AsyncMock,
    recording_bus: EventBus,
):
    """Create the app with the test database and collaborator overrides.

    The lifespan does not run under ``ASGITransport``, so the global
    session factory is pointed at the test database directly.
    """
    monkeypatch.setattr(dependencies, "_session_factory", session_factory)
    application = create_app()
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_gateway] = lambda: mock_gateway
    application.dependency_overrides[get_event_bus] = lambda: recording_bus
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Yield an async httpx client bound to the test app (no default auth)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


SessionRunner = Callable[[Callable[[AsyncSession], Awaitable[Any]]], Awaitable[Any]]


@pytest.fixture()
def in_session(session_factory: async_sessionmaker[AsyncSession]) -> SessionRunner:
    """Run a callback in a fresh committed session and return its result."""

    async def _run(fn: Callable[[AsyncSession], Awaitable[Any]]) -> Any:
        async with session_factory() as session:
            result = await fn(session)
            await session.commit()
            return result

    return _run
