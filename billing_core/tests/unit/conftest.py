"""Shared fixtures for billing core unit tests.

Each test gets a fresh on-disk SQLite database (under ``tmp_path``) with
all tables created and the default plan catalog seeded.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from billing_core.licensing.catalog import PlanCatalog
from billing_core.state.sqlite_adapter import create_local_tables, get_local_engine
from billing_core.state.tables import PaymentPlanTable
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

PriceRefSetter = Callable[[AsyncSession, str, str], Awaitable[PaymentPlanTable]]


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(tmp_path / "billing.db")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        await PlanCatalog(session).seed_defaults()
        await session.commit()
    return factory


@pytest_asyncio.fixture()
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


async def _set_price_refs(session: AsyncSession, plan_id: str, suffix: str) -> PaymentPlanTable:
    plan = await session.get(PaymentPlanTable, plan_id)
    assert plan is not None
    plan.stripe_product_id = f"prod_{suffix}"
    plan.stripe_price_id_monthly = f"price_{suffix}_monthly"
    plan.stripe_price_id_yearly = f"price_{suffix}_yearly"
    if plan.extra_seat_price and plan.extra_seat_price > Decimal("0"):
        plan.stripe_price_id_per_seat = f"price_{suffix}_seat"
    await session.flush()
    return plan


@pytest.fixture()
def set_price_refs() -> PriceRefSetter:
    """Attach fake processor price references to a seeded plan."""
    return _set_price_refs
