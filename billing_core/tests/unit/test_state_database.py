"""Tests for engine construction and the transactional session helper."""

from __future__ import annotations

from pathlib import Path

import pytest
from billing_core.licensing.catalog import PlanCatalog
from billing_core.state.database import get_engine, get_session
from billing_core.state.sqlite_adapter import create_local_tables
from billing_core.state.tables import PaymentPlanTable
from sqlalchemy import func, select, text


class TestGetEngine:
    @pytest.mark.asyncio
    async def test_sqlite_url_uses_local_engine(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "billing.db"
        engine = get_engine(f"sqlite+aiosqlite:///{db_path}")
        try:
            assert engine.dialect.name == "sqlite"
            async with engine.connect() as conn:
                fk = (await conn.execute(text("PRAGMA foreign_keys"))).scalar_one()
            assert fk == 1
            assert db_path.parent.is_dir()
        finally:
            await engine.dispose()


class TestGetSession:
    @pytest.mark.asyncio
    async def test_commits_on_success(self, tmp_path: Path) -> None:
        engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
        await create_local_tables(engine)
        try:
            async with get_session(engine) as session:
                await PlanCatalog(session).seed_defaults()

            async with get_session(engine) as session:
                count = (await session.execute(select(func.count(PaymentPlanTable.id)))).scalar_one()
            assert count == 6
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_rolls_back_on_error(self, tmp_path: Path) -> None:
        engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
        await create_local_tables(engine)
        try:
            with pytest.raises(RuntimeError):
                async with get_session(engine) as session:
                    await PlanCatalog(session).seed_defaults()
                    await session.flush()
                    raise RuntimeError("abort")

            async with get_session(engine) as session:
                count = (await session.execute(select(func.count(PaymentPlanTable.id)))).scalar_one()
            assert count == 0
        finally:
            await engine.dispose()
