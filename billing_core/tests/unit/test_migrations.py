"""Tests that the alembic revisions build the same schema as the ORM tables."""

from __future__ import annotations

from pathlib import Path

import billing_core.state
import pytest
from alembic import command
from alembic.config import Config
from billing_core.state.tables import Base
from sqlalchemy import create_engine, inspect

MIGRATIONS_DIR = Path(billing_core.state.__file__).parent / "migrations"


@pytest.fixture()
def alembic_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Config:
    monkeypatch.delenv("ALEMBIC_DATABASE_URL", raising=False)
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite+aiosqlite:///{tmp_path / 'migrated.db'}")
    return config


def _inspect(tmp_path: Path):
    engine = create_engine(f"sqlite:///{tmp_path / 'migrated.db'}")
    return engine, inspect(engine)


class TestMigrations:
    def test_upgrade_creates_every_table(self, alembic_config: Config, tmp_path: Path) -> None:
        command.upgrade(alembic_config, "head")

        engine, inspector = _inspect(tmp_path)
        try:
            assert set(inspector.get_table_names()) == set(Base.metadata.tables) | {"alembic_version"}
            for table in Base.metadata.sorted_tables:
                columns = {c["name"] for c in inspector.get_columns(table.name)}
                assert columns == set(table.columns.keys()), table.name
        finally:
            engine.dispose()

    def test_partial_unique_indexes_present(self, alembic_config: Config, tmp_path: Path) -> None:
        command.upgrade(alembic_config, "head")

        engine, inspector = _inspect(tmp_path)
        try:
            licenses = {ix["name"]: ix for ix in inspector.get_indexes("tenant_licenses")}
            assert licenses["uq_tenant_licenses_active_tenant"]["unique"]
            verifications = {ix["name"]: ix for ix in inspector.get_indexes("student_verifications")}
            assert verifications["uq_student_verifications_pending_user"]["unique"]
        finally:
            engine.dispose()

    def test_downgrade_removes_tables(self, alembic_config: Config, tmp_path: Path) -> None:
        command.upgrade(alembic_config, "head")
        command.downgrade(alembic_config, "base")

        engine, inspector = _inspect(tmp_path)
        try:
            assert set(inspector.get_table_names()) == {"alembic_version"}
        finally:
            engine.dispose()
