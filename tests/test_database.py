"""Tests for the database module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import inspect, text

from agenda.database import build_engine, close_db, get_engine, get_session_factory, init_db


class TestDatabase:
    """Tests for database engine and session management."""

    @pytest.fixture(autouse=True)
    def reset_globals(self):
        """Reset module-level singletons."""
        import agenda.database as db
        db._engine = None
        db._session_factory = None
        yield
        db._engine = None
        db._session_factory = None

    def test_get_engine_creates_singleton(self) -> None:
        """get_engine returns the same engine instance."""
        with patch("agenda.database.get_settings") as mock:
            mock.return_value = MagicMock(database_url="sqlite+aiosqlite:///:memory:")
            assert get_engine() is get_engine()

    def test_get_session_factory_creates_singleton(self) -> None:
        with patch("agenda.database.get_settings") as mock:
            mock.return_value = MagicMock(database_url="sqlite+aiosqlite:///:memory:")
            assert get_session_factory() is get_session_factory()

    @pytest.mark.asyncio
    async def test_init_db_creates_tables(self, tmp_path) -> None:
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'agenda.db'}")
        await init_db(engine)
        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda sync: inspect(sync).get_table_names())
        await engine.dispose()
        assert {"credentials", "schedules", "recipients", "execution_logs"} <= set(tables)

    @pytest.mark.asyncio
    async def test_sqlite_foreign_keys_enabled(self, tmp_path) -> None:
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'agenda.db'}")
        async with engine.connect() as conn:
            enabled = (await conn.execute(text("PRAGMA foreign_keys"))).scalar()
        await engine.dispose()
        assert enabled == 1

    @pytest.mark.asyncio
    async def test_close_db_resets_singletons(self) -> None:
        import agenda.database as db

        with patch("agenda.database.get_settings") as mock:
            mock.return_value = MagicMock(database_url="sqlite+aiosqlite:///:memory:")
            get_session_factory()
        await close_db()
        assert db._engine is None
        assert db._session_factory is None
