"""Unit tests for database session management."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database import get_db, init_db, server_settings


def _session_factory(session):
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


@pytest.mark.unit
class TestServerSettings:
    def test_identifies_app_and_caps_statement_time(self):
        params = server_settings()

        assert params["application_name"] == "keystone_mfa"
        assert params["statement_timeout"] == "10000"


@pytest.mark.unit
@pytest.mark.asyncio
class TestGetDb:
    async def test_rolls_back_when_handler_raises(self):
        session = AsyncMock()

        with patch("app.core.database.AsyncSessionLocal", _session_factory(session)):
            gen = get_db()
            assert await gen.__anext__() is session
            with pytest.raises(RuntimeError):
                await gen.athrow(RuntimeError("handler failed"))

        session.rollback.assert_awaited_once()
        session.close.assert_awaited_once()

    async def test_normal_exit_only_closes(self):
        session = AsyncMock()

        with patch("app.core.database.AsyncSessionLocal", _session_factory(session)):
            gen = get_db()
            await gen.__anext__()
            await gen.aclose()

        session.rollback.assert_not_awaited()
        session.close.assert_awaited_once()


@pytest.mark.unit
@pytest.mark.asyncio
class TestInitDb:
    async def test_creates_mfa_tables(self):
        engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        with patch("app.core.database.engine", engine):
            await init_db()

        async with engine.connect() as conn:
            tables = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
        await engine.dispose()

        assert {"users", "user_mfa", "mfa_failed_attempts", "mfa_setup_sessions", "mfa_audit_log"} <= tables
