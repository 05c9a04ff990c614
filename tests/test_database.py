"""Tests for database connection and session management.

Tests the async database engine configuration, session factory,
and how the gateway resolves the application factory.
"""

import pytest
from sqlalchemy import text

from app import database
from app.database import create_test_engine
from app.exceptions import ConfigurationError
from app.services.persistence import default_session_factory


@pytest.mark.asyncio
async def test_create_test_engine_creates_working_connection():
    """Test that create_test_engine creates a working async engine."""
    engine, session_factory = create_test_engine()

    async with session_factory() as session:
        result = await session.execute(text("SELECT 1"))
        assert result.scalar() == 1

    await engine.dispose()


@pytest.mark.asyncio
async def test_static_pool_shares_in_memory_database():
    """Sessions from the same test factory see the same in-memory database."""
    engine, session_factory = create_test_engine()

    async with session_factory() as session, session.begin():
        await session.execute(text("CREATE TABLE scratch (id INTEGER)"))
        await session.execute(text("INSERT INTO scratch VALUES (7)"))

    async with session_factory() as session:
        assert await session.scalar(text("SELECT id FROM scratch")) == 7

    await engine.dispose()


@pytest.mark.asyncio
async def test_session_factory_does_not_expire_on_commit():
    """expire_on_commit=False keeps attributes readable after the session closes."""
    engine, session_factory = create_test_engine()
    assert session_factory.kw["expire_on_commit"] is False
    await engine.dispose()


def test_default_session_factory_raises_when_not_configured(monkeypatch):
    """The gateway fails loudly when DATABASE_URL was not set at import."""
    monkeypatch.setattr(database, "async_session_factory", None)

    with pytest.raises(ConfigurationError, match="Database not configured"):
        default_session_factory()


def test_default_session_factory_resolved_at_call_time(monkeypatch):
    """A factory configured after import is picked up."""
    _, session_factory = create_test_engine()
    monkeypatch.setattr(database, "async_session_factory", session_factory)

    assert default_session_factory() is session_factory
