"""Async database engine and session management.

This module provides the async SQLAlchemy 2.0 engine configuration and the
session factory the persistence gateway and job leases run on.

Usage:
    from app.database import async_session_factory

    gateway = SqlPersistenceGateway(async_session_factory)

Short Transaction Pattern:
    The step controller never holds a session across a capability call.
    Every read and write opens its own short transaction:

        async with async_session_factory() as db, db.begin():
            ...
"""

import os

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.config import get_database_url

# Check if DATABASE_URL is available (may not be during import in tests)
_database_url = os.getenv("DATABASE_URL")

if _database_url:
    # Production: Create engine with configured pool
    engine = create_async_engine(
        get_database_url(),
        pool_size=10,
        max_overflow=5,
        pool_pre_ping=True,  # hosted Postgres recycles idle connections
        echo=os.getenv("DATABASE_ECHO", "").lower() == "true",
    )
else:
    # Development/Testing: Defer engine creation
    engine = None  # type: ignore[assignment]


async_session_factory: async_sessionmaker[AsyncSession] | None = (
    async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # CRITICAL: prevents attribute expiration after commit
    )
    if engine
    else None
)


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple["AsyncEngine", async_sessionmaker[AsyncSession]]:
    """Create an async engine for testing.

    In-memory SQLite uses a StaticPool so every session shares the one
    connection (and therefore the one database).

    Args:
        database_url: Test database URL (defaults to in-memory SQLite).

    Returns:
        Tuple of (engine, async_session_factory) for testing.
    """
    kwargs: dict = {"echo": False}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        kwargs["poolclass"] = StaticPool
    test_engine = create_async_engine(database_url, **kwargs)
    test_session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return test_engine, test_session_factory
