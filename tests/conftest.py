"""Shared pytest fixtures for async database testing.

This module provides reusable fixtures for testing the orchestration engine
against an in-memory SQLite database, plus a scripted fake capability
service so no test ever talks to a real generation backend.
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.capabilities import CapabilityRegistry, build_registry
from app.database import create_test_engine
from app.models import Base
from app.orchestrator.controller import ResumableStepController
from app.services.job_lease import JobLeaseManager
from app.services.job_service import JobService
from app.services.persistence import SqlPersistenceGateway
from tests.support.fake_capabilities import FakeCapabilityService


@pytest_asyncio.fixture
async def async_engine():
    """Create an async SQLite engine for testing.

    Uses in-memory SQLite with aiosqlite and a StaticPool so every session
    sees the same database. Creates all tables before yielding, disposes after.

    Yields:
        AsyncEngine: Configured test database engine.
    """
    engine, _ = create_test_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine, configured like production."""
    return async_sessionmaker(
        bind=async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def async_session(session_factory):
    """Create an async session for tests that work with models directly.

    Yields:
        AsyncSession: Database session for test operations.
    """
    async with session_factory() as session:
        yield session


@pytest.fixture
def persistence(session_factory) -> SqlPersistenceGateway:
    return SqlPersistenceGateway(session_factory)


@pytest.fixture
def leases(session_factory) -> JobLeaseManager:
    return JobLeaseManager(session_factory, ttl_seconds=60)


@pytest.fixture
def fake_capabilities() -> FakeCapabilityService:
    """Scripted capability service with sensible default responses."""
    return FakeCapabilityService()


@pytest.fixture
def registry(fake_capabilities: FakeCapabilityService) -> CapabilityRegistry:
    """Registry routing every capability to the fake, infra/qa/human_review manual."""
    return build_registry(fake_capabilities, manual=("infra", "qa", "human_review"))


@pytest.fixture
def controller(persistence, leases, registry) -> ResumableStepController:
    return ResumableStepController(persistence, leases, registry, max_parallel_tasks=1)


@pytest.fixture
def job_service(persistence, leases, controller) -> JobService:
    return JobService(persistence, leases, controller)
