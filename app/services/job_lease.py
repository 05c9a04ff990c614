"""Short-TTL single-writer lease per job.

Only one step() may mutate a job at a time. The lease is a row in
job_leases keyed by job id and is taken atomically:

    1. UPDATE ... WHERE job_id = :id AND (expires_at < :now OR owner = :me)
    2. if no row matched: INSERT; a primary-key conflict means it is held

An expired lease (a crashed step) is simply taken over; writes made by the
step that lost it are fenced off (see persistence.fenced_writes). Distinct
jobs never contend.

Usage:
    leases = JobLeaseManager(async_session_factory)
    async with leases.hold(job_id):
        ...  # raises JobLockedError if another step holds the lease
"""

import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_step_lease_ttl_seconds
from app.exceptions import ConfigurationError, JobLockedError, PersistenceError
from app.models import JobLease
from app.services.persistence import LeaseFence, default_session_factory, fenced_writes

log = structlog.get_logger()


class JobLeaseManager:
    """Acquires and releases job leases."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        ttl_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._session_factory = session_factory or default_session_factory()
        self.ttl_seconds = ttl_seconds or get_step_lease_ttl_seconds()
        self._clock = clock

    async def acquire(self, job_id: uuid.UUID, owner: str) -> bool:
        """Try to take the lease on job_id for owner.

        Returns:
            True if owner now holds the lease, False if someone else does.

        Raises:
            PersistenceError: If the lease table cannot be read or written.
        """
        now = self._clock()
        expires_at = now + self.ttl_seconds
        try:
            async with self._session_factory() as db, db.begin():
                result = await db.execute(
                    update(JobLease)
                    .where(
                        JobLease.job_id == job_id,
                        (JobLease.expires_at < now) | (JobLease.owner == owner),
                    )
                    .values(owner=owner, expires_at=expires_at)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return True
        except SQLAlchemyError as e:
            raise PersistenceError(str(e), operation="acquire_lease") from e

        try:
            async with self._session_factory() as db, db.begin():
                db.add(JobLease(job_id=job_id, owner=owner, expires_at=expires_at))
        except IntegrityError:
            log.info("job_lease_busy", job_id=str(job_id), owner=owner)
            return False
        except SQLAlchemyError as e:
            raise PersistenceError(str(e), operation="acquire_lease") from e
        return True

    async def release(self, job_id: uuid.UUID, owner: str) -> None:
        """Release the lease if owner still holds it."""
        try:
            async with self._session_factory() as db, db.begin():
                await db.execute(
                    delete(JobLease)
                    .where(JobLease.job_id == job_id, JobLease.owner == owner)
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            # An unreleased lease only delays the next step until it expires
            log.warning(
                "job_lease_release_failed",
                job_id=str(job_id),
                owner=owner,
                error_message=str(e)[:200],
            )

    def require_ttl_above(self, seconds: float, what: str) -> None:
        """Reject a TTL that a single step could outlive.

        Raises:
            ConfigurationError: If ttl_seconds does not exceed seconds.
        """
        if self.ttl_seconds <= seconds:
            raise ConfigurationError(
                f"STEP_LEASE_TTL_SECONDS={self.ttl_seconds} must exceed {what} "
                f"({seconds:g}s), otherwise a running step can lose its lease"
            )

    @asynccontextmanager
    async def hold(self, job_id: uuid.UUID, owner: str | None = None) -> AsyncIterator[str]:
        """Hold the lease for the duration of the block.

        Gateway writes made inside the block are fenced: they fail with
        LeaseLostError once the lease has expired or changed hands.

        Raises:
            JobLockedError: If another owner holds an unexpired lease.
        """
        owner = owner or uuid.uuid4().hex
        if not await self.acquire(job_id, owner):
            raise JobLockedError(job_id)
        try:
            with fenced_writes(LeaseFence(job_id, owner, self._clock)):
                yield owner
        finally:
            await self.release(job_id, owner)
