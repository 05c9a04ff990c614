"""Tests for JobLeaseManager single-writer leases."""

import uuid

import pytest

from app.exceptions import ConfigurationError, JobLockedError, LeaseLostError
from app.models import JobStatus
from app.services.job_lease import JobLeaseManager
from app.services.persistence import SqlPersistenceGateway
from tests.support.clock import FakeClock
from tests.support.factories import create_job


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def lease_manager(session_factory, clock) -> JobLeaseManager:
    return JobLeaseManager(session_factory, ttl_seconds=30, clock=clock)


class TestAcquire:
    async def test_first_acquire_succeeds(self, lease_manager) -> None:
        assert await lease_manager.acquire(uuid.uuid4(), "worker-a") is True

    async def test_second_owner_is_refused(self, lease_manager) -> None:
        """[P0] Only one owner may hold a live lease.

        GIVEN: worker-a holds the lease on a job
        WHEN: worker-b tries to take it
        THEN: acquire returns False
        """
        job_id = uuid.uuid4()
        await lease_manager.acquire(job_id, "worker-a")

        assert await lease_manager.acquire(job_id, "worker-b") is False

    async def test_same_owner_renews(self, lease_manager) -> None:
        job_id = uuid.uuid4()
        await lease_manager.acquire(job_id, "worker-a")
        assert await lease_manager.acquire(job_id, "worker-a") is True

    async def test_expired_lease_is_taken_over(self, lease_manager, clock) -> None:
        """[P0] A crashed step's lease expires and another step proceeds."""
        job_id = uuid.uuid4()
        await lease_manager.acquire(job_id, "crashed")

        clock.now += 31

        assert await lease_manager.acquire(job_id, "worker-b") is True

    async def test_distinct_jobs_never_contend(self, lease_manager) -> None:
        assert await lease_manager.acquire(uuid.uuid4(), "worker-a") is True
        assert await lease_manager.acquire(uuid.uuid4(), "worker-b") is True

    async def test_release_frees_the_job(self, lease_manager) -> None:
        job_id = uuid.uuid4()
        await lease_manager.acquire(job_id, "worker-a")

        await lease_manager.release(job_id, "worker-a")

        assert await lease_manager.acquire(job_id, "worker-b") is True

    async def test_release_by_non_owner_is_ignored(self, lease_manager) -> None:
        job_id = uuid.uuid4()
        await lease_manager.acquire(job_id, "worker-a")

        await lease_manager.release(job_id, "worker-b")

        assert await lease_manager.acquire(job_id, "worker-b") is False


class TestHold:
    async def test_hold_releases_on_exit(self, lease_manager) -> None:
        job_id = uuid.uuid4()

        async with lease_manager.hold(job_id) as owner:
            assert owner
            assert await lease_manager.acquire(job_id, "intruder") is False

        assert await lease_manager.acquire(job_id, "intruder") is True

    async def test_hold_releases_on_error(self, lease_manager) -> None:
        job_id = uuid.uuid4()

        with pytest.raises(RuntimeError):
            async with lease_manager.hold(job_id):
                raise RuntimeError("step crashed")

        assert await lease_manager.acquire(job_id, "next") is True

    async def test_hold_raises_when_busy(self, lease_manager) -> None:
        job_id = uuid.uuid4()
        await lease_manager.acquire(job_id, "worker-a")

        with pytest.raises(JobLockedError) as exc_info:
            async with lease_manager.hold(job_id):
                pass

        assert exc_info.value.job_id == job_id


class TestFencedWrites:
    async def test_write_inside_live_hold_succeeds(self, lease_manager, persistence) -> None:
        job = await persistence.create_job(create_job())

        async with lease_manager.hold(job.id):
            job.status = JobStatus.PLANNING
            assert await persistence.save_job(job) is True

        assert (await persistence.get_job(job.id)).status == JobStatus.PLANNING

    async def test_write_after_expiry_and_takeover_is_rejected(
        self, lease_manager, persistence: SqlPersistenceGateway, clock
    ) -> None:
        """[P0] A step that outlived its lease cannot overwrite the new holder.

        GIVEN: worker-a holds the lease and the clock passes its TTL
        WHEN: worker-b takes the lease over and worker-a then saves the job
        THEN: worker-a's save raises LeaseLostError and the job is unchanged
        """
        job = await persistence.create_job(create_job())

        async with lease_manager.hold(job.id, owner="worker-a"):
            clock.now += 31
            assert await lease_manager.acquire(job.id, "worker-b") is True
            job.status = JobStatus.PLANNING
            with pytest.raises(LeaseLostError) as exc_info:
                await persistence.save_job(job)

        assert exc_info.value.operation == "save_job"
        assert (await persistence.get_job(job.id)).status == JobStatus.QUEUED
        # worker-a's exit did not release worker-b's lease
        assert await lease_manager.acquire(job.id, "worker-c") is False

    async def test_write_after_expiry_without_takeover_is_rejected(
        self, lease_manager, persistence, clock
    ) -> None:
        job = await persistence.create_job(create_job())

        async with lease_manager.hold(job.id):
            clock.now += 31
            with pytest.raises(LeaseLostError):
                await persistence.save_job(job)

    async def test_writes_outside_hold_are_not_fenced(self, lease_manager, persistence) -> None:
        job = await persistence.create_job(create_job())
        await lease_manager.acquire(job.id, "someone-else")

        assert await persistence.save_job(job) is True


class TestRequireTtlAbove:
    def test_longer_ttl_is_accepted(self, lease_manager) -> None:
        lease_manager.require_ttl_above(29.5, "a call")

    @pytest.mark.parametrize("seconds", [30, 363])
    def test_ttl_not_above_the_bound_is_rejected(self, lease_manager, seconds) -> None:
        """[P0] A TTL a single step could outlive is a configuration error."""
        with pytest.raises(ConfigurationError) as exc_info:
            lease_manager.require_ttl_above(seconds, "the worst-case capability call")

        assert "STEP_LEASE_TTL_SECONDS=30" in str(exc_info.value)
        assert "the worst-case capability call" in str(exc_info.value)
