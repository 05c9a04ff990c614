"""Tests for JobService intake, listings and operator actions."""

import uuid

import pytest

from app.exceptions import (
    ConfigurationError,
    InvalidStateTransitionError,
    JobLockedError,
    JobNotFoundError,
    TaskNotFoundError,
)
from app.models import Capability, JobKind, JobStatus, SourceType, TaskPhase, TaskStatus
from app.schemas.job import JobCreate, ResolveTaskRequest
from app.services.job_service import JobService
from tests.support.factories import create_job, create_video_job
from tests.support.fake_capabilities import shot_bundle


async def run_until(job_service, job_id, status: JobStatus, max_steps: int = 10):
    for _ in range(max_steps):
        result = await job_service.step(job_id)
        if result.status == status or result.done:
            return result
    raise AssertionError(f"job never reached {status.value}")


class TestIntake:
    async def test_create_project_job(self, job_service, persistence) -> None:
        job = await job_service.create_job(
            JobCreate(kind=JobKind.PROJECT, title="Storefront", request_text="Build a shop")
        )

        stored = await persistence.get_job(job.id)
        assert stored.status == JobStatus.QUEUED
        assert stored.current_step == "Queued"
        assert stored.source_text is None

    async def test_text_video_stores_source_at_intake(self, job_service) -> None:
        """[P1] Text sources need no extraction, so they are stored immediately."""
        job = await job_service.create_job(
            JobCreate(kind=JobKind.VIDEO, title="Balloon", request_text="A red balloon.")
        )

        assert job.source_text == "A red balloon."
        assert job.options["captions_enabled"] is True

    async def test_explicit_captions_option_is_kept(self, job_service) -> None:
        job = await job_service.create_job(
            JobCreate(
                kind=JobKind.VIDEO,
                title="Quiet",
                request_text="No subtitles please.",
                options={"captions_enabled": False},
            )
        )
        assert job.captions_enabled is False

    async def test_step_without_controller_is_configuration_error(
        self, persistence, leases
    ) -> None:
        service = JobService(persistence, leases, controller=None)
        job = await persistence.create_job(create_job())

        with pytest.raises(ConfigurationError, match="CAPABILITY_BASE_URL"):
            await service.step(job.id)


class TestLifecycle:
    async def test_cancel(self, job_service, persistence) -> None:
        job = await persistence.create_job(create_job(status=JobStatus.IN_PROGRESS))

        cancelled = await job_service.cancel_job(job.id)

        assert cancelled.status == JobStatus.CANCELLED
        stored = await persistence.get_job(job.id)
        assert stored.status == JobStatus.CANCELLED
        assert stored.completed_at is not None

    async def test_cancel_terminal_job_rejected(self, job_service, persistence) -> None:
        job = await persistence.create_job(create_job(status=JobStatus.COMPLETED))

        with pytest.raises(InvalidStateTransitionError, match="already completed"):
            await job_service.cancel_job(job.id)

    async def test_delete(self, job_service, persistence) -> None:
        job = await persistence.create_job(create_job())

        await job_service.delete_job(job.id)

        with pytest.raises(JobNotFoundError):
            await job_service.delete_job(job.id)


class TestListings:
    async def test_task_filters(self, job_service, persistence) -> None:
        """[P1] Task listings filter by status, capability, phase and readiness."""
        job = await persistence.create_job(create_job())
        await run_until(job_service, job.id, JobStatus.IN_PROGRESS)

        all_tasks = await job_service.list_tasks(job.id)
        design = await job_service.list_tasks(job.id, capability=Capability.DESIGN)
        build = await job_service.list_tasks(job.id, phase=TaskPhase.BUILD)
        ready = await job_service.list_tasks(job.id, ready_only=True)
        completed = await job_service.list_tasks(job.id, status=TaskStatus.COMPLETED)

        assert [t.title for t in all_tasks] == ["Wireframes", "API", "Landing page"]
        assert [t.title for t in design] == ["Wireframes"]
        assert [t.title for t in build] == ["API", "Landing page"]
        assert [t.title for t in ready] == ["Wireframes"]
        assert completed == []

    async def test_phase_summary(self, job_service, persistence) -> None:
        job = await persistence.create_job(create_job())
        await run_until(job_service, job.id, JobStatus.IN_PROGRESS)
        await job_service.step(job.id)

        summary = await job_service.phase_summary(job.id)

        assert [row["phase"] for row in summary] == [TaskPhase.DESIGN, TaskPhase.BUILD]
        assert summary[0]["completed"] == 1
        assert summary[0]["progress"] == 100
        assert summary[1]["total"] == 2
        assert summary[1]["ready"] == 1

    async def test_listings_of_unknown_job_raise(self, job_service) -> None:
        with pytest.raises(JobNotFoundError):
            await job_service.list_tasks(uuid.uuid4())
        with pytest.raises(JobNotFoundError):
            await job_service.list_shots(uuid.uuid4())

    async def test_list_pending_shots(self, job_service, persistence, fake_capabilities) -> None:
        fake_capabilities.respond("image", shot_bundle)
        job = await persistence.create_job(create_video_job())
        await run_until(job_service, job.id, JobStatus.GENERATING_MEDIA)
        await job_service.step(job.id)

        shots = await job_service.list_shots(job.id)
        pending = await job_service.list_shots(job.id, pending_only=True)

        assert len(shots) == 4
        assert len(pending) == 3


class TestOperatorActions:
    async def _project_in_progress(self, job_service, persistence):
        job = await persistence.create_job(create_job())
        await run_until(job_service, job.id, JobStatus.IN_PROGRESS)
        return job

    async def test_retry_completed_task_before_dependents_ran(
        self, job_service, persistence
    ) -> None:
        """[P1] A completed task may be redone while nothing consumed it."""
        job = await self._project_in_progress(job_service, persistence)
        await job_service.step(job.id)
        first = (await persistence.list_tasks(job.id))[0]
        assert first.status == TaskStatus.COMPLETED

        retried = await job_service.retry_task(job.id, first.id)

        assert retried.status == TaskStatus.READY
        assert retried.output_text is None
        tasks = await persistence.list_tasks(job.id)
        assert tasks[1].status == TaskStatus.PENDING

    async def test_retry_rejected_when_dependents_ran(self, job_service, persistence) -> None:
        """[P0] A completed task whose output was consumed cannot be retried."""
        job = await self._project_in_progress(job_service, persistence)
        await job_service.step(job.id)
        await job_service.step(job.id)
        first = (await persistence.list_tasks(job.id))[0]

        with pytest.raises(InvalidStateTransitionError, match="dependent task"):
            await job_service.retry_task(job.id, first.id)

    async def test_resolve_requires_blocked_task(self, job_service, persistence) -> None:
        job = await self._project_in_progress(job_service, persistence)
        task = (await persistence.list_tasks(job.id))[0]

        with pytest.raises(InvalidStateTransitionError, match="Only blocked tasks"):
            await job_service.resolve_task(job.id, task.id, ResolveTaskRequest())

    async def test_unknown_task(self, job_service, persistence) -> None:
        job = await self._project_in_progress(job_service, persistence)

        with pytest.raises(TaskNotFoundError):
            await job_service.retry_task(job.id, uuid.uuid4())

    async def test_actions_on_terminal_job_rejected(self, job_service, persistence) -> None:
        job = await self._project_in_progress(job_service, persistence)
        task = (await persistence.list_tasks(job.id))[0]
        await job_service.cancel_job(job.id)

        with pytest.raises(InvalidStateTransitionError, match="already cancelled"):
            await job_service.retry_task(job.id, task.id)

    async def test_actions_respect_the_lease(self, job_service, persistence, leases) -> None:
        """[P1] Operator actions never race a running step."""
        job = await self._project_in_progress(job_service, persistence)
        task = (await persistence.list_tasks(job.id))[0]
        await leases.acquire(job.id, "running-step")

        with pytest.raises(JobLockedError):
            await job_service.retry_task(job.id, task.id)

    async def test_url_video_leaves_source_for_extraction(self, job_service) -> None:
        job = await job_service.create_job(
            JobCreate(
                kind=JobKind.VIDEO,
                title="Article",
                source_type=SourceType.URL,
                source_ref={"url": "https://example.test/a"},
            )
        )
        assert job.source_text is None
        assert job.source_ref["url"] == "https://example.test/a"
