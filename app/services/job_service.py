"""Job intake, listings and operator actions.

This module is the application-facing service used by the HTTP routes:
- Intake of project and video jobs
- Stepping through the resumable step controller
- Task listings with filters and the per-phase summary
- Operator actions: cancel, delete, retry a task, resolve a blocked task

Architecture:
- Operator actions that rewrite the task graph hold the job lease, like
  step() does, so they never race a running step
- cancel_job does not need the lease: save_job never overwrites a cancelled job
- Short transaction pattern (no capability call while a session is open)
"""

import uuid
from collections import Counter

import structlog

from app.config import get_captions_enabled_default
from app.exceptions import (
    ConfigurationError,
    InvalidStateTransitionError,
    JobNotFoundError,
    TaskNotFoundError,
)
from app.models import (
    PHASE_ORDER,
    Capability,
    Job,
    JobKind,
    JobStatus,
    Priority,
    Shot,
    SourceType,
    Task,
    TaskPhase,
    TaskStatus,
)
from app.orchestrator.controller import ResumableStepController, StepResult
from app.orchestrator.graph import TaskGraph, TaskNode
from app.orchestrator.progress import ProgressAggregator, UnitCounts
from app.orchestrator.resolver import demote, promote, ready_tasks
from app.orchestrator.state_machine import StateMachine
from app.schemas.job import JobCreate, ResolveTaskRequest
from app.services.job_lease import JobLeaseManager
from app.services.persistence import SqlPersistenceGateway

log = structlog.get_logger()

# Statuses that mean a task already ran (or is running) on its inputs
_RAN_STATUSES = frozenset(
    {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.BLOCKED}
)


class JobService:
    """Facade over persistence, leases and the step controller."""

    def __init__(
        self,
        persistence: SqlPersistenceGateway,
        leases: JobLeaseManager,
        controller: ResumableStepController | None = None,
        state_machine: StateMachine | None = None,
        aggregator: ProgressAggregator | None = None,
    ):
        self.persistence = persistence
        self.leases = leases
        self.controller = controller
        self.state_machine = state_machine or StateMachine()
        self.aggregator = aggregator or ProgressAggregator()

    # ---------------------------------------------------------------- intake

    async def create_job(self, request: JobCreate) -> Job:
        """Create a QUEUED job from an intake request."""
        options = dict(request.options)
        if request.kind == JobKind.VIDEO:
            options.setdefault("captions_enabled", get_captions_enabled_default())

        job = Job(
            id=uuid.uuid4(),
            kind=request.kind,
            status=JobStatus.QUEUED,
            title=request.title,
            request_text=request.request_text,
            source_type=request.source_type,
            source_ref=request.source_ref.model_dump() if request.source_ref else None,
            options=options,
            progress=0,
            current_step="Queued",
        )
        # Text sources are stored at intake; url/audio need the extract capability
        if request.kind == JobKind.VIDEO and request.source_type == SourceType.TEXT:
            job.source_text = request.request_text

        await self.persistence.create_job(job)
        log.info(
            "job_created",
            job_id=str(job.id),
            kind=job.kind.value,
            source_type=job.source_type.value,
        )
        return job

    async def get_job(self, job_id: uuid.UUID) -> Job:
        return await self.persistence.get_job(job_id)

    async def step(self, job_id: uuid.UUID) -> StepResult:
        """Advance the job by one unit of work.

        Raises:
            ConfigurationError: If no capabilities are configured.
            JobNotFoundError: If the job does not exist.
        """
        if self.controller is None:
            raise ConfigurationError(
                "No capabilities configured. Set CAPABILITY_BASE_URL environment variable."
            )
        return await self.controller.step(job_id)

    # ------------------------------------------------------------- lifecycle

    async def cancel_job(self, job_id: uuid.UUID) -> Job:
        """Cancel a job. A running step finishes but its result is discarded.

        Raises:
            InvalidStateTransitionError: If the job is already terminal.
        """
        job = await self.persistence.get_job(job_id)
        if not self.state_machine.cancel(job):
            raise InvalidStateTransitionError(
                f"Job is already {job.status.value}",
                from_status=job.status,
                to_status=JobStatus.CANCELLED,
            )
        job.current_step = "Cancelled"
        await self.persistence.save_job(job)
        return job

    async def delete_job(self, job_id: uuid.UUID) -> None:
        """Delete a job and all of its tasks, scenes and shots."""
        if not await self.persistence.delete_job(job_id):
            raise JobNotFoundError(job_id)

    # -------------------------------------------------------------- listings

    async def list_tasks(
        self,
        job_id: uuid.UUID,
        status: TaskStatus | None = None,
        capability: Capability | None = None,
        phase: TaskPhase | None = None,
        priority: Priority | None = None,
        ready_only: bool = False,
    ) -> list[Task]:
        """Tasks of a job, optionally filtered.

        ready_only returns the tasks the next step would pick, in dispatch order.
        """
        await self.persistence.get_job(job_id)
        tasks = await self.persistence.list_tasks(job_id)
        if ready_only:
            order = [n.id for n in ready_tasks(TaskGraph.from_rows(job_id, tasks))]
            by_id = {t.id: t for t in tasks}
            tasks = [by_id[task_id] for task_id in order]
        return [
            t
            for t in tasks
            if (status is None or t.status == status)
            and (capability is None or t.capability == capability)
            and (phase is None or t.phase == phase)
            and (priority is None or t.priority == priority)
        ]

    async def phase_summary(self, job_id: uuid.UUID) -> list[dict]:
        """Per-phase task counts, phases in delivery order, empty phases omitted."""
        await self.persistence.get_job(job_id)
        tasks = await self.persistence.list_tasks(job_id)
        by_phase: dict[TaskPhase, Counter] = {}
        for task in tasks:
            by_phase.setdefault(task.phase, Counter())[task.status] += 1

        summary = []
        for phase in sorted(by_phase, key=PHASE_ORDER.__getitem__):
            counts = by_phase[phase]
            total = sum(counts.values())
            completed = counts[TaskStatus.COMPLETED]
            summary.append(
                {
                    "phase": phase,
                    "order": PHASE_ORDER[phase],
                    "total": total,
                    "completed": completed,
                    "ready": counts[TaskStatus.READY],
                    "in_progress": counts[TaskStatus.IN_PROGRESS],
                    "blocked": counts[TaskStatus.BLOCKED],
                    "failed": counts[TaskStatus.FAILED],
                    "progress": round(100 * completed / total) if total else 0,
                }
            )
        return summary

    async def list_shots(self, job_id: uuid.UUID, pending_only: bool = False) -> list[Shot]:
        await self.persistence.get_job(job_id)
        return await self.persistence.list_shots(job_id, pending_only=pending_only)

    # ------------------------------------------------------ operator actions

    async def retry_task(self, job_id: uuid.UUID, task_id: uuid.UUID) -> Task:
        """Reset a failed, blocked or completed task to run again.

        A completed task can only be retried while none of its dependents has
        run. A STALLED job goes back to IN_PROGRESS.

        Raises:
            JobLockedError: If a step is running on the job.
            TaskNotFoundError: If the task is not part of the job.
            InvalidStateTransitionError: If the job is terminal, the task is
                in progress, or dependents already consumed it.
        """

        def reset(graph: TaskGraph, node: TaskNode) -> TaskGraph:
            if node.status == TaskStatus.COMPLETED:
                consumed = [d for d in graph.dependents_of(node.id) if d.status in _RAN_STATUSES]
                if consumed:
                    raise InvalidStateTransitionError(
                        f"Cannot retry {node.title!r}: "
                        f"{len(consumed)} dependent task(s) already ran",
                        from_status=node.status,
                        to_status=TaskStatus.PENDING,
                    )
            reset_node = node.transition(
                TaskStatus.PENDING, artifacts=None, output_text=None, error_message=None
            )
            return demote(promote(graph.with_node(reset_node)))

        return await self._rewrite_task(job_id, task_id, reset, action="task_retried")

    async def resolve_task(
        self, job_id: uuid.UUID, task_id: uuid.UUID, resolution: ResolveTaskRequest
    ) -> Task:
        """Complete a blocked task manually with the operator's output.

        Raises:
            JobLockedError: If a step is running on the job.
            TaskNotFoundError: If the task is not part of the job.
            InvalidStateTransitionError: If the job is terminal or the task is not BLOCKED.
        """

        def resolve(graph: TaskGraph, node: TaskNode) -> TaskGraph:
            if node.status != TaskStatus.BLOCKED:
                raise InvalidStateTransitionError(
                    f"Only blocked tasks can be resolved, {node.title!r} is {node.status.value}",
                    from_status=node.status,
                    to_status=TaskStatus.COMPLETED,
                )
            resolved = node.transition(
                TaskStatus.COMPLETED,
                artifacts={role: ref.model_dump() for role, ref in resolution.artifacts.items()}
                or None,
                output_text=resolution.output_text,
                error_message=None,
            )
            return promote(graph.with_node(resolved))

        return await self._rewrite_task(job_id, task_id, resolve, action="task_resolved")

    async def _rewrite_task(
        self, job_id: uuid.UUID, task_id: uuid.UUID, change, action: str
    ) -> Task:
        async with self.leases.hold(job_id):
            job = await self.persistence.get_job(job_id)
            if job.is_terminal:
                raise InvalidStateTransitionError(
                    f"Job is already {job.status.value}",
                    from_status=job.status,
                    to_status=job.status,
                )

            graph = await self.persistence.load_graph(job_id)
            node = graph.get(task_id)
            if node is None:
                raise TaskNotFoundError(job_id, task_id)

            graph = change(graph, node)
            await self.persistence.save_tasks(graph)

            if job.status == JobStatus.STALLED:
                self.state_machine.transition(job, JobStatus.IN_PROGRESS)
            counts = graph.counts()
            self.aggregator.apply(
                job,
                UnitCounts(
                    total=len(graph),
                    completed=counts[TaskStatus.COMPLETED],
                    blocked=counts[TaskStatus.BLOCKED],
                    failed=counts[TaskStatus.FAILED],
                ),
            )
            await self.persistence.save_job(job)

        log.info(action, job_id=str(job_id), task_id=str(task_id))
        return next(t for t in await self.persistence.list_tasks(job_id) if t.id == task_id)
