"""Resumable step controller: the single entry point that moves a job forward.

step(job_id) performs at most one bounded unit of work and returns a status
delta. Callers (the polling API, the scheduler) simply call it again until
done=True.

Algorithm:
    1. Take the job lease. Busy → done=False, nothing happens. Writes are
       fenced by the lease: a step that outlives it is discarded (retryable).
    2. Load the job. Terminal (COMPLETED/FAILED/CANCELLED) → done=True, no change.
       A job cancelled between calls is terminal, so no capability is invoked.
    3. Run the current stage once (one task batch, one shot sub-step, one
       combine call...).
    4. Recompute progress and the status line.
    5. If the stage is exhausted, advance; when the next stage is COMPLETED,
       finalize first. done=True once COMPLETED.
    6. Unit failures inside the task graph are absorbed by the dispatcher.
       Anything else that escapes the stage marks the job FAILED with the
       cause, done=True. PersistenceError is the exception: it is transient,
       the job is left as stored and the result says retryable=True.
"""

import uuid
from dataclasses import dataclass

import structlog

from app.capabilities import CapabilityRegistry
from app.config import get_max_parallel_tasks
from app.exceptions import (
    CapabilityError,
    DecompositionError,
    InvalidStateTransitionError,
    JobLockedError,
    LeaseLostError,
    PersistenceError,
    TerminalJobError,
)
from app.models import Job, JobKind, JobStatus
from app.orchestrator.dispatcher import CapabilityDispatcher
from app.orchestrator.pipelines import Pipeline, ProjectPipeline, VideoPipeline
from app.orchestrator.progress import ProgressAggregator
from app.orchestrator.state_machine import StateMachine
from app.services.job_lease import JobLeaseManager
from app.services.persistence import SqlPersistenceGateway

log = structlog.get_logger()


@dataclass(frozen=True)
class StepResult:
    """Status delta returned by one step() call."""

    job_id: uuid.UUID
    done: bool
    message: str
    status: JobStatus | None
    progress: int
    current_step: str | None
    error_message: str | None = None
    advanced_to: JobStatus | None = None
    retryable: bool = False
    busy: bool = False
    idle: bool = False

    @property
    def made_progress(self) -> bool:
        """Whether the step did any work (or decided the job's fate)."""
        return not (self.busy or self.retryable or self.idle)

    @classmethod
    def from_job(cls, job: Job, done: bool, message: str, **extra) -> "StepResult":
        return cls(
            job_id=job.id,
            done=done,
            message=message,
            status=job.status,
            progress=job.progress,
            current_step=job.current_step,
            error_message=job.error_message,
            **extra,
        )


class ResumableStepController:
    """Drives jobs one bounded unit of work at a time."""

    def __init__(
        self,
        persistence: SqlPersistenceGateway,
        leases: JobLeaseManager,
        registry: CapabilityRegistry,
        max_parallel_tasks: int | None = None,
        state_machine: StateMachine | None = None,
        aggregator: ProgressAggregator | None = None,
    ):
        """Initialize the controller.

        Raises:
            ConfigurationError: If the registry does not cover every Capability.
        """
        self.persistence = persistence
        self.leases = leases
        self.registry = registry
        self.state_machine = state_machine or StateMachine()
        self.aggregator = aggregator or ProgressAggregator()
        self.dispatcher = CapabilityDispatcher(registry.task_handlers)
        self.pipelines: dict[JobKind, Pipeline] = {
            JobKind.PROJECT: ProjectPipeline(
                persistence,
                registry,
                self.dispatcher,
                max_parallel_tasks=max_parallel_tasks or get_max_parallel_tasks(),
            ),
            JobKind.VIDEO: VideoPipeline(persistence, registry),
        }

    async def step(self, job_id: uuid.UUID) -> StepResult:
        """Perform one unit of work on job_id.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        try:
            async with self.leases.hold(job_id):
                return await self._step_locked(job_id)
        except LeaseLostError as e:
            log.warning("step_lease_lost", job_id=str(job_id), operation=e.operation)
            job = await self.persistence.get_job(job_id)
            return StepResult.from_job(
                job,
                done=False,
                message="Step outlived its lease; its writes were discarded",
                retryable=True,
            )
        except JobLockedError:
            job = await self.persistence.get_job(job_id)
            return StepResult.from_job(
                job, done=False, message="Another step is in progress", busy=True
            )
        except PersistenceError as e:
            log.warning("step_persistence_error", job_id=str(job_id), error_message=str(e)[:200])
            return StepResult(
                job_id=job_id,
                done=False,
                message=f"Transient persistence failure, retry the step: {e}",
                status=None,
                progress=0,
                current_step=None,
                retryable=True,
            )

    async def _step_locked(self, job_id: uuid.UUID) -> StepResult:
        job = await self.persistence.get_job(job_id)
        if job.is_terminal:
            return StepResult.from_job(
                job, done=True, message=f"Job is {job.status.value}", idle=True
            )

        stage = job.status
        pipeline = self.pipelines[job.kind]
        log_ctx = {"job_id": str(job.id), "kind": job.kind.value, "stage": stage.value}

        done = idle = False
        advanced_to: JobStatus | None = None
        try:
            outcome = await pipeline.run_stage(job)
            message = outcome.message
            done = idle = outcome.idle

            if outcome.transition_to is not None:
                self.state_machine.transition(job, outcome.transition_to)
                advanced_to = outcome.transition_to

            self.aggregator.apply(job, await pipeline.counts(job))

            if outcome.advance:
                if self.state_machine.next_status(job) == JobStatus.COMPLETED:
                    await pipeline.finalize(job)
                advanced_to = self.state_machine.advance(job)
                done = advanced_to == JobStatus.COMPLETED
                self.aggregator.apply(job, await pipeline.counts(job))

            job.step_count += 1
        except (PersistenceError, JobLockedError):
            raise
        except DecompositionError as e:
            message = f"Task decomposition failed: {e}"
            self._fail(job, stage, message, e)
            done, advanced_to = True, JobStatus.FAILED
        except (TerminalJobError, CapabilityError, InvalidStateTransitionError) as e:
            self._fail(job, stage, str(e), e)
            message, done, advanced_to = str(e), True, JobStatus.FAILED
        except Exception as e:
            log.exception("step_unexpected_error", **log_ctx)
            message = f"Unexpected error: {type(e).__name__}: {e}"
            self._fail(job, stage, message, e)
            done, advanced_to = True, JobStatus.FAILED

        if not await self.persistence.save_job(job):
            cancelled = await self.persistence.get_job(job_id)
            return StepResult.from_job(cancelled, done=True, message="Job was cancelled")

        log.info(
            "step_completed",
            done=done,
            status=job.status.value,
            progress=job.progress,
            advanced_to=advanced_to.value if advanced_to else None,
            **log_ctx,
        )
        return StepResult.from_job(
            job, done=done, message=message, advanced_to=advanced_to, idle=idle
        )

    def _fail(self, job: Job, stage: JobStatus, message: str, error: Exception) -> None:
        log.error(
            "job_failed",
            job_id=str(job.id),
            stage=stage.value,
            error_type=type(error).__name__,
            error_message=message,
        )
        self.state_machine.fail(job, message)
        job.current_step = f"Failed during {stage.value.replace('_', ' ')}"
