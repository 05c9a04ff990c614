"""Job routes: intake, polling, stepping and operator actions.

This module provides FastAPI routes under /api/v1/jobs:
- POST   /api/v1/jobs                              - Create a job
- GET    /api/v1/jobs/{job_id}                     - Poll status (?advance=true steps first)
- POST   /api/v1/jobs/{job_id}/step                - Perform one unit of work
- POST   /api/v1/jobs/{job_id}/cancel              - Cancel
- DELETE /api/v1/jobs/{job_id}                     - Delete with all children
- GET    /api/v1/jobs/{job_id}/tasks               - Tasks (filters: status, capability,
                                                     phase, priority, ready_only)
- GET    /api/v1/jobs/{job_id}/phases              - Per-phase summary
- GET    /api/v1/jobs/{job_id}/shots               - Shots in (scene, shot) order
- POST   /api/v1/jobs/{job_id}/tasks/{task_id}/retry    - Retry a task
- POST   /api/v1/jobs/{job_id}/tasks/{task_id}/resolve  - Resolve a blocked task

Error mapping:
- JobNotFoundError / TaskNotFoundError → 404
- InvalidStateTransitionError / JobLockedError → 409
- PersistenceError / ConfigurationError → 503
"""

import uuid
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from app.exceptions import (
    ConfigurationError,
    InvalidStateTransitionError,
    JobLockedError,
    JobNotFoundError,
    PersistenceError,
    TaskNotFoundError,
)
from app.models import Capability, Priority, TaskPhase, TaskStatus
from app.schemas.job import (
    JobCreate,
    JobStatusResponse,
    PhaseSummaryResponse,
    ResolveTaskRequest,
    ShotResponse,
    StepResponse,
    TaskResponse,
)
from app.services.job_service import JobService

log = structlog.get_logger()
router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


def get_job_service(request: Request) -> JobService:
    """FastAPI dependency returning the service built at startup.

    Raises:
        HTTPException: 503 if the database was not configured.
    """
    service = getattr(request.app.state, "job_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured. Set DATABASE_URL environment variable.",
        )
    return service


@contextmanager
def _service_errors() -> Iterator[None]:
    """Translate service exceptions into HTTP errors."""
    try:
        yield
    except (JobNotFoundError, TaskNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except (InvalidStateTransitionError, JobLockedError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except (PersistenceError, ConfigurationError) as e:
        log.error("job_route_unavailable", error_type=type(e).__name__, error_message=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)
        ) from e


@router.post("", response_model=JobStatusResponse, status_code=status.HTTP_201_CREATED)
async def create_job(
    payload: JobCreate, service: JobService = Depends(get_job_service)
) -> JobStatusResponse:
    """Create a QUEUED job. It moves forward only when stepped."""
    with _service_errors():
        job = await service.create_job(payload)
    return JobStatusResponse.model_validate(job)


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job(
    job_id: uuid.UUID,
    advance: bool = Query(default=False, description="Perform one step before answering"),
    service: JobService = Depends(get_job_service),
) -> JobStatusResponse:
    """Poll a job. With advance=true the poll also drives the job forward."""
    with _service_errors():
        if advance:
            await service.step(job_id)
        job = await service.get_job(job_id)
    return JobStatusResponse.model_validate(job)


@router.post("/{job_id}/step", response_model=StepResponse)
async def step_job(
    job_id: uuid.UUID, service: JobService = Depends(get_job_service)
) -> StepResponse:
    """Perform exactly one bounded unit of work and report the delta."""
    with _service_errors():
        result = await service.step(job_id)
    return StepResponse(
        job_id=result.job_id,
        done=result.done,
        message=result.message,
        status=result.status,
        progress=result.progress,
        current_step=result.current_step,
        error_message=result.error_message,
        advanced_to=result.advanced_to,
        retryable=result.retryable,
    )


@router.post("/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_job(
    job_id: uuid.UUID, service: JobService = Depends(get_job_service)
) -> JobStatusResponse:
    with _service_errors():
        job = await service.cancel_job(job_id)
    return JobStatusResponse.model_validate(job)


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(
    job_id: uuid.UUID, service: JobService = Depends(get_job_service)
) -> Response:
    with _service_errors():
        await service.delete_job(job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{job_id}/tasks", response_model=list[TaskResponse])
async def list_tasks(
    job_id: uuid.UUID,
    task_status: TaskStatus | None = Query(default=None, alias="status"),
    capability: Capability | None = None,
    phase: TaskPhase | None = None,
    priority: Priority | None = None,
    ready_only: bool = False,
    service: JobService = Depends(get_job_service),
) -> list[TaskResponse]:
    with _service_errors():
        tasks = await service.list_tasks(
            job_id,
            status=task_status,
            capability=capability,
            phase=phase,
            priority=priority,
            ready_only=ready_only,
        )
    return [TaskResponse.model_validate(task) for task in tasks]


@router.get("/{job_id}/phases", response_model=list[PhaseSummaryResponse])
async def list_phases(
    job_id: uuid.UUID, service: JobService = Depends(get_job_service)
) -> list[PhaseSummaryResponse]:
    with _service_errors():
        summary = await service.phase_summary(job_id)
    return [PhaseSummaryResponse(**row) for row in summary]


@router.get("/{job_id}/shots", response_model=list[ShotResponse])
async def list_shots(
    job_id: uuid.UUID,
    pending_only: bool = False,
    service: JobService = Depends(get_job_service),
) -> list[ShotResponse]:
    with _service_errors():
        shots = await service.list_shots(job_id, pending_only=pending_only)
    return [ShotResponse.model_validate(shot) for shot in shots]


@router.post("/{job_id}/tasks/{task_id}/retry", response_model=TaskResponse)
async def retry_task(
    job_id: uuid.UUID, task_id: uuid.UUID, service: JobService = Depends(get_job_service)
) -> TaskResponse:
    """Reset a failed, blocked or completed task so the next step runs it again."""
    with _service_errors():
        task = await service.retry_task(job_id, task_id)
    return TaskResponse.model_validate(task)


@router.post("/{job_id}/tasks/{task_id}/resolve", response_model=TaskResponse)
async def resolve_task(
    job_id: uuid.UUID,
    task_id: uuid.UUID,
    resolution: ResolveTaskRequest,
    service: JobService = Depends(get_job_service),
) -> TaskResponse:
    """Complete a blocked task with an operator-supplied output."""
    with _service_errors():
        task = await service.resolve_task(job_id, task_id, resolution)
    return TaskResponse.model_validate(task)
