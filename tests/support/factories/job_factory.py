"""Job and task data factories for test data generation.

Generates Job, Task and plan-descriptor test data with deterministic
defaults and override support for specific test scenarios.
"""

import uuid
from typing import Any

from app.models import (
    Capability,
    Job,
    JobKind,
    JobStatus,
    Priority,
    SourceType,
    TaskPhase,
    TaskStatus,
)
from app.orchestrator.graph import TaskGraph, TaskNode


def create_job(
    kind: JobKind = JobKind.PROJECT,
    status: JobStatus = JobStatus.QUEUED,
    title: str | None = None,
    request_text: str | None = "Build a storefront for a bakery",
    source_type: SourceType = SourceType.TEXT,
    options: dict[str, Any] | None = None,
    **kwargs,
) -> Job:
    """Create a Job model instance with sensible defaults.

    Returns:
        Job model instance (not yet persisted).

    Example:
        >>> job = create_job(kind=JobKind.VIDEO, options={"captions_enabled": False})
        >>> await persistence.create_job(job)
    """
    job = Job(
        id=kwargs.pop("id", None) or uuid.uuid4(),
        kind=kind,
        status=status,
        title=title or f"Test {kind.value} {uuid.uuid4().hex[:6]}",
        request_text=request_text,
        source_type=source_type,
        options=options if options is not None else {},
        progress=kwargs.pop("progress", 0),
        total_units=kwargs.pop("total_units", 0),
        completed_units=kwargs.pop("completed_units", 0),
        total_scenes=kwargs.pop("total_scenes", 0),
        step_count=kwargs.pop("step_count", 0),
    )
    for key, value in kwargs.items():
        setattr(job, key, value)
    return job


def create_video_job(captions_enabled: bool = True, **kwargs) -> Job:
    """Create a text-sourced video job."""
    kwargs.setdefault("request_text", "A red balloon drifts into a quiet town.")
    options = {"captions_enabled": captions_enabled, **kwargs.pop("options", {})}
    return create_job(kind=JobKind.VIDEO, options=options, **kwargs)


def plan_task(
    temp_id: str,
    depends_on: list[str] | None = None,
    capability: str = "backend",
    phase: str = "build",
    priority: str = "medium",
    **kwargs,
) -> dict[str, Any]:
    """One planner task descriptor in the planner's camelCase shape."""
    descriptor = {
        "id": temp_id,
        "title": kwargs.pop("title", f"Task {temp_id}"),
        "phase": phase,
        "agentName": capability,
        "priority": priority,
        "dependsOn": depends_on or [],
    }
    descriptor.update(kwargs)
    return descriptor


def make_node(
    sort_index: int,
    depends_on: tuple[uuid.UUID, ...] = (),
    status: TaskStatus = TaskStatus.PENDING,
    priority: Priority = Priority.MEDIUM,
    capability: Capability = Capability.BACKEND,
    phase: TaskPhase = TaskPhase.BUILD,
    **kwargs,
) -> TaskNode:
    """An in-memory TaskNode for resolver and dispatcher tests."""
    return TaskNode(
        id=kwargs.pop("id", None) or uuid.uuid4(),
        sort_index=sort_index,
        title=kwargs.pop("title", f"Task {sort_index}"),
        phase=phase,
        capability=capability,
        priority=priority,
        status=status,
        depends_on=depends_on,
        **kwargs,
    )


def make_graph(*nodes: TaskNode, job_id: uuid.UUID | None = None) -> TaskGraph:
    return TaskGraph(job_id=job_id or uuid.uuid4(), tasks=tuple(nodes))
