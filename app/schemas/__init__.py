"""Pydantic schemas for validation and serialization."""

from app.schemas.job import (
    ArtifactRefSchema,
    ExecutionPlan,
    JobCreate,
    JobStatusResponse,
    PhaseSummaryResponse,
    ResolveTaskRequest,
    ShotResponse,
    StepResponse,
    StoryOutline,
    TaskDescriptor,
    TaskResponse,
)

__all__ = [
    "ArtifactRefSchema",
    "ExecutionPlan",
    "JobCreate",
    "JobStatusResponse",
    "PhaseSummaryResponse",
    "ResolveTaskRequest",
    "ShotResponse",
    "StepResponse",
    "StoryOutline",
    "TaskDescriptor",
    "TaskResponse",
]
