"""Pydantic schemas for jobs, plans and their API representations.

This module defines Pydantic v2 schemas for:
    - Capability outputs the engine parses (ExecutionPlan, StoryOutline)
    - Intake requests (JobCreate, ResolveTaskRequest)
    - API responses (JobStatusResponse, StepResponse, TaskResponse, ...)

Schema Naming Convention:
    - JobCreate: For POST requests (creating new jobs)
    - *Response: For API responses (serializing from database)

Plan descriptors accept both snake_case and the planner's camelCase keys
(dependsOn, agentName, requiresHumanReview, acceptanceCriteria,
technicalContext) so planner output can be validated as-is.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from app.models import (
    Capability,
    JobKind,
    JobStatus,
    Priority,
    SourceType,
    TaskPhase,
    TaskStatus,
)

# Planner vocabulary that differs from the Capability enum
CAPABILITY_ALIASES = {
    "human": "human_review",
    "human-review": "human_review",
    "infrastructure": "infra",
    "devops": "infra",
    "testing": "qa",
}

# Planner fields with no column of their own, kept in TaskDescriptor.context
PLANNING_METADATA = {
    "estimated_hours": ("estimatedHours", "estimated_hours"),
    "deliverable_id": ("deliverableId", "deliverable_id"),
    "feature_ids": ("featureIds", "feature_ids"),
}


class ArtifactRefSchema(BaseModel):
    """Opaque artifact reference: a URL plus its content type."""

    url: str = Field(..., min_length=1)
    content_type: str = Field(default="application/octet-stream")


# ---------------------------------------------------------------------------
# Capability outputs
# ---------------------------------------------------------------------------


class TaskDescriptor(BaseModel):
    """One task of a planner's output, referencing others by temporary id."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    phase: TaskPhase
    capability: Capability = Field(
        ...,
        validation_alias=AliasChoices("capability", "agentName", "agent_name"),
    )
    priority: Priority = Priority.MEDIUM
    depends_on: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("depends_on", "dependsOn"),
    )
    acceptance_criteria: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("acceptance_criteria", "acceptanceCriteria"),
    )
    context: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("context", "technicalContext", "technical_context"),
    )
    requires_human_review: bool = Field(
        default=False,
        validation_alias=AliasChoices("requires_human_review", "requiresHumanReview"),
    )

    @field_validator("capability", "phase", "priority", mode="before")
    @classmethod
    def normalise_enum_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            name = value.strip().lower()
            return CAPABILITY_ALIASES.get(name, name)
        return value

    @model_validator(mode="before")
    @classmethod
    def fold_planning_metadata(cls, data: Any) -> Any:
        """Keep the planner's estimate and traceability ids in the task context."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        extras = {}
        for key, aliases in PLANNING_METADATA.items():
            for alias in aliases:
                if alias in data:
                    value = data.pop(alias)
                    if value is not None:
                        extras.setdefault(key, value)
        if not extras:
            return data
        context_key = next(
            (k for k in ("context", "technicalContext", "technical_context") if k in data),
            "context",
        )
        context = data.get(context_key)
        if context is None:
            data[context_key] = extras
        elif isinstance(context, dict):
            data[context_key] = {**extras, **context}
        return data


class PlanPhase(BaseModel):
    """Phase metadata from the planner. Reporting only."""

    model_config = ConfigDict(extra="ignore")

    name: str
    order: int | None = None
    description: str | None = None


class ExecutionPlan(BaseModel):
    """Planner output: the tasks of a project and optional phase metadata."""

    model_config = ConfigDict(extra="ignore")

    tasks: list[TaskDescriptor]
    phases: list[PlanPhase] = Field(default_factory=list)
    summary: dict[str, Any] | str | None = None


class ShotOutline(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    script: str = Field(..., min_length=1)


class SceneOutline(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    script: str = ""
    shots: list[ShotOutline] = Field(default_factory=list)


class StoryOutline(BaseModel):
    """Scene/shot decomposition returned by the scenes capability."""

    model_config = ConfigDict(extra="ignore")

    scenes: list[SceneOutline]


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class JobCreate(BaseModel):
    """Schema for creating a new job.

    Used in POST /api/v1/jobs.

    Project jobs need request_text (the business description). Video jobs
    need request_text for a text source, or source_ref for url/audio sources.
    """

    kind: JobKind
    title: str = Field(..., min_length=1, max_length=255)
    request_text: str | None = Field(
        default=None,
        description="Business description (project) or script (video text source)",
    )
    source_type: SourceType = SourceType.TEXT
    source_ref: ArtifactRefSchema | None = Field(
        default=None,
        description="Source document or voice note for url/audio sources",
    )
    options: dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque per-job options, e.g. captions_enabled, voice, caption_style",
        examples=[{"captions_enabled": True, "voice": "narrator"}],
    )

    @model_validator(mode="after")
    def check_source(self) -> "JobCreate":
        if self.kind == JobKind.PROJECT or self.source_type == SourceType.TEXT:
            if not (self.request_text and self.request_text.strip()):
                raise ValueError("request_text is required for this job")
        elif self.source_ref is None:
            raise ValueError(f"source_ref is required for {self.source_type.value} sources")
        return self


class ResolveTaskRequest(BaseModel):
    """Manual completion of a blocked task by an operator."""

    output_text: str | None = None
    artifacts: dict[str, ArtifactRefSchema] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class JobStatusResponse(BaseModel):
    """Polling view of a job."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: JobKind
    title: str
    status: JobStatus
    progress: int = Field(..., ge=0, le=100)
    current_step: str | None
    error_message: str | None
    total_units: int
    completed_units: int
    final_artifact_ref: ArtifactRefSchema | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class StepResponse(BaseModel):
    """Result of one step() call."""

    job_id: UUID
    done: bool
    message: str
    status: JobStatus | None
    progress: int
    current_step: str | None
    error_message: str | None = None
    advanced_to: JobStatus | None = None
    retryable: bool = False


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_id: UUID
    sort_index: int
    title: str
    description: str | None
    phase: TaskPhase
    capability: Capability
    priority: Priority
    status: TaskStatus
    depends_on: list[UUID]
    acceptance_criteria: list[str]
    requires_human_review: bool
    artifacts: dict[str, Any] | None
    output_text: str | None
    error_message: str | None


class ShotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    scene_id: UUID
    scene_index: int
    sort_index: int
    name: str | None
    script: str
    image_ref: ArtifactRefSchema | None
    audio_ref: ArtifactRefSchema | None
    audio_duration_seconds: float | None
    video_ref: ArtifactRefSchema | None
    final_shot_ref: ArtifactRefSchema | None
    error_message: str | None


class PhaseSummaryResponse(BaseModel):
    """Per-phase reporting view over a project's tasks."""

    phase: TaskPhase
    order: int
    total: int
    completed: int
    ready: int
    in_progress: int
    blocked: int
    failed: int
    progress: int
