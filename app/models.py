"""SQLAlchemy 2.0 ORM models.

This module contains all SQLAlchemy models for the orchestration engine.
All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0.

Entities:
    Job: The macro unit of work (a project or a video). Owns its children.
    Task: One node of a project's dependency graph.
    Scene / Shot: The two decomposition levels below a video job.
    JobLease: Short-TTL single-writer lease taken by each step() call.

Artifact Fields Pattern:
    Artifact references are stored as JSON objects {"url": ..., "content_type": ...}
    in columns named `{role}_ref`. The engine only checks their presence, it
    never reads the bytes behind the URL.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from app.exceptions import InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


class JobKind(enum.Enum):
    """Kind of macro request a job fulfils.

    project: Business request decomposed into a design/build/test/launch task graph.
    video: Script or voice note turned into a captioned faceless video.
    """

    PROJECT = "project"
    VIDEO = "video"


class JobStatus(enum.Enum):
    """Job status values for both pipeline kinds.

    Video Flow:
        queued → uploading → generating_story → generating_scenes
        → generating_media → building_video → adding_captions → completed

    Project Flow:
        queued → planning → in_progress → completed
        in_progress ⇄ stalled (waiting on blocked or failed tasks)

    Any non-terminal status may move to failed or cancelled.
    Terminal States: completed, failed, cancelled.
    """

    QUEUED = "queued"

    # Video pipeline stages
    UPLOADING = "uploading"
    GENERATING_STORY = "generating_story"
    GENERATING_SCENES = "generating_scenes"
    GENERATING_MEDIA = "generating_media"
    BUILDING_VIDEO = "building_video"
    ADDING_CAPTIONS = "adding_captions"

    # Project pipeline stages
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    STALLED = "stalled"

    # Terminal states
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class TaskStatus(enum.Enum):
    """Lifecycle of a single task in a project graph."""

    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class Capability(enum.Enum):
    """Specialist capability a task is routed to.

    infra, qa and human_review are normally manual: tasks routed to them are
    blocked for a human instead of being automated.
    """

    DESIGN = "design"
    FRONTEND = "frontend"
    BACKEND = "backend"
    CONTENT = "content"
    INFRA = "infra"
    QA = "qa"
    HUMAN_REVIEW = "human_review"


class PipelineCapability(enum.Enum):
    """Generation capabilities consumed by the pipeline stages themselves."""

    PLAN = "plan"
    PACKAGE = "package"
    EXTRACT_SOURCE = "extract_source"
    STORY = "story"
    SCENES = "scenes"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    MIX = "mix"
    COMBINE_SHOTS = "combine_shots"
    COMBINE_SCENES = "combine_scenes"
    CAPTIONS = "captions"


class Priority(enum.Enum):
    """Task priority. Ready tasks run critical first, then by declaration order."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


class TaskPhase(enum.Enum):
    """Reporting phases of a project, in delivery order."""

    DESIGN = "design"
    BUILD = "build"
    TEST = "test"
    LAUNCH = "launch"


PHASE_ORDER = {
    TaskPhase.DESIGN: 1,
    TaskPhase.BUILD: 2,
    TaskPhase.TEST: 3,
    TaskPhase.LAUNCH: 4,
}


class SourceType(enum.Enum):
    """Where a video job's source content comes from."""

    TEXT = "text"
    URL = "url"
    AUDIO = "audio"


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    # values_callable stores enum.value (lowercase) instead of enum.name
    return Enum(
        enum_cls,
        native_enum=True,
        name=name,
        values_callable=lambda x: [e.value for e in x],
    )


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """Macro unit of work driven to completion by repeated step() calls.

    A job is created once at intake and afterwards mutated only by the step
    controller (and the explicit operator actions: cancel, retry, resolve).
    Children (tasks, scenes, shots) are owned exclusively and deleted with it.

    Attributes:
        id: UUID primary key.
        kind: project or video.
        status: Current pipeline status (validated against VALID_TRANSITIONS).
        progress: Percent complete, 0-100, never decreases.
        current_step: Human-readable status line, e.g. "Generating Media (7/12 shots)".
        error_message: Cause of a FAILED status, or the last stall summary.
        title: Display name.
        request_text: The macro request (business description or script).
        source_type / source_ref / source_text: Video source and its extracted text.
        options: Opaque per-job options (captions_enabled, voice, aspect ratio...).
        generated_story: Narrative produced by the story capability.
        total_units / completed_units: Tasks or shots, depending on kind.
        total_scenes: Number of scenes of a video job.
        combined_video_ref / captioned_video_ref / final_artifact_ref: Video outputs.
        srt_content: Caption track built from shot scripts and durations.
        deliverables: Packaged task outputs of a completed project.
        step_count: Number of step() calls that did work.
        created_at / updated_at / completed_at: UTC timestamps.
    """

    __tablename__ = "jobs"

    # Only transitions listed here are allowed, enforced by @validates below
    VALID_TRANSITIONS = {
        JobKind.PROJECT: {
            JobStatus.QUEUED: [JobStatus.PLANNING, JobStatus.FAILED, JobStatus.CANCELLED],
            JobStatus.PLANNING: [JobStatus.IN_PROGRESS, JobStatus.FAILED, JobStatus.CANCELLED],
            JobStatus.IN_PROGRESS: [
                JobStatus.STALLED,
                JobStatus.COMPLETED,
                JobStatus.FAILED,
                JobStatus.CANCELLED,
            ],
            JobStatus.STALLED: [JobStatus.IN_PROGRESS, JobStatus.FAILED, JobStatus.CANCELLED],
            JobStatus.COMPLETED: [],
            JobStatus.FAILED: [],
            JobStatus.CANCELLED: [],
        },
        JobKind.VIDEO: {
            JobStatus.QUEUED: [JobStatus.UPLOADING, JobStatus.FAILED, JobStatus.CANCELLED],
            JobStatus.UPLOADING: [
                JobStatus.GENERATING_STORY,
                JobStatus.FAILED,
                JobStatus.CANCELLED,
            ],
            JobStatus.GENERATING_STORY: [
                JobStatus.GENERATING_SCENES,
                JobStatus.FAILED,
                JobStatus.CANCELLED,
            ],
            JobStatus.GENERATING_SCENES: [
                JobStatus.GENERATING_MEDIA,
                JobStatus.FAILED,
                JobStatus.CANCELLED,
            ],
            JobStatus.GENERATING_MEDIA: [
                JobStatus.BUILDING_VIDEO,
                JobStatus.FAILED,
                JobStatus.CANCELLED,
            ],
            # Captions stage is skipped when captions are disabled for the job
            JobStatus.BUILDING_VIDEO: [
                JobStatus.ADDING_CAPTIONS,
                JobStatus.COMPLETED,
                JobStatus.FAILED,
                JobStatus.CANCELLED,
            ],
            JobStatus.ADDING_CAPTIONS: [
                JobStatus.COMPLETED,
                JobStatus.FAILED,
                JobStatus.CANCELLED,
            ],
            JobStatus.COMPLETED: [],
            JobStatus.FAILED: [],
            JobStatus.CANCELLED: [],
        },
    }

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    kind: Mapped[JobKind] = mapped_column(
        _enum_column(JobKind, "jobkind"),
        nullable=False,
    )
    status: Mapped[JobStatus] = mapped_column(
        _enum_column(JobStatus, "jobstatus"),
        nullable=False,
        default=JobStatus.QUEUED,
        index=True,
    )
    progress: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    current_step: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Intake
    title: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    request_text: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    source_type: Mapped[SourceType] = mapped_column(
        _enum_column(SourceType, "sourcetype"),
        nullable=False,
        default=SourceType.TEXT,
    )
    source_ref: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    source_text: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    options: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )

    # Video outputs
    generated_story: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    total_scenes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    combined_video_ref: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    captioned_video_ref: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    srt_content: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Shared outputs
    final_artifact_ref: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    deliverables: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    total_units: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    completed_units: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    step_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )

    # Timestamps (UTC timezone-aware)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        # Scheduler scans non-terminal jobs oldest first
        Index("ix_jobs_status_created_at", "status", "created_at"),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_jobs_progress_range"),
    )

    @validates("status")
    def validate_status_change(self, key: str, value: JobStatus) -> JobStatus:
        """Validate status transition before it reaches the database.

        Args:
            key: The attribute name being validated (always "status").
            value: The new JobStatus value being assigned.

        Returns:
            The validated JobStatus value if transition is valid.

        Raises:
            InvalidStateTransitionError: If the transition is not listed in
                VALID_TRANSITIONS for this job's kind.

        Note:
            - Validation is skipped on initial creation (status is None)
            - Re-assigning the current status is a no-op, not a transition
            - Terminal states have no valid transitions
        """
        if self.status is None or self.kind is None:
            return value
        if value == self.status:
            return value

        allowed_transitions = self.VALID_TRANSITIONS[self.kind].get(self.status, [])
        if value not in allowed_transitions:
            raise InvalidStateTransitionError(
                f"Invalid transition: {self.status.value} → {value.value}",
                from_status=self.status,
                to_status=value,
            )

        return value

    @property
    def is_terminal(self) -> bool:
        """Whether the job reached completed, failed or cancelled."""
        return self.status in TERMINAL_STATUSES

    @property
    def captions_enabled(self) -> bool:
        """Whether the captions stage runs for this video job."""
        return bool((self.options or {}).get("captions_enabled", True))

    def __repr__(self) -> str:
        """Return string representation for debugging."""
        return (
            f"<Job(id={self.id!s:.8}, kind={self.kind.value!r}, "
            f"status={self.status.value!r}, progress={self.progress})>"
        )


class Task(Base):
    """One node of a project task graph.

    Tasks are inserted in one batch by the graph builder and never recreated;
    afterwards only status, artifacts and output change. Status transitions are
    enforced by the in-memory TaskGraph, which is written back wholesale, so a
    single write may legitimately jump several statuses (pending → completed).

    Attributes:
        id: UUID primary key (remapped from the planner's temporary id).
        job_id: Owning job.
        sort_index: Declaration order in the plan (stable tie-break).
        temp_id: The planner's temporary id, kept for traceability.
        title / description: What to do.
        phase: Reporting phase (design/build/test/launch).
        capability: Specialist capability the task is routed to.
        priority: critical/high/medium/low.
        status: pending/ready/in_progress/completed/failed/blocked.
        depends_on: UUID strings of tasks that must complete first.
        acceptance_criteria: Ordered list of strings.
        context: Opaque payload handed to the capability.
        requires_human_review: Route to a human even if the capability is automated.
        artifacts: Artifact refs produced by the capability, keyed by role.
        output_text: Free-form output of the capability.
        error_message: Why the task failed or was blocked.
    """

    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sort_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    temp_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    title: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    phase: Mapped[TaskPhase] = mapped_column(
        _enum_column(TaskPhase, "taskphase"),
        nullable=False,
    )
    capability: Mapped[Capability] = mapped_column(
        _enum_column(Capability, "capability"),
        nullable=False,
    )
    priority: Mapped[Priority] = mapped_column(
        _enum_column(Priority, "priority"),
        nullable=False,
        default=Priority.MEDIUM,
    )
    status: Mapped[TaskStatus] = mapped_column(
        _enum_column(TaskStatus, "taskstatus"),
        nullable=False,
        default=TaskStatus.PENDING,
    )
    depends_on: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
    acceptance_criteria: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
    context: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    requires_human_review: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    artifacts: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    output_text: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        Index("ix_tasks_job_id_sort_index", "job_id", "sort_index"),
    )

    def __repr__(self) -> str:
        return (
            f"<Task(id={self.id!s:.8}, title={self.title!r}, "
            f"status={self.status.value!r}, priority={self.priority.value!r})>"
        )


class Scene(Base):
    """A scene of a video job: an ordered group of shots."""

    __tablename__ = "scenes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sort_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    script: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    # Shots of this scene concatenated (BUILDING_VIDEO stage)
    video_ref: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<Scene(id={self.id!s:.8}, sort_index={self.sort_index}, name={self.name!r})>"


class Shot(Base):
    """Leaf unit of a video job.

    Artifact chain (enforced by app.orchestrator.shots):
        image_ref → audio_ref → video_ref → final_shot_ref
        video_ref requires image_ref; final_shot_ref requires video_ref and audio_ref.
    """

    __tablename__ = "shots"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    scene_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("scenes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Denormalised from the scene so shots sort without a join
    scene_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    sort_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    script: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    image_ref: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    audio_ref: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    audio_duration_seconds: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )
    video_ref: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    final_shot_ref: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        Index("ix_shots_job_order", "job_id", "scene_index", "sort_index"),
    )

    @property
    def is_complete(self) -> bool:
        return self.final_shot_ref is not None

    def __repr__(self) -> str:
        return (
            f"<Shot(id={self.id!s:.8}, scene_index={self.scene_index}, "
            f"sort_index={self.sort_index}, complete={self.is_complete})>"
        )


class JobLease(Base):
    """Single-writer lease on a job, held for the duration of one step() call.

    expires_at is stored as epoch seconds so expiry checks are plain numeric
    comparisons in SQL on every backend.
    """

    __tablename__ = "job_leases"

    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
    )
    owner: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    expires_at: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<JobLease(job_id={self.job_id!s:.8}, owner={self.owner!r})>"
