"""Initial orchestration schema.

Creates the tables behind the step controller:
    - jobs: Macro unit of work (project or video) with status and progress
    - tasks: Nodes of a project dependency graph
    - scenes / shots: The two decomposition levels of a video job
    - job_leases: Single-writer lease taken by each step() call

Children cascade on job deletion.

Revision ID: 001_initial_orchestration
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_orchestration"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JOB_KINDS = ("project", "video")
JOB_STATUSES = (
    "queued",
    "uploading",
    "generating_story",
    "generating_scenes",
    "generating_media",
    "building_video",
    "adding_captions",
    "planning",
    "in_progress",
    "stalled",
    "completed",
    "failed",
    "cancelled",
)
SOURCE_TYPES = ("text", "url", "audio")
TASK_STATUSES = ("pending", "ready", "in_progress", "completed", "failed", "blocked")
TASK_PHASES = ("design", "build", "test", "launch")
CAPABILITIES = ("design", "frontend", "backend", "content", "infra", "qa", "human_review")
PRIORITIES = ("critical", "high", "medium", "low")


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=None if nullable else sa.func.now(),
    )


def upgrade() -> None:
    """Create jobs, tasks, scenes, shots and job_leases."""
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kind", sa.Enum(*JOB_KINDS, name="jobkind"), nullable=False),
        sa.Column("status", sa.Enum(*JOB_STATUSES, name="jobstatus"), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_step", sa.String(255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("request_text", sa.Text(), nullable=True),
        sa.Column("source_type", sa.Enum(*SOURCE_TYPES, name="sourcetype"), nullable=False),
        sa.Column("source_ref", sa.JSON(), nullable=True),
        sa.Column("source_text", sa.Text(), nullable=True),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("generated_story", sa.Text(), nullable=True),
        sa.Column("total_scenes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("combined_video_ref", sa.JSON(), nullable=True),
        sa.Column("captioned_video_ref", sa.JSON(), nullable=True),
        sa.Column("srt_content", sa.Text(), nullable=True),
        sa.Column("final_artifact_ref", sa.JSON(), nullable=True),
        sa.Column("deliverables", sa.JSON(), nullable=True),
        sa.Column("total_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("step_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("completed_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_jobs_progress_range"),
    )
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_status_created_at", "jobs", ["status", "created_at"])

    op.create_table(
        "tasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("sort_index", sa.Integer(), nullable=False),
        sa.Column("temp_id", sa.String(100), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("phase", sa.Enum(*TASK_PHASES, name="taskphase"), nullable=False),
        sa.Column("capability", sa.Enum(*CAPABILITIES, name="capability"), nullable=False),
        sa.Column("priority", sa.Enum(*PRIORITIES, name="priority"), nullable=False),
        sa.Column("status", sa.Enum(*TASK_STATUSES, name="taskstatus"), nullable=False),
        sa.Column("depends_on", sa.JSON(), nullable=False),
        sa.Column("acceptance_criteria", sa.JSON(), nullable=False),
        sa.Column("context", sa.JSON(), nullable=True),
        sa.Column(
            "requires_human_review", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("artifacts", sa.JSON(), nullable=True),
        sa.Column("output_text", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["job_id"], ["jobs.id"], name="fk_tasks_job_id", ondelete="CASCADE"
        ),
    )
    op.create_index("ix_tasks_job_id", "tasks", ["job_id"])
    op.create_index("ix_tasks_job_id_sort_index", "tasks", ["job_id", "sort_index"])

    op.create_table(
        "scenes",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("sort_index", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("script", sa.Text(), nullable=False),
        sa.Column("video_ref", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["job_id"], ["jobs.id"], name="fk_scenes_job_id", ondelete="CASCADE"
        ),
    )
    op.create_index("ix_scenes_job_id", "scenes", ["job_id"])

    op.create_table(
        "shots",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("scene_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("scene_index", sa.Integer(), nullable=False),
        sa.Column("sort_index", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("script", sa.Text(), nullable=False),
        sa.Column("image_ref", sa.JSON(), nullable=True),
        sa.Column("audio_ref", sa.JSON(), nullable=True),
        sa.Column("audio_duration_seconds", sa.Float(), nullable=True),
        sa.Column("video_ref", sa.JSON(), nullable=True),
        sa.Column("final_shot_ref", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["job_id"], ["jobs.id"], name="fk_shots_job_id", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["scene_id"], ["scenes.id"], name="fk_shots_scene_id", ondelete="CASCADE"
        ),
    )
    op.create_index("ix_shots_job_id", "shots", ["job_id"])
    op.create_index("ix_shots_scene_id", "shots", ["scene_id"])
    op.create_index("ix_shots_job_order", "shots", ["job_id", "scene_index", "sort_index"])

    op.create_table(
        "job_leases",
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("owner", sa.String(100), nullable=False),
        sa.Column("expires_at", sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )


def downgrade() -> None:
    """Drop all orchestration tables and enum types."""
    op.drop_table("job_leases")
    op.drop_index("ix_shots_job_order", table_name="shots")
    op.drop_index("ix_shots_scene_id", table_name="shots")
    op.drop_index("ix_shots_job_id", table_name="shots")
    op.drop_table("shots")
    op.drop_index("ix_scenes_job_id", table_name="scenes")
    op.drop_table("scenes")
    op.drop_index("ix_tasks_job_id_sort_index", table_name="tasks")
    op.drop_index("ix_tasks_job_id", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("ix_jobs_status_created_at", table_name="jobs")
    op.drop_index("ix_jobs_status", table_name="jobs")
    op.drop_table("jobs")

    for enum_name in (
        "taskstatus",
        "priority",
        "capability",
        "taskphase",
        "sourcetype",
        "jobstatus",
        "jobkind",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
