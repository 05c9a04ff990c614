"""Persistence gateway for jobs and their children.

Every operation runs in its own short transaction (Short Transaction Pattern):
no session is ever held across a capability call. Objects returned are
detached (expire_on_commit=False), so callers mutate them freely and hand
them back to a save_* method.

All SQLAlchemy failures are wrapped in PersistenceError, which the step
controller treats as transient.

Lease Fencing:
    Inside JobLeaseManager.hold() every write first re-reads the job_leases
    row in the same transaction. If the holder's lease expired or another
    step took it over, the write is rolled back with LeaseLostError, so a
    step that outlived its lease can never overwrite the new holder's work.

Usage:
    gateway = SqlPersistenceGateway(async_session_factory)
    job = await gateway.get_job(job_id)
    job.current_step = "..."
    await gateway.save_job(job)
"""

import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import (
    ConfigurationError,
    JobNotFoundError,
    LeaseLostError,
    PersistenceError,
)
from app.models import (
    TERMINAL_STATUSES,
    Job,
    JobLease,
    JobStatus,
    Scene,
    Shot,
    Task,
    TaskStatus,
    utcnow,
)
from app.orchestrator.graph import TaskGraph
from app.schemas.job import StoryOutline

log = structlog.get_logger()

# Columns written back by save_job; id, kind and created_at never change
_JOB_IMMUTABLE = {"id", "kind", "created_at"}


def default_session_factory() -> async_sessionmaker[AsyncSession]:
    """The application's session factory, resolved at call time.

    Raises:
        ConfigurationError: If DATABASE_URL was not set at import.
    """
    from app import database

    if database.async_session_factory is None:
        raise ConfigurationError("Database not configured. Set DATABASE_URL environment variable.")
    return database.async_session_factory


@dataclass(frozen=True)
class LeaseFence:
    """The lease a block of writes runs under."""

    job_id: uuid.UUID
    owner: str
    clock: Callable[[], float]


# Propagates into tasks started with asyncio.gather (parallel task dispatch)
_current_fence: ContextVar[LeaseFence | None] = ContextVar("lease_fence", default=None)


@contextmanager
def fenced_writes(fence: LeaseFence) -> Iterator[None]:
    """Make every gateway write in this block check that fence is still held."""
    token = _current_fence.set(fence)
    try:
        yield
    finally:
        _current_fence.reset(token)


class SqlPersistenceGateway:
    """Async SQLAlchemy implementation of the persistence gateway."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory or default_session_factory()

    @asynccontextmanager
    async def _transaction(
        self, operation: str, write: bool = False
    ) -> AsyncIterator[AsyncSession]:
        fence = _current_fence.get() if write else None
        try:
            async with self._session_factory() as db, db.begin():
                if fence is not None:
                    await self._check_fence(db, fence, operation)
                yield db
        except SQLAlchemyError as e:
            log.error(
                "persistence_error",
                operation=operation,
                error_type=type(e).__name__,
                error_message=str(e)[:200],
            )
            raise PersistenceError(str(e), operation=operation) from e

    @staticmethod
    async def _check_fence(db: AsyncSession, fence: LeaseFence, operation: str) -> None:
        lease = await db.scalar(
            select(JobLease).where(JobLease.job_id == fence.job_id).with_for_update()
        )
        if lease is None or lease.owner != fence.owner or lease.expires_at < fence.clock():
            log.warning(
                "lease_lost_write_discarded",
                job_id=str(fence.job_id),
                owner=fence.owner,
                holder=lease.owner if lease else None,
                operation=operation,
            )
            raise LeaseLostError(fence.job_id, operation=operation)

    # ------------------------------------------------------------------ jobs

    async def create_job(self, job: Job) -> Job:
        async with self._transaction("create_job") as db:
            db.add(job)
        return job

    async def get_job(self, job_id: uuid.UUID) -> Job:
        """Load a job.

        Raises:
            JobNotFoundError: If no job has this id.
        """
        async with self._transaction("get_job") as db:
            job = await db.get(Job, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def save_job(self, job: Job) -> bool:
        """Write every mutable column of job.

        A job cancelled by an operator while a step was running is never
        overwritten with the step's status.

        Returns:
            False if the write was skipped because the stored job is CANCELLED.

        Raises:
            JobNotFoundError: If the job was deleted meanwhile.
        """
        values: dict[str, Any] = {
            column.key: getattr(job, column.key)
            for column in Job.__table__.columns
            if column.key not in _JOB_IMMUTABLE
        }
        values["updated_at"] = utcnow()

        async with self._transaction("save_job", write=True) as db:
            stored_status = await db.scalar(
                select(Job.status).where(Job.id == job.id).with_for_update()
            )
            if stored_status is None:
                raise JobNotFoundError(job.id)
            if stored_status == JobStatus.CANCELLED and job.status != JobStatus.CANCELLED:
                log.info("job_save_skipped_cancelled", job_id=str(job.id))
                return False
            await db.execute(update(Job).where(Job.id == job.id).values(**values))
        job.updated_at = values["updated_at"]
        return True

    async def delete_job(self, job_id: uuid.UUID) -> bool:
        """Delete a job and everything it owns. Returns False if it did not exist."""
        async with self._transaction("delete_job") as db:
            exists = await db.scalar(select(func.count()).select_from(Job).where(Job.id == job_id))
            if not exists:
                return False
            # Explicit child deletes so the cascade holds on backends without FK enforcement
            await db.execute(delete(Shot).where(Shot.job_id == job_id))
            await db.execute(delete(Scene).where(Scene.job_id == job_id))
            await db.execute(delete(Task).where(Task.job_id == job_id))
            await db.execute(delete(JobLease).where(JobLease.job_id == job_id))
            await db.execute(delete(Job).where(Job.id == job_id))
        log.info("job_deleted", job_id=str(job_id))
        return True

    async def list_active_job_ids(self, limit: int = 100) -> list[uuid.UUID]:
        """Jobs the scheduler should step: non-terminal and not stalled, oldest first."""
        idle = set(TERMINAL_STATUSES) | {JobStatus.STALLED}
        async with self._transaction("list_active_job_ids") as db:
            result = await db.execute(
                select(Job.id)
                .where(Job.status.not_in(idle))
                .order_by(Job.created_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ----------------------------------------------------------------- tasks

    async def list_tasks(self, job_id: uuid.UUID) -> list[Task]:
        async with self._transaction("list_tasks") as db:
            result = await db.execute(
                select(Task).where(Task.job_id == job_id).order_by(Task.sort_index.asc())
            )
            return list(result.scalars().all())

    async def load_graph(self, job_id: uuid.UUID) -> TaskGraph:
        return TaskGraph.from_rows(job_id, await self.list_tasks(job_id))

    async def insert_tasks(self, graph: TaskGraph) -> None:
        """Insert a freshly built graph in one atomic batch."""
        async with self._transaction("insert_tasks", write=True) as db:
            db.add_all(node.to_row(graph.job_id) for node in graph.tasks)

    async def save_tasks(self, graph: TaskGraph) -> None:
        """Write the mutable fields of every task back in one transaction."""
        if not graph.tasks:
            return
        now = utcnow()
        rows = [
            {
                "id": node.id,
                "status": node.status,
                "artifacts": node.artifacts,
                "output_text": node.output_text,
                "error_message": node.error_message,
                "updated_at": now,
            }
            for node in graph.tasks
        ]
        async with self._transaction("save_tasks", write=True) as db:
            await db.execute(update(Task), rows)

    async def count_tasks_by_status(self, job_id: uuid.UUID) -> dict[TaskStatus, int]:
        async with self._transaction("count_tasks_by_status") as db:
            result = await db.execute(
                select(Task.status, func.count())
                .where(Task.job_id == job_id)
                .group_by(Task.status)
            )
            return {status: count for status, count in result.all()}

    # -------------------------------------------------------- scenes & shots

    async def list_scenes(self, job_id: uuid.UUID) -> list[Scene]:
        async with self._transaction("list_scenes") as db:
            result = await db.execute(
                select(Scene).where(Scene.job_id == job_id).order_by(Scene.sort_index.asc())
            )
            return list(result.scalars().all())

    async def save_scene(self, scene: Scene) -> None:
        async with self._transaction("save_scene", write=True) as db:
            await db.execute(
                update(Scene)
                .where(Scene.id == scene.id)
                .values(video_ref=scene.video_ref, error_message=scene.error_message)
            )

    async def list_shots(self, job_id: uuid.UUID, pending_only: bool = False) -> list[Shot]:
        """Shots of a job in (scene, shot) order.

        Args:
            job_id: Owning job.
            pending_only: Only shots without a final artifact.
        """
        query = select(Shot).where(Shot.job_id == job_id)
        if pending_only:
            query = query.where(Shot.final_shot_ref.is_(None))
        query = query.order_by(Shot.scene_index.asc(), Shot.sort_index.asc())
        async with self._transaction("list_shots") as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def save_shot(self, shot: Shot) -> None:
        async with self._transaction("save_shot", write=True) as db:
            await db.execute(
                update(Shot)
                .where(Shot.id == shot.id)
                .values(
                    image_ref=shot.image_ref,
                    audio_ref=shot.audio_ref,
                    audio_duration_seconds=shot.audio_duration_seconds,
                    video_ref=shot.video_ref,
                    final_shot_ref=shot.final_shot_ref,
                    error_message=shot.error_message,
                    updated_at=utcnow(),
                )
            )

    async def create_story_structure(
        self, job_id: uuid.UUID, outline: StoryOutline
    ) -> list[Shot]:
        """Create every scene and shot of a video job in one transaction.

        Scenes without shots are dropped. Called again for a job that already
        has scenes, it creates nothing and returns the existing shots.

        Returns:
            The job's shots in (scene, shot) order.
        """
        async with self._transaction("create_story_structure", write=True) as db:
            existing = await db.scalar(
                select(func.count()).select_from(Scene).where(Scene.job_id == job_id)
            )
            if not existing:
                scene_index = 0
                for outline_scene in outline.scenes:
                    if not outline_scene.shots:
                        log.warning(
                            "scene_without_shots_dropped",
                            job_id=str(job_id),
                            scene_name=outline_scene.name,
                        )
                        continue
                    scene = Scene(
                        id=uuid.uuid4(),
                        job_id=job_id,
                        sort_index=scene_index,
                        name=outline_scene.name,
                        script=outline_scene.script
                        or " ".join(s.script for s in outline_scene.shots),
                    )
                    db.add(scene)
                    for shot_index, outline_shot in enumerate(outline_scene.shots):
                        db.add(
                            Shot(
                                id=uuid.uuid4(),
                                job_id=job_id,
                                scene_id=scene.id,
                                scene_index=scene_index,
                                sort_index=shot_index,
                                name=outline_shot.name,
                                script=outline_shot.script,
                            )
                        )
                    scene_index += 1
        return await self.list_shots(job_id)
