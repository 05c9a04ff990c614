"""Stage handlers for the two pipeline kinds.

A pipeline performs at most one bounded unit of work for the job's current
stage and reports what happened as a StageOutcome. It never changes
job.status itself: the step controller applies the outcome through the state
machine, so every transition is guarded in one place.

All continuation state lives in persisted rows (tasks, scenes, shots, job
columns). A pipeline derives "what is left to do" from those rows on every
call and keeps nothing in memory between steps.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Protocol

import structlog
from pydantic import ValidationError

from app.capabilities import CapabilityRegistry, CapabilityResult
from app.exceptions import CapabilityError, DecompositionError, TerminalJobError
from app.models import (
    PHASE_ORDER,
    Job,
    JobStatus,
    PipelineCapability,
    SourceType,
    TaskStatus,
)
from app.orchestrator.captions import build_srt
from app.orchestrator.dispatcher import CapabilityDispatcher
from app.orchestrator.graph import TaskGraph, TaskGraphBuilder
from app.orchestrator.progress import UnitCounts
from app.orchestrator.resolver import promote, ready_tasks, waiting_on_attention
from app.orchestrator.shots import (
    SUB_STEPS,
    apply_result,
    next_pending_shot,
    order_shots,
    shot_context,
)
from app.schemas.job import StoryOutline
from app.services.persistence import SqlPersistenceGateway

log = structlog.get_logger()


@dataclass(frozen=True)
class StageOutcome:
    """What one stage call did.

    Attributes:
        message: Human-readable summary returned to the caller of step().
        advance: The stage is exhausted; move to the next stage.
        transition_to: Explicit non-linear move (IN_PROGRESS ⇄ STALLED),
            applied before advance.
        idle: Nothing can happen until an operator acts.
    """

    message: str
    advance: bool = False
    transition_to: JobStatus | None = None
    idle: bool = False


class Pipeline(Protocol):
    async def run_stage(self, job: Job) -> StageOutcome: ...

    async def counts(self, job: Job) -> UnitCounts: ...

    async def finalize(self, job: Job) -> None: ...


def structured_output(result: CapabilityResult, capability: str) -> dict[str, Any]:
    """Structured payload of a result: data, or output_text parsed as JSON."""
    if result.data:
        return result.data
    if result.output_text:
        try:
            payload = json.loads(result.output_text)
        except json.JSONDecodeError as e:
            raise CapabilityError("output is not valid JSON", capability=capability) from e
        if isinstance(payload, dict):
            return payload
    raise CapabilityError("returned no structured output", capability=capability)


def primary_artifact(result: CapabilityResult, role: str, capability: str) -> dict[str, str]:
    """The artifact for role, or the only artifact returned."""
    ref = result.artifacts.get(role)
    if ref is None and len(result.artifacts) == 1:
        ref = next(iter(result.artifacts.values()))
    if ref is None:
        raise CapabilityError(f"returned no {role} artifact", capability=capability)
    return ref.to_dict()


class ProjectPipeline:
    """QUEUED → PLANNING → IN_PROGRESS (⇄ STALLED) → COMPLETED."""

    def __init__(
        self,
        persistence: SqlPersistenceGateway,
        registry: CapabilityRegistry,
        dispatcher: CapabilityDispatcher,
        max_parallel_tasks: int = 1,
        builder: TaskGraphBuilder | None = None,
    ):
        self.persistence = persistence
        self.registry = registry
        self.dispatcher = dispatcher
        self.max_parallel_tasks = max(1, max_parallel_tasks)
        self.builder = builder or TaskGraphBuilder()

    async def run_stage(self, job: Job) -> StageOutcome:
        if job.status == JobStatus.QUEUED:
            return StageOutcome("Project accepted", advance=True)
        if job.status == JobStatus.PLANNING:
            return await self._plan(job)
        if job.status in (JobStatus.IN_PROGRESS, JobStatus.STALLED):
            return await self._execute(job)
        raise TerminalJobError(f"Project jobs have no stage {job.status.value}")

    async def _plan(self, job: Job) -> StageOutcome:
        existing = await self.persistence.load_graph(job.id)
        if existing.tasks:
            return StageOutcome(f"Plan already has {len(existing)} tasks", advance=True)

        result = await self.registry.invoke(
            PipelineCapability.PLAN,
            {
                "job_id": str(job.id),
                "title": job.title,
                "request_text": job.request_text,
                "options": job.options or {},
            },
        )
        try:
            payload = structured_output(result, PipelineCapability.PLAN.value)
        except CapabilityError as e:
            raise DecompositionError(str(e), reason="schema") from e

        # Validation happens entirely before the single insert
        graph = self.builder.build(job.id, payload)
        await self.persistence.insert_tasks(graph)
        return StageOutcome(f"Planned {len(graph)} tasks", advance=True)

    async def _execute(self, job: Job) -> StageOutcome:
        graph = promote(await self.persistence.load_graph(job.id))
        resume = JobStatus.IN_PROGRESS if job.status == JobStatus.STALLED else None
        ready = ready_tasks(graph)

        if ready:
            return await self._dispatch_batch(job, graph, ready[: self.max_parallel_tasks], resume)

        if graph.is_complete:
            return StageOutcome(
                f"All {len(graph)} tasks completed", advance=True, transition_to=resume
            )

        counts = graph.counts()
        attention = waiting_on_attention(graph)
        message = (
            f"No runnable tasks: {counts[TaskStatus.BLOCKED]} blocked, "
            f"{counts[TaskStatus.FAILED]} failed, {len(attention.waiting)} waiting on them"
        )
        log.info(
            "project_stalled",
            job_id=str(job.id),
            blocked=counts[TaskStatus.BLOCKED],
            failed=counts[TaskStatus.FAILED],
            needs_action=[node.title for node in attention.needs_action],
            waiting=len(attention.waiting),
        )
        stall = JobStatus.STALLED if job.status == JobStatus.IN_PROGRESS else None
        return StageOutcome(message, transition_to=stall, idle=True)

    async def _dispatch_batch(
        self, job: Job, graph: TaskGraph, batch: list, resume: JobStatus | None
    ) -> StageOutcome:
        # Mark automated tasks in progress first so a crash mid-call is visible
        started = [
            node.transition(TaskStatus.IN_PROGRESS)
            for node in batch
            if node.status != TaskStatus.IN_PROGRESS and self.dispatcher.is_automated(node)
        ]
        if started:
            graph = graph.with_nodes(started)
        await self.persistence.save_tasks(graph)

        batch = [graph.get(node.id) for node in batch]
        results = await asyncio.gather(*(self.dispatcher.dispatch(node, graph) for node in batch))

        graph = promote(graph.with_nodes(r.task for r in results))
        await self.persistence.save_tasks(graph)

        log.info(
            "project_tasks_dispatched",
            job_id=str(job.id),
            dispatched=len(results),
            outcomes={str(r.task.id): r.status.value for r in results},
        )
        return StageOutcome("; ".join(r.message for r in results), transition_to=resume)

    async def counts(self, job: Job) -> UnitCounts:
        by_status = await self.persistence.count_tasks_by_status(job.id)
        return UnitCounts(
            total=sum(by_status.values()),
            completed=by_status.get(TaskStatus.COMPLETED, 0),
            blocked=by_status.get(TaskStatus.BLOCKED, 0),
            failed=by_status.get(TaskStatus.FAILED, 0),
        )

    async def finalize(self, job: Job) -> None:
        """Collect task outputs into deliverables and package them if possible."""
        tasks = await self.persistence.list_tasks(job.id)
        completed = sorted(
            (t for t in tasks if t.status == TaskStatus.COMPLETED),
            key=lambda t: (PHASE_ORDER[t.phase], t.sort_index),
        )
        job.deliverables = [
            {
                "task_id": str(task.id),
                "title": task.title,
                "phase": task.phase.value,
                "capability": task.capability.value,
                "output_text": task.output_text,
                "artifacts": task.artifacts or {},
            }
            for task in completed
        ]

        if not self.registry.has_pipeline(PipelineCapability.PACKAGE):
            log.info("project_packaging_skipped", job_id=str(job.id), reason="not_registered")
            return

        result = await self.registry.invoke(
            PipelineCapability.PACKAGE,
            {"job_id": str(job.id), "title": job.title, "deliverables": job.deliverables},
        )
        job.final_artifact_ref = primary_artifact(
            result, "bundle", PipelineCapability.PACKAGE.value
        )


class VideoPipeline:
    """QUEUED → UPLOADING → story → scenes → media → build → captions → COMPLETED."""

    def __init__(self, persistence: SqlPersistenceGateway, registry: CapabilityRegistry):
        self.persistence = persistence
        self.registry = registry

    async def run_stage(self, job: Job) -> StageOutcome:
        handler = {
            JobStatus.QUEUED: self._accept,
            JobStatus.UPLOADING: self._store_source,
            JobStatus.GENERATING_STORY: self._generate_story,
            JobStatus.GENERATING_SCENES: self._generate_scenes,
            JobStatus.GENERATING_MEDIA: self._generate_media,
            JobStatus.BUILDING_VIDEO: self._build_video,
            JobStatus.ADDING_CAPTIONS: self._add_captions,
        }.get(job.status)
        if handler is None:
            raise TerminalJobError(f"Video jobs have no stage {job.status.value}")
        return await handler(job)

    async def _accept(self, job: Job) -> StageOutcome:
        return StageOutcome("Video accepted", advance=True)

    async def _store_source(self, job: Job) -> StageOutcome:
        if job.source_text and job.source_text.strip():
            return StageOutcome("Source already stored", advance=True)

        if job.source_type == SourceType.TEXT:
            job.source_text = job.request_text
        else:
            result = await self.registry.invoke(
                PipelineCapability.EXTRACT_SOURCE,
                {
                    "job_id": str(job.id),
                    "source_type": job.source_type.value,
                    "source": job.source_ref,
                    "options": job.options or {},
                },
            )
            job.source_text = result.output_text

        if not (job.source_text and job.source_text.strip()):
            raise TerminalJobError("Source contains no text to narrate")
        return StageOutcome("Source stored", advance=True)

    async def _generate_story(self, job: Job) -> StageOutcome:
        if not job.generated_story:
            result = await self.registry.invoke(
                PipelineCapability.STORY,
                {
                    "job_id": str(job.id),
                    "title": job.title,
                    "source_text": job.source_text,
                    "options": job.options or {},
                },
            )
            if not (result.output_text and result.output_text.strip()):
                raise TerminalJobError("Story generation returned an empty narrative")
            job.generated_story = result.output_text
        return StageOutcome("Story generated", advance=True)

    async def _generate_scenes(self, job: Job) -> StageOutcome:
        shots = await self.persistence.list_shots(job.id)
        if not shots:
            result = await self.registry.invoke(
                PipelineCapability.SCENES,
                {
                    "job_id": str(job.id),
                    "title": job.title,
                    "story": job.generated_story,
                    "options": job.options or {},
                },
            )
            payload = structured_output(result, PipelineCapability.SCENES.value)
            try:
                outline = StoryOutline.model_validate(payload)
            except ValidationError as e:
                raise TerminalJobError(
                    f"Scene decomposition is invalid: {e.error_count()} error(s)"
                ) from e
            shots = await self.persistence.create_story_structure(job.id, outline)
            if not shots:
                raise TerminalJobError("Scene decomposition produced no shots")

        job.total_scenes = len({shot.scene_id for shot in shots})
        return StageOutcome(
            f"Created {job.total_scenes} scenes with {len(shots)} shots", advance=True
        )

    async def _generate_media(self, job: Job) -> StageOutcome:
        shots = order_shots(await self.persistence.list_shots(job.id))
        pending = next_pending_shot(shots)
        if pending is None:
            return StageOutcome(f"All {len(shots)} shots generated", advance=True)

        shot, sub_step = pending
        position = shots.index(shot) + 1
        capability = SUB_STEPS[sub_step][0]
        log_ctx = {
            "job_id": str(job.id),
            "shot_id": str(shot.id),
            "sub_step": sub_step.value,
            "capability": capability.value,
        }
        log.info("shot_sub_step_started", position=position, total=len(shots), **log_ctx)

        try:
            result = await self.registry.invoke(capability, shot_context(job, shot, sub_step))
            filled = apply_result(shot, sub_step, result)
        except CapabilityError as e:
            shot.error_message = str(e)
            await self.persistence.save_shot(shot)
            log.warning("shot_sub_step_failed", error_message=str(e), **log_ctx)
            # The media chain is serial: the job cannot advance without this shot
            raise TerminalJobError(
                f"Shot {position}/{len(shots)} (scene {shot.scene_index + 1}, "
                f"shot {shot.sort_index + 1}) failed during {sub_step.value}: {e}"
            ) from e

        await self.persistence.save_shot(shot)
        log.info("shot_sub_step_completed", filled=filled, **log_ctx)
        return StageOutcome(f"Generated {sub_step.value} for shot {position}/{len(shots)}")

    async def _build_video(self, job: Job) -> StageOutcome:
        scenes = await self.persistence.list_scenes(job.id)
        pending_scene = next((s for s in scenes if s.video_ref is None), None)

        if pending_scene is not None:
            shots = order_shots(
                s for s in await self.persistence.list_shots(job.id)
                if s.scene_id == pending_scene.id
            )
            result = await self.registry.invoke(
                PipelineCapability.COMBINE_SHOTS,
                {
                    "job_id": str(job.id),
                    "scene_id": str(pending_scene.id),
                    "scene_index": pending_scene.sort_index,
                    "shots": [shot.final_shot_ref for shot in shots],
                    "options": job.options or {},
                },
            )
            pending_scene.video_ref = primary_artifact(
                result, "video", PipelineCapability.COMBINE_SHOTS.value
            )
            await self.persistence.save_scene(pending_scene)
            return StageOutcome(
                f"Combined scene {pending_scene.sort_index + 1}/{len(scenes)}"
            )

        if job.combined_video_ref is None:
            result = await self.registry.invoke(
                PipelineCapability.COMBINE_SCENES,
                {
                    "job_id": str(job.id),
                    "scenes": [scene.video_ref for scene in scenes],
                    "options": job.options or {},
                },
            )
            job.combined_video_ref = primary_artifact(
                result, "video", PipelineCapability.COMBINE_SCENES.value
            )
        return StageOutcome(f"Combined {len(scenes)} scenes into the final video", advance=True)

    async def _add_captions(self, job: Job) -> StageOutcome:
        if job.captioned_video_ref is None:
            shots = await self.persistence.list_shots(job.id)
            job.srt_content = build_srt(shots)
            result = await self.registry.invoke(
                PipelineCapability.CAPTIONS,
                {
                    "job_id": str(job.id),
                    "video": job.combined_video_ref,
                    "srt_content": job.srt_content,
                    "style": (job.options or {}).get("caption_style") or {},
                },
            )
            job.captioned_video_ref = primary_artifact(
                result, "video", PipelineCapability.CAPTIONS.value
            )
        return StageOutcome("Captions added", advance=True)

    async def counts(self, job: Job) -> UnitCounts:
        shots = await self.persistence.list_shots(job.id)
        scenes_total = scenes_combined = 0
        if job.status == JobStatus.BUILDING_VIDEO:
            scenes = await self.persistence.list_scenes(job.id)
            scenes_total = len(scenes)
            scenes_combined = sum(1 for s in scenes if s.video_ref is not None)
        return UnitCounts(
            total=len(shots),
            completed=sum(1 for s in shots if s.is_complete),
            scenes_total=scenes_total,
            scenes_combined=scenes_combined,
            scenes_joined=job.combined_video_ref is not None,
        )

    async def finalize(self, job: Job) -> None:
        """Pick the deliverable: the captioned video when present, else the combined one."""
        job.final_artifact_ref = job.captioned_video_ref or job.combined_video_ref
