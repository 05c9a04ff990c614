"""Job state machine: stage order, guards and transitions.

The table of legal transitions lives on Job.VALID_TRANSITIONS and is enforced
at attribute assignment. This module adds what a table cannot express:

    - the forward order of stages for each job kind
    - the guard each forward move must satisfy
    - skipping ADDING_CAPTIONS when captions are disabled

Video guards:
    UPLOADING → GENERATING_STORY          source text stored
    GENERATING_STORY → GENERATING_SCENES  non-empty generated story
    GENERATING_SCENES → GENERATING_MEDIA  total shots > 0
    GENERATING_MEDIA → BUILDING_VIDEO     completed shots == total shots
    BUILDING_VIDEO → ADDING_CAPTIONS      combined video artifact
    BUILDING_VIDEO → COMPLETED            combined video artifact, captions disabled
    ADDING_CAPTIONS → COMPLETED           captioned video artifact

Project guards:
    PLANNING → IN_PROGRESS                at least one task
    IN_PROGRESS → COMPLETED               every task completed
"""

from collections.abc import Callable

import structlog

from app.exceptions import InvalidStateTransitionError
from app.models import TERMINAL_STATUSES, Job, JobKind, JobStatus, utcnow

log = structlog.get_logger()

VIDEO_STAGES = (
    JobStatus.QUEUED,
    JobStatus.UPLOADING,
    JobStatus.GENERATING_STORY,
    JobStatus.GENERATING_SCENES,
    JobStatus.GENERATING_MEDIA,
    JobStatus.BUILDING_VIDEO,
    JobStatus.ADDING_CAPTIONS,
    JobStatus.COMPLETED,
)

PROJECT_STAGES = (
    JobStatus.QUEUED,
    JobStatus.PLANNING,
    JobStatus.IN_PROGRESS,
    JobStatus.COMPLETED,
)

Guard = Callable[[Job], str | None]


def _require(condition: Callable[[Job], bool], reason: str) -> Guard:
    def guard(job: Job) -> str | None:
        return None if condition(job) else reason

    return guard


GUARDS: dict[tuple[JobStatus, JobStatus], Guard] = {
    (JobStatus.UPLOADING, JobStatus.GENERATING_STORY): _require(
        lambda j: bool(j.source_text and j.source_text.strip()), "source is not stored"
    ),
    (JobStatus.GENERATING_STORY, JobStatus.GENERATING_SCENES): _require(
        lambda j: bool(j.generated_story and j.generated_story.strip()),
        "generated story is empty",
    ),
    (JobStatus.GENERATING_SCENES, JobStatus.GENERATING_MEDIA): _require(
        lambda j: (j.total_units or 0) > 0, "no shots were generated"
    ),
    (JobStatus.GENERATING_MEDIA, JobStatus.BUILDING_VIDEO): _require(
        lambda j: (j.total_units or 0) > 0 and j.completed_units == j.total_units,
        "not every shot is complete",
    ),
    (JobStatus.BUILDING_VIDEO, JobStatus.ADDING_CAPTIONS): _require(
        lambda j: j.combined_video_ref is not None, "combined video is missing"
    ),
    (JobStatus.BUILDING_VIDEO, JobStatus.COMPLETED): _require(
        lambda j: j.combined_video_ref is not None, "combined video is missing"
    ),
    (JobStatus.ADDING_CAPTIONS, JobStatus.COMPLETED): _require(
        lambda j: j.captioned_video_ref is not None, "captioned video is missing"
    ),
    (JobStatus.PLANNING, JobStatus.IN_PROGRESS): _require(
        lambda j: (j.total_units or 0) > 0, "plan produced no tasks"
    ),
    (JobStatus.IN_PROGRESS, JobStatus.COMPLETED): _require(
        lambda j: (j.total_units or 0) > 0 and j.completed_units == j.total_units,
        "not every task is complete",
    ),
}


class StateMachine:
    """Forward stage ordering and guarded transitions for one job."""

    def stages(self, job: Job) -> tuple[JobStatus, ...]:
        return VIDEO_STAGES if job.kind == JobKind.VIDEO else PROJECT_STAGES

    def next_status(self, job: Job) -> JobStatus:
        """The stage that follows the job's current stage.

        Raises:
            InvalidStateTransitionError: For terminal jobs and for STALLED
                (which only returns to IN_PROGRESS).
        """
        if job.status == JobStatus.STALLED:
            return JobStatus.IN_PROGRESS
        stages = self.stages(job)
        if job.status not in stages or job.status in TERMINAL_STATUSES:
            raise InvalidStateTransitionError(
                f"No next stage for {job.status.value}",
                from_status=job.status,
                to_status=None,
            )
        target = stages[stages.index(job.status) + 1]
        if target == JobStatus.ADDING_CAPTIONS and not job.captions_enabled:
            return JobStatus.COMPLETED
        return target

    def guard_failure(self, job: Job, target: JobStatus) -> str | None:
        """Why job may not move to target, or None if the guard passes."""
        guard = GUARDS.get((job.status, target))
        return guard(job) if guard else None

    def transition(self, job: Job, target: JobStatus) -> JobStatus:
        """Move job to target after checking its guard.

        Returns:
            The status the job left.

        Raises:
            InvalidStateTransitionError: If the guard fails or the move is not
                listed in Job.VALID_TRANSITIONS.
        """
        previous = job.status
        reason = self.guard_failure(job, target)
        if reason:
            raise InvalidStateTransitionError(
                f"Guard failed: {reason}", from_status=previous, to_status=target
            )
        job.status = target
        if target in TERMINAL_STATUSES:
            job.completed_at = utcnow()
        log.info(
            "job_status_changed",
            job_id=str(job.id),
            from_status=previous.value,
            to_status=target.value,
        )
        return previous

    def advance(self, job: Job) -> JobStatus:
        """Move job to its next stage. Returns the new status."""
        target = self.next_status(job)
        self.transition(job, target)
        return target

    def fail(self, job: Job, message: str) -> None:
        """Mark a non-terminal job FAILED with message. Terminal jobs are left alone."""
        if job.status in TERMINAL_STATUSES:
            return
        job.error_message = message
        self.transition(job, JobStatus.FAILED)

    def cancel(self, job: Job) -> bool:
        """Cancel a non-terminal job. Returns False if it was already terminal."""
        if job.status in TERMINAL_STATUSES:
            return False
        self.transition(job, JobStatus.CANCELLED)
        return True
