"""Progress percentage and status line for jobs.

One canonical weighting for the video pipeline. Each stage owns a fixed slice
of the 0-100 range; a stage's base is the sum of the weights before it:

    Stage               Weight  Base
    GENERATING_STORY      10      0
    GENERATING_SCENES     15     10
    GENERATING_MEDIA      50     25
    BUILDING_VIDEO        15     75
    ADDING_CAPTIONS       10     90

Inside GENERATING_MEDIA: base + completed_shots / total_shots * 50, so the
moment the last shot completes progress is exactly 75. Inside BUILDING_VIDEO
each combine call (one per scene, plus the final scene join) earns an equal
share of 15. QUEUED and UPLOADING report 0; COMPLETED reports 100, also when
the captions stage was skipped.

Project jobs report round(100 * completed / total).

Progress never decreases: the stored value is max(previous, computed).
"""

from dataclasses import dataclass

from app.models import Job, JobKind, JobStatus

STAGE_WEIGHTS: dict[JobStatus, int] = {
    JobStatus.GENERATING_STORY: 10,
    JobStatus.GENERATING_SCENES: 15,
    JobStatus.GENERATING_MEDIA: 50,
    JobStatus.BUILDING_VIDEO: 15,
    JobStatus.ADDING_CAPTIONS: 10,
}


def stage_base(status: JobStatus) -> int:
    """Cumulative weight of every stage before status."""
    base = 0
    for stage, weight in STAGE_WEIGHTS.items():
        if stage == status:
            return base
        base += weight
    return base


@dataclass(frozen=True)
class UnitCounts:
    """Unit counts a progress computation needs.

    total / completed are tasks (project) or shots (video). blocked / failed
    only apply to projects; scenes_* only to BUILDING_VIDEO.
    """

    total: int = 0
    completed: int = 0
    blocked: int = 0
    failed: int = 0
    scenes_total: int = 0
    scenes_combined: int = 0
    scenes_joined: bool = False


def video_progress(status: JobStatus, counts: UnitCounts) -> int:
    if status == JobStatus.COMPLETED:
        return 100
    if status not in STAGE_WEIGHTS:
        return 0

    base = stage_base(status)
    if status == JobStatus.GENERATING_MEDIA and counts.total > 0:
        fraction = counts.completed / counts.total
        return round(base + fraction * STAGE_WEIGHTS[status])
    if status == JobStatus.BUILDING_VIDEO and counts.scenes_total > 0:
        calls_total = counts.scenes_total + 1
        calls_done = counts.scenes_combined + (1 if counts.scenes_joined else 0)
        return round(base + calls_done / calls_total * STAGE_WEIGHTS[status])
    return base


def project_progress(status: JobStatus, counts: UnitCounts) -> int:
    if status == JobStatus.COMPLETED:
        return 100
    if counts.total <= 0:
        return 0
    return round(100 * counts.completed / counts.total)


def current_step(job: Job, counts: UnitCounts) -> str:
    """Human-readable status line, e.g. "Generating Media (7/12 shots)"."""
    status = job.status
    if status == JobStatus.GENERATING_MEDIA:
        return f"Generating Media ({counts.completed}/{counts.total} shots)"
    if status == JobStatus.BUILDING_VIDEO:
        return f"Building Video ({counts.scenes_combined}/{counts.scenes_total} scenes)"
    if status == JobStatus.IN_PROGRESS:
        return f"Executing Tasks ({counts.completed}/{counts.total} tasks)"
    if status == JobStatus.STALLED:
        return f"Awaiting Attention ({counts.blocked} blocked, {counts.failed} failed)"
    return STEP_LABELS.get(status, status.value)


STEP_LABELS = {
    JobStatus.QUEUED: "Queued",
    JobStatus.UPLOADING: "Preparing Source",
    JobStatus.GENERATING_STORY: "Generating Story",
    JobStatus.GENERATING_SCENES: "Generating Scenes",
    JobStatus.ADDING_CAPTIONS: "Adding Captions",
    JobStatus.PLANNING: "Planning Tasks",
    JobStatus.COMPLETED: "Completed",
    JobStatus.FAILED: "Failed",
    JobStatus.CANCELLED: "Cancelled",
}


class ProgressAggregator:
    """Applies monotonic progress and the status line to a job."""

    def compute(self, job: Job, counts: UnitCounts) -> int:
        if job.kind == JobKind.VIDEO:
            return video_progress(job.status, counts)
        return project_progress(job.status, counts)

    def apply(self, job: Job, counts: UnitCounts) -> int:
        """Update job.progress, current_step and unit counters in place.

        FAILED and CANCELLED keep the last progress reached.

        Returns:
            The stored progress value.
        """
        job.total_units = counts.total
        job.completed_units = counts.completed
        job.current_step = current_step(job, counts)
        if job.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
            computed = max(0, min(100, self.compute(job, counts)))
            job.progress = max(job.progress or 0, computed)
        return job.progress
