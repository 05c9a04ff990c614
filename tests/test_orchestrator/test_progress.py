"""Tests for progress computation and the status line.

Tests cover:
- Stage weights sum to exactly 100
- Progress equals the media stage's cumulative weight when every shot is done
- Building-video progress per combine call
- Monotonic apply(), including FAILED/CANCELLED
- Human-readable current_step strings
"""

import pytest

from app.models import JobKind, JobStatus
from app.orchestrator.progress import (
    STAGE_WEIGHTS,
    ProgressAggregator,
    UnitCounts,
    current_step,
    project_progress,
    stage_base,
    video_progress,
)
from tests.support.factories import create_job, create_video_job


@pytest.fixture
def aggregator() -> ProgressAggregator:
    return ProgressAggregator()


class TestStageWeights:
    def test_weights_sum_to_100(self) -> None:
        """[P0] The canonical weighting covers exactly 0-100."""
        assert sum(STAGE_WEIGHTS.values()) == 100

    def test_stage_bases(self) -> None:
        assert stage_base(JobStatus.GENERATING_STORY) == 0
        assert stage_base(JobStatus.GENERATING_SCENES) == 10
        assert stage_base(JobStatus.GENERATING_MEDIA) == 25
        assert stage_base(JobStatus.BUILDING_VIDEO) == 75
        assert stage_base(JobStatus.ADDING_CAPTIONS) == 90


class TestVideoProgress:
    def test_all_shots_done_equals_media_cumulative_weight(self) -> None:
        """[P0] completed == total shots gives exactly the weight through media.

        GIVEN: A job in GENERATING_MEDIA with every one of 7 shots complete
        WHEN: Progress is computed
        THEN: It equals story + scenes + media weights (75)
        """
        counts = UnitCounts(total=7, completed=7)
        expected = sum(
            STAGE_WEIGHTS[s]
            for s in (
                JobStatus.GENERATING_STORY,
                JobStatus.GENERATING_SCENES,
                JobStatus.GENERATING_MEDIA,
            )
        )
        assert video_progress(JobStatus.GENERATING_MEDIA, counts) == expected == 75

    def test_media_is_proportional(self) -> None:
        assert video_progress(JobStatus.GENERATING_MEDIA, UnitCounts(total=4, completed=0)) == 25
        assert video_progress(JobStatus.GENERATING_MEDIA, UnitCounts(total=4, completed=2)) == 50

    def test_building_video_counts_combine_calls(self) -> None:
        """[P1] Each scene combine plus the final join earns an equal share of 15."""
        counts = UnitCounts(total=4, completed=4, scenes_total=2, scenes_combined=1)
        assert video_progress(JobStatus.BUILDING_VIDEO, counts) == 80

        joined = UnitCounts(
            total=4, completed=4, scenes_total=2, scenes_combined=2, scenes_joined=True
        )
        assert video_progress(JobStatus.BUILDING_VIDEO, joined) == 90

    @pytest.mark.parametrize("status", [JobStatus.QUEUED, JobStatus.UPLOADING])
    def test_before_story_is_zero(self, status) -> None:
        assert video_progress(status, UnitCounts()) == 0

    def test_completed_is_100(self) -> None:
        assert video_progress(JobStatus.COMPLETED, UnitCounts()) == 100


class TestProjectProgress:
    def test_ratio_of_completed_tasks(self) -> None:
        assert project_progress(JobStatus.IN_PROGRESS, UnitCounts(total=3, completed=1)) == 33
        assert project_progress(JobStatus.PLANNING, UnitCounts()) == 0
        assert project_progress(JobStatus.COMPLETED, UnitCounts(total=3, completed=3)) == 100


class TestApply:
    def test_progress_never_decreases(self, aggregator) -> None:
        """[P0] apply() stores max(previous, computed).

        GIVEN: A project job already at 66%
        WHEN: A retry drops the completed count
        THEN: Progress stays at 66
        """
        job = create_job(status=JobStatus.IN_PROGRESS, progress=66)

        stored = aggregator.apply(job, UnitCounts(total=3, completed=1))

        assert stored == 66
        assert job.completed_units == 1

    def test_failed_job_keeps_last_progress(self, aggregator) -> None:
        job = create_video_job(status=JobStatus.FAILED, progress=40)
        aggregator.apply(job, UnitCounts(total=4, completed=4))
        assert job.progress == 40

    def test_sets_units_and_status_line(self, aggregator) -> None:
        job = create_video_job(status=JobStatus.GENERATING_MEDIA)
        aggregator.apply(job, UnitCounts(total=12, completed=7))

        assert job.total_units == 12
        assert job.completed_units == 7
        assert job.current_step == "Generating Media (7/12 shots)"
        assert job.progress == round(25 + 7 / 12 * 50)

    def test_compute_dispatches_on_kind(self, aggregator) -> None:
        video = create_job(kind=JobKind.VIDEO, status=JobStatus.GENERATING_MEDIA)
        project = create_job(kind=JobKind.PROJECT, status=JobStatus.IN_PROGRESS)
        counts = UnitCounts(total=2, completed=1)
        assert aggregator.compute(video, counts) == 50
        assert aggregator.compute(project, counts) == 50


class TestCurrentStep:
    @pytest.mark.parametrize(
        "status,counts,expected",
        [
            (
                JobStatus.BUILDING_VIDEO,
                UnitCounts(scenes_total=3, scenes_combined=1),
                "Building Video (1/3 scenes)",
            ),
            (
                JobStatus.IN_PROGRESS,
                UnitCounts(total=5, completed=2),
                "Executing Tasks (2/5 tasks)",
            ),
            (
                JobStatus.STALLED,
                UnitCounts(total=5, blocked=1, failed=2),
                "Awaiting Attention (1 blocked, 2 failed)",
            ),
            (JobStatus.PLANNING, UnitCounts(), "Planning Tasks"),
            (JobStatus.UPLOADING, UnitCounts(), "Preparing Source"),
        ],
    )
    def test_status_lines(self, status, counts, expected) -> None:
        kind = JobKind.PROJECT if status in (
            JobStatus.IN_PROGRESS,
            JobStatus.STALLED,
            JobStatus.PLANNING,
        ) else JobKind.VIDEO
        job = create_job(kind=kind, status=status)
        assert current_step(job, counts) == expected
