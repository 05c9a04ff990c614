# Data factories for test data generation

from tests.support.factories.job_factory import (
    create_job,
    create_video_job,
    make_graph,
    make_node,
    plan_task,
)

__all__ = [
    "create_job",
    "create_video_job",
    "make_graph",
    "make_node",
    "plan_task",
]
