"""Pipeline Orchestration Engine.

This package turns a single request into a multi-artifact deliverable by
driving it through a fixed pipeline (video jobs) or a decomposed task graph
(project jobs), one resumable step at a time. State lives in PostgreSQL so
any process can pick up a job where the last step left it.
"""

from app.database import async_session_factory
from app.models import Base, Job, Task

__all__ = [
    "Base",
    "Job",
    "Task",
    "async_session_factory",
]
