"""Routes one ready task to its capability handler.

The registry is closed: every Capability member must map to a handler or to
None (manual). Coverage is checked once, at construction, so an unhandled
capability is a startup error instead of a runtime branch.

Outcomes never escape as exceptions:
    manual capability or requires_human_review  → task BLOCKED
    handler success                             → task COMPLETED (+ artifacts, output)
    handler failure                             → task FAILED (job unaffected)
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from app.capabilities import CapabilityHandler, call_handler
from app.exceptions import CapabilityError, ConfigurationError
from app.models import Capability, TaskStatus
from app.orchestrator.graph import TaskGraph, TaskNode

log = structlog.get_logger()


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of dispatching a single task."""

    task: TaskNode
    message: str

    @property
    def status(self) -> TaskStatus:
        return self.task.status


class CapabilityDispatcher:
    """Dispatches tasks through a closed Capability → handler registry."""

    def __init__(self, handlers: Mapping[Capability, CapabilityHandler | None]):
        """Initialize the dispatcher.

        Args:
            handlers: A handler, or None for manual, for every Capability member.

        Raises:
            ConfigurationError: If any Capability member is missing.
        """
        missing = [c.value for c in Capability if c not in handlers]
        if missing:
            raise ConfigurationError(
                f"Capability registry is missing handlers for: {', '.join(missing)}"
            )
        self.handlers = dict(handlers)

    def is_automated(self, task: TaskNode) -> bool:
        """Whether dispatching task will call a handler (instead of blocking it)."""
        return not task.requires_human_review and self.handlers[task.capability] is not None

    def build_context(self, task: TaskNode, graph: TaskGraph) -> dict[str, Any]:
        """Context handed to the capability: the task plus its dependencies' outputs."""
        return {
            "job_id": str(graph.job_id),
            "task": {
                "id": str(task.id),
                "title": task.title,
                "description": task.description,
                "phase": task.phase.value,
                "priority": task.priority.value,
                "acceptance_criteria": list(task.acceptance_criteria),
            },
            "context": task.context or {},
            "dependencies": [
                {
                    "id": str(dep.id),
                    "title": dep.title,
                    "capability": dep.capability.value,
                    "output_text": dep.output_text,
                    "artifacts": dep.artifacts or {},
                }
                for dep in graph.dependencies_of(task)
            ],
        }

    async def dispatch(self, task: TaskNode, graph: TaskGraph) -> DispatchResult:
        """Run one task and return it in its resulting status.

        Args:
            task: A READY task, or an IN_PROGRESS one interrupted by a crash.
            graph: The graph the task belongs to (for dependency context).

        Returns:
            DispatchResult with the task COMPLETED, FAILED or BLOCKED.
        """
        log_ctx = {
            "job_id": str(graph.job_id),
            "task_id": str(task.id),
            "capability": task.capability.value,
        }

        if not self.is_automated(task):
            reason = (
                "requires human review"
                if task.requires_human_review
                else f"capability {task.capability.value} is manual"
            )
            log.info("task_blocked_for_manual_action", reason=reason, **log_ctx)
            blocked = task.transition(
                TaskStatus.BLOCKED, error_message=f"Awaiting manual action: {reason}"
            )
            return DispatchResult(task=blocked, message=f"Blocked {task.title!r}: {reason}")

        running = (
            task
            if task.status == TaskStatus.IN_PROGRESS
            else task.transition(TaskStatus.IN_PROGRESS)
        )
        handler = self.handlers[task.capability]
        log.info("task_dispatch_started", **log_ctx)

        try:
            result = await call_handler(
                task.capability.value, handler, self.build_context(running, graph)
            )
        except CapabilityError as e:
            log.warning(
                "task_dispatch_failed",
                error_type=type(e.__cause__ or e).__name__,
                error_message=str(e),
                retriable=e.retriable,
                **log_ctx,
            )
            failed = running.transition(TaskStatus.FAILED, error_message=str(e))
            return DispatchResult(task=failed, message=f"Task {task.title!r} failed: {e}")

        completed = running.transition(
            TaskStatus.COMPLETED,
            artifacts=result.artifact_dicts() or None,
            output_text=result.output_text,
            error_message=None,
        )
        log.info(
            "task_dispatch_completed",
            artifact_count=len(result.artifacts),
            **log_ctx,
        )
        return DispatchResult(task=completed, message=f"Completed {task.title!r}")
