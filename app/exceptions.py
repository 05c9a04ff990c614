"""Shared exceptions for the orchestration engine.

This module contains exception classes used across the orchestrator, the
persistence gateway and the HTTP layer, so that no layer has to import
another layer just to recognise its failures.

Taxonomy:
    DecompositionError: A plan could not be turned into a valid task graph.
        The whole graph is rejected before anything is persisted.
    CapabilityError: One unit of generation work failed. Isolated to the
        task or shot it was running for.
    PersistenceError: The store could not be read or written. Transient,
        calling step() again is safe.
    TerminalJobError: The job cannot make further progress. The job is
        marked FAILED and every artifact produced so far is kept.
"""

from typing import Any


class ConfigurationError(Exception):
    """Raised when required configuration is missing or inconsistent.

    Examples are a capability registry that does not cover every capability,
    or an HTTP capability client created without CAPABILITY_BASE_URL.
    """

    pass


class InvalidStateTransitionError(Exception):
    """Raised when attempting a transition the job or task state machine forbids.

    Attributes:
        message: Human-readable error message describing the invalid transition.
        from_status: The status before the attempted transition.
        to_status: The status that was attempted but is not valid.

    Example:
        >>> job.status = JobStatus.QUEUED
        >>> job.status = JobStatus.COMPLETED  # Invalid - skips the whole pipeline
        InvalidStateTransitionError: Invalid transition: queued → completed
    """

    def __init__(self, message: str, from_status: Any, to_status: Any):
        """Initialize InvalidStateTransitionError with transition details.

        Args:
            message: Human-readable error message.
            from_status: Current status before transition attempt.
            to_status: Target status that was attempted.
        """
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        """Return detailed error message with transition context."""
        base_message = super().__str__()
        return (
            f"{base_message} "
            f"(from={getattr(self.from_status, 'value', self.from_status)}, "
            f"to={getattr(self.to_status, 'value', self.to_status)})"
        )


class DecompositionError(Exception):
    """Raised when a capability's plan is malformed, dangling or cyclic.

    Attributes:
        reason: Short machine-friendly reason (e.g. "cycle", "unknown_dependency").
        task_ids: Temporary task ids involved in the failure, if any.
    """

    def __init__(
        self, message: str, reason: str = "invalid_plan", task_ids: list[str] | None = None
    ):
        self.reason = reason
        self.task_ids = list(task_ids or [])
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        if self.task_ids:
            return f"{base_message} (reason={self.reason}, tasks={', '.join(self.task_ids)})"
        return f"{base_message} (reason={self.reason})"


class CapabilityError(Exception):
    """Raised when a single generation call fails.

    Attributes:
        capability: Name of the capability that failed.
        retriable: Whether the failure looked transient (timeout, 429, 5xx).
    """

    def __init__(self, message: str, capability: str, retriable: bool = False):
        self.capability = capability
        self.retriable = retriable
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.capability}: {super().__str__()}"


class PersistenceError(Exception):
    """Raised when the persistence gateway cannot complete a read or write.

    Treated as transient: the job is left untouched and step() may be retried.
    """

    def __init__(self, message: str, operation: str):
        self.operation = operation
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.operation}: {super().__str__()}"


class TerminalJobError(Exception):
    """Raised when a job cannot make any further progress.

    The step controller converts it into status FAILED with error_message set.
    """

    pass


class JobNotFoundError(Exception):
    """Raised when a job id does not exist."""

    def __init__(self, job_id: Any):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class TaskNotFoundError(Exception):
    """Raised when a task id does not belong to the given job."""

    def __init__(self, job_id: Any, task_id: Any):
        self.job_id = job_id
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found in job {job_id}")


class JobLockedError(Exception):
    """Raised when another step currently holds the job lease."""

    def __init__(self, job_id: Any, holder: str | None = None):
        self.job_id = job_id
        self.holder = holder
        super().__init__(f"Job {job_id} is locked by another step")


class LeaseLostError(JobLockedError):
    """Raised when a step's lease expired or was taken over before it wrote.

    The write is rolled back; the new lease holder owns the job from then on.
    """

    def __init__(self, job_id: Any, operation: str):
        self.operation = operation
        super().__init__(job_id)

    def __str__(self) -> str:
        return f"{self.operation}: lease on job {self.job_id} was lost"
