"""In-memory task graph and its builder.

A project's tasks are loaded wholesale into an immutable TaskGraph at the
start of a step, transformed functionally (each change returns a new graph),
and written back in one transaction. No code path updates task rows one at a
time between capability calls.

TaskGraphBuilder turns a planner's ExecutionPlan (tasks referencing each other
by temporary string ids) into a validated, acyclic TaskGraph with durable
UUIDs. Validation happens before anything is persisted: an invalid plan is
rejected as a whole.
"""

import uuid
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from graphlib import CycleError, TopologicalSorter
from typing import Any

import structlog
from pydantic import ValidationError

from app.exceptions import DecompositionError, InvalidStateTransitionError
from app.models import Capability, Priority, Task, TaskPhase, TaskStatus
from app.schemas.job import ExecutionPlan

log = structlog.get_logger()


# Legal task status changes. FAILED/BLOCKED/COMPLETED → PENDING is an explicit
# retry; BLOCKED → COMPLETED is a manual resolve.
TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.READY}),
    TaskStatus.READY: frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.BLOCKED}
    ),
    TaskStatus.COMPLETED: frozenset({TaskStatus.PENDING}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.PENDING, TaskStatus.COMPLETED}),
}


@dataclass(frozen=True)
class TaskNode:
    """Immutable snapshot of one task."""

    id: uuid.UUID
    sort_index: int
    title: str
    phase: TaskPhase
    capability: Capability
    priority: Priority = Priority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    depends_on: tuple[uuid.UUID, ...] = ()
    description: str | None = None
    acceptance_criteria: tuple[str, ...] = ()
    context: dict[str, Any] | None = field(default=None, compare=False)
    requires_human_review: bool = False
    artifacts: dict[str, Any] | None = field(default=None, compare=False)
    output_text: str | None = None
    error_message: str | None = None
    temp_id: str | None = None

    def transition(self, status: TaskStatus, **changes: Any) -> "TaskNode":
        """Return a copy in the given status.

        Raises:
            InvalidStateTransitionError: If the move is not in TASK_TRANSITIONS.
        """
        if status != self.status and status not in TASK_TRANSITIONS[self.status]:
            raise InvalidStateTransitionError(
                f"Invalid task transition for {self.title!r}: "
                f"{self.status.value} → {status.value}",
                from_status=self.status,
                to_status=status,
            )
        return replace(self, status=status, **changes)

    @classmethod
    def from_row(cls, row: Task) -> "TaskNode":
        return cls(
            id=row.id,
            sort_index=row.sort_index,
            title=row.title,
            phase=row.phase,
            capability=row.capability,
            priority=row.priority,
            status=row.status,
            depends_on=tuple(uuid.UUID(str(dep)) for dep in row.depends_on or []),
            description=row.description,
            acceptance_criteria=tuple(row.acceptance_criteria or []),
            context=row.context,
            requires_human_review=row.requires_human_review,
            artifacts=row.artifacts,
            output_text=row.output_text,
            error_message=row.error_message,
            temp_id=row.temp_id,
        )

    def to_row(self, job_id: uuid.UUID) -> Task:
        return Task(
            id=self.id,
            job_id=job_id,
            sort_index=self.sort_index,
            temp_id=self.temp_id,
            title=self.title,
            description=self.description,
            phase=self.phase,
            capability=self.capability,
            priority=self.priority,
            status=self.status,
            depends_on=[str(dep) for dep in self.depends_on],
            acceptance_criteria=list(self.acceptance_criteria),
            context=self.context,
            requires_human_review=self.requires_human_review,
            artifacts=self.artifacts,
            output_text=self.output_text,
            error_message=self.error_message,
        )


@dataclass(frozen=True)
class TaskGraph:
    """All tasks of one job, in declaration order."""

    job_id: uuid.UUID
    tasks: tuple[TaskNode, ...]

    @classmethod
    def from_rows(cls, job_id: uuid.UUID, rows: Iterable[Task]) -> "TaskGraph":
        nodes = sorted((TaskNode.from_row(row) for row in rows), key=lambda n: n.sort_index)
        return cls(job_id=job_id, tasks=tuple(nodes))

    def __len__(self) -> int:
        return len(self.tasks)

    def __iter__(self):
        return iter(self.tasks)

    def get(self, task_id: uuid.UUID) -> TaskNode | None:
        for node in self.tasks:
            if node.id == task_id:
                return node
        return None

    @property
    def completed_ids(self) -> frozenset[uuid.UUID]:
        return frozenset(n.id for n in self.tasks if n.status == TaskStatus.COMPLETED)

    @property
    def is_complete(self) -> bool:
        return bool(self.tasks) and all(n.status == TaskStatus.COMPLETED for n in self.tasks)

    def counts(self) -> Counter:
        """Number of tasks per TaskStatus."""
        return Counter(n.status for n in self.tasks)

    def with_node(self, node: TaskNode) -> "TaskGraph":
        """Return a new graph with the node of the same id replaced."""
        return self.with_nodes([node])

    def with_nodes(self, nodes: Iterable[TaskNode]) -> "TaskGraph":
        updates = {n.id: n for n in nodes}
        unknown = set(updates) - {n.id for n in self.tasks}
        if unknown:
            raise KeyError(f"Tasks not in graph: {sorted(str(u) for u in unknown)}")
        return replace(self, tasks=tuple(updates.get(n.id, n) for n in self.tasks))

    def dependencies_of(self, node: TaskNode) -> list[TaskNode]:
        by_id = {n.id: n for n in self.tasks}
        return [by_id[dep] for dep in node.depends_on if dep in by_id]

    def dependents_of(self, task_id: uuid.UUID) -> list[TaskNode]:
        """All tasks that depend on task_id, directly or transitively."""
        found: dict[uuid.UUID, TaskNode] = {}
        frontier = [task_id]
        while frontier:
            current = frontier.pop()
            for node in self.tasks:
                if current in node.depends_on and node.id not in found:
                    found[node.id] = node
                    frontier.append(node.id)
        return sorted(found.values(), key=lambda n: n.sort_index)


class TaskGraphBuilder:
    """Validates planner output and converts it into a TaskGraph.

    Rejected (DecompositionError, nothing persisted):
        - schema-invalid plans
        - empty plans
        - duplicate temporary ids
        - dependencies on unknown ids
        - self-dependencies
        - cycles
    """

    def build(
        self, job_id: uuid.UUID, plan: ExecutionPlan | Mapping[str, Any]
    ) -> TaskGraph:
        """Build a validated graph for job_id.

        Args:
            job_id: Owning job.
            plan: ExecutionPlan, or the raw planner payload to validate.

        Returns:
            TaskGraph with UUIDs; tasks without dependencies are READY,
            all others PENDING.

        Raises:
            DecompositionError: If the plan is invalid in any way listed above.
        """
        if not isinstance(plan, ExecutionPlan):
            try:
                plan = ExecutionPlan.model_validate(plan)
            except ValidationError as e:
                raise DecompositionError(
                    f"Plan failed schema validation: {e.error_count()} error(s)",
                    reason="schema",
                ) from e

        descriptors = plan.tasks
        if not descriptors:
            raise DecompositionError("Plan contains no tasks", reason="empty_plan")

        id_counts = Counter(d.id for d in descriptors)
        duplicates = sorted(temp_id for temp_id, n in id_counts.items() if n > 1)
        if duplicates:
            raise DecompositionError(
                "Plan contains duplicate task ids", reason="duplicate_id", task_ids=duplicates
            )

        known = set(id_counts)
        for descriptor in descriptors:
            if descriptor.id in descriptor.depends_on:
                raise DecompositionError(
                    "Task depends on itself",
                    reason="self_dependency",
                    task_ids=[descriptor.id],
                )
            missing = [dep for dep in descriptor.depends_on if dep not in known]
            if missing:
                raise DecompositionError(
                    f"Task {descriptor.id} depends on unknown tasks",
                    reason="unknown_dependency",
                    task_ids=missing,
                )

        sorter = TopologicalSorter({d.id: set(d.depends_on) for d in descriptors})
        try:
            sorter.prepare()
        except CycleError as e:
            cycle = [str(node) for node in e.args[1]] if len(e.args) > 1 else []
            raise DecompositionError(
                "Task dependencies contain a cycle", reason="cycle", task_ids=cycle
            ) from e

        id_map = {d.id: uuid.uuid4() for d in descriptors}
        nodes = []
        for index, descriptor in enumerate(descriptors):
            depends_on = tuple(dict.fromkeys(id_map[dep] for dep in descriptor.depends_on))
            nodes.append(
                TaskNode(
                    id=id_map[descriptor.id],
                    sort_index=index,
                    title=descriptor.title,
                    description=descriptor.description,
                    phase=descriptor.phase,
                    capability=descriptor.capability,
                    priority=descriptor.priority,
                    status=TaskStatus.PENDING if depends_on else TaskStatus.READY,
                    depends_on=depends_on,
                    acceptance_criteria=tuple(descriptor.acceptance_criteria),
                    context=descriptor.context,
                    requires_human_review=descriptor.requires_human_review,
                    temp_id=descriptor.id,
                )
            )

        log.info(
            "task_graph_built",
            job_id=str(job_id),
            task_count=len(nodes),
            ready_count=sum(1 for n in nodes if n.status == TaskStatus.READY),
        )
        return TaskGraph(job_id=job_id, tasks=tuple(nodes))
