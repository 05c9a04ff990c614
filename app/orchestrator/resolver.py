"""Dependency resolution over a TaskGraph.

The resolver never sees dangling references or cycles: TaskGraphBuilder
rejects those before a graph is ever persisted.
"""

from dataclasses import dataclass

from app.models import PRIORITY_RANK, TaskStatus
from app.orchestrator.graph import TaskGraph, TaskNode

RUNNABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.READY})
ATTENTION_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.BLOCKED})


def _order_key(node: TaskNode) -> tuple[int, int]:
    # Priority descending (critical first), then declaration order
    return PRIORITY_RANK[node.priority], node.sort_index


def is_eligible(node: TaskNode, completed_ids: frozenset) -> bool:
    """Whether a not-yet-run task has every dependency completed."""
    return node.status in RUNNABLE_STATUSES and set(node.depends_on) <= completed_ids


def ready_tasks(graph: TaskGraph) -> list[TaskNode]:
    """Tasks that may run now, in dispatch order.

    Tasks left IN_PROGRESS by an interrupted step come first: the job lease
    guarantees nobody else is running them. Then every pending/ready task
    whose dependencies are all completed, ordered by priority descending and
    declaration order.
    """
    completed = graph.completed_ids
    interrupted = sorted(
        (n for n in graph.tasks if n.status == TaskStatus.IN_PROGRESS),
        key=lambda n: n.sort_index,
    )
    eligible = sorted(
        (n for n in graph.tasks if is_eligible(n, completed)),
        key=_order_key,
    )
    return interrupted + eligible


def promote(graph: TaskGraph) -> TaskGraph:
    """Return a graph in which every eligible PENDING task is READY."""
    completed = graph.completed_ids
    promoted = [
        node.transition(TaskStatus.READY)
        for node in graph.tasks
        if node.status == TaskStatus.PENDING and set(node.depends_on) <= completed
    ]
    return graph.with_nodes(promoted) if promoted else graph


def demote(graph: TaskGraph) -> TaskGraph:
    """Return a graph in which READY tasks with an incomplete dependency are PENDING.

    Needed after a retry resets a completed task its dependents relied on.
    """
    completed = graph.completed_ids
    demoted = [
        node.transition(TaskStatus.PENDING)
        for node in graph.tasks
        if node.status == TaskStatus.READY and not set(node.depends_on) <= completed
    ]
    return graph.with_nodes(demoted) if demoted else graph


@dataclass(frozen=True)
class Attention:
    """Why unfinished tasks cannot run.

    Attributes:
        needs_action: Failed or blocked tasks an operator has to retry or resolve.
        waiting: Not-yet-run tasks that depend on them, directly or transitively.
    """

    needs_action: list[TaskNode]
    waiting: list[TaskNode]


def waiting_on_attention(graph: TaskGraph) -> Attention:
    needs_action = [n for n in graph.tasks if n.status in ATTENTION_STATUSES]
    waiting: dict = {}
    for node in needs_action:
        for dependent in graph.dependents_of(node.id):
            if dependent.status in RUNNABLE_STATUSES:
                waiting[dependent.id] = dependent
    return Attention(
        needs_action=needs_action,
        waiting=sorted(waiting.values(), key=lambda n: n.sort_index),
    )
