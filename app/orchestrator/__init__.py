"""Orchestration core: task graphs, stage pipelines and the step controller.

Modules:
    graph: Immutable task graph and the plan-to-graph builder.
    resolver: Ready-set computation and dependency promotion.
    dispatcher: Routes ready tasks to capabilities.
    state_machine: Job status transitions, guards and stage order.
    progress: Stage-weighted progress and the status line.
    shots / captions: Shot artifact chain and SRT caption track.
    pipelines: Per-kind stage handlers.
    controller: The resumable step() entry point.
"""
