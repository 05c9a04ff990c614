"""Tests for CapabilityDispatcher.

Tests cover:
- Registry coverage check at construction
- Manual capabilities and human review block the task
- Success stores artifacts and output text
- Handler failures mark only the task FAILED
- Dependency outputs are passed as context
"""

import pytest

from app.capabilities import CapabilityResult, build_registry
from app.exceptions import ConfigurationError
from app.models import Capability, TaskStatus
from app.orchestrator.dispatcher import CapabilityDispatcher
from tests.support.factories import make_graph, make_node
from tests.support.fake_capabilities import FakeCapabilityService


@pytest.fixture
def fake() -> FakeCapabilityService:
    return FakeCapabilityService()


@pytest.fixture
def dispatcher(fake) -> CapabilityDispatcher:
    registry = build_registry(fake, manual=("infra", "qa", "human_review"))
    return CapabilityDispatcher(registry.task_handlers)


class TestRegistryCoverage:
    def test_missing_capability_is_configuration_error(self) -> None:
        """[P0] An incomplete registry fails at construction, not at dispatch.

        GIVEN: A handler map without QA
        WHEN: The dispatcher is built
        THEN: ConfigurationError names the missing capability
        """
        handlers = {c: None for c in Capability if c != Capability.QA}

        with pytest.raises(ConfigurationError, match="qa"):
            CapabilityDispatcher(handlers)

    def test_all_manual_registry_is_accepted(self) -> None:
        dispatcher = CapabilityDispatcher({c: None for c in Capability})
        node = make_node(0, status=TaskStatus.READY)
        assert dispatcher.is_automated(node) is False


class TestDispatch:
    async def test_success_completes_task_with_artifacts(self, dispatcher, fake) -> None:
        """[P0] A successful handler completes the task.

        GIVEN: A READY backend task
        WHEN: It is dispatched
        THEN: It is COMPLETED with the handler's artifacts and output text
        """
        node = make_node(0, status=TaskStatus.READY, title="API")
        graph = make_graph(node)

        result = await dispatcher.dispatch(node, graph)

        assert result.status == TaskStatus.COMPLETED
        assert result.task.output_text == "Done: API"
        assert result.task.artifacts["document"]["url"].endswith("/backend.md")
        assert result.task.error_message is None
        assert fake.names_called() == ["backend"]
        assert "Completed 'API'" in result.message

    async def test_manual_capability_blocks_without_calling(self, dispatcher, fake) -> None:
        """[P0] Manual capabilities are blocked for a human, not executed."""
        node = make_node(0, status=TaskStatus.READY, capability=Capability.INFRA)

        result = await dispatcher.dispatch(node, make_graph(node))

        assert result.status == TaskStatus.BLOCKED
        assert "capability infra is manual" in result.task.error_message
        assert fake.calls == []

    async def test_human_review_flag_blocks_automated_capability(self, dispatcher, fake) -> None:
        node = make_node(
            0,
            status=TaskStatus.READY,
            capability=Capability.FRONTEND,
            requires_human_review=True,
        )

        result = await dispatcher.dispatch(node, make_graph(node))

        assert result.status == TaskStatus.BLOCKED
        assert "requires human review" in result.message
        assert fake.calls == []

    async def test_handler_failure_fails_only_the_task(self, dispatcher, fake) -> None:
        """[P0] A raising handler yields a FAILED task, never an exception.

        GIVEN: The backend capability raises
        WHEN: A backend task is dispatched
        THEN: The result is FAILED with the error message recorded
        """
        fake.fail("backend")
        node = make_node(0, status=TaskStatus.READY)

        result = await dispatcher.dispatch(node, make_graph(node))

        assert result.status == TaskStatus.FAILED
        assert "backend backend unavailable" in result.task.error_message
        assert "RuntimeError" in result.task.error_message

    async def test_in_band_error_fails_task(self, dispatcher, fake) -> None:
        fake.respond("design", CapabilityResult(error="prompt rejected"))
        node = make_node(0, status=TaskStatus.READY, capability=Capability.DESIGN)

        result = await dispatcher.dispatch(node, make_graph(node))

        assert result.status == TaskStatus.FAILED
        assert result.task.error_message == "design: prompt rejected"

    async def test_resumes_interrupted_in_progress_task(self, dispatcher) -> None:
        """[P1] A task left IN_PROGRESS by a crash is re-dispatched."""
        node = make_node(0, status=TaskStatus.IN_PROGRESS)

        result = await dispatcher.dispatch(node, make_graph(node))

        assert result.status == TaskStatus.COMPLETED


class TestBuildContext:
    def test_context_carries_dependency_outputs(self, dispatcher) -> None:
        """[P1] Handlers see the outputs of the tasks they depend on."""
        upstream = make_node(
            0,
            status=TaskStatus.COMPLETED,
            capability=Capability.DESIGN,
            title="Wireframes",
            output_text="Three screens",
            artifacts={"document": {"url": "https://cdn.test/w", "content_type": "text/plain"}},
        )
        node = make_node(
            1,
            depends_on=(upstream.id,),
            status=TaskStatus.READY,
            acceptance_criteria=("Responsive",),
        )
        graph = make_graph(upstream, node)

        context = dispatcher.build_context(node, graph)

        assert context["job_id"] == str(graph.job_id)
        assert context["task"]["acceptance_criteria"] == ["Responsive"]
        assert context["dependencies"] == [
            {
                "id": str(upstream.id),
                "title": "Wireframes",
                "capability": "design",
                "output_text": "Three screens",
                "artifacts": {
                    "document": {"url": "https://cdn.test/w", "content_type": "text/plain"}
                },
            }
        ]
