"""Capability call shapes and the closed capability registry.

A capability is a pluggable generation service (LLM, image model, TTS, video
composer) invoked for exactly one unit of work. The engine only consumes:

    invoke(name, context) -> CapabilityResult{artifacts, output_text, data, error}

Two families of capabilities exist:
    Capability: specialists a project task is routed to. Each member maps to
        a handler or to None ("manual": blocked for a human).
    PipelineCapability: calls made by the pipeline stages themselves
        (plan, story, scenes, image, audio, video, mix, ...).

Usage:
    client = CapabilityClient(base_url)
    registry = build_registry(client, manual=get_manual_capabilities())
    result = await registry.invoke(PipelineCapability.STORY, {"source_text": "..."})
"""

from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from app.exceptions import CapabilityError
from app.models import Capability, PipelineCapability

log = structlog.get_logger()


@dataclass(frozen=True)
class ArtifactRef:
    """Opaque reference to a produced artifact. Only presence is ever inspected."""

    url: str
    content_type: str = "application/octet-stream"

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "content_type": self.content_type}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ArtifactRef":
        return cls(
            url=str(data["url"]),
            content_type=str(data.get("content_type") or "application/octet-stream"),
        )


@dataclass
class CapabilityResult:
    """Result of one capability call.

    Attributes:
        artifacts: Produced artifacts keyed by role ("image", "video", "bundle"...).
        output_text: Free-form text output (story, task write-up...).
        data: Structured output (plans, scene outlines, durations).
        error: Set by capabilities that report failure in-band instead of raising.
    """

    artifacts: dict[str, ArtifactRef] = field(default_factory=dict)
    output_text: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def artifact_dicts(self) -> dict[str, dict[str, str]]:
        """Artifacts in their persisted JSON form."""
        return {role: ref.to_dict() for role, ref in self.artifacts.items()}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CapabilityResult":
        """Build a result from a JSON payload returned by a capability service."""
        artifacts = {
            role: ArtifactRef.from_dict(ref)
            for role, ref in (payload.get("artifacts") or {}).items()
            if ref and ref.get("url")
        }
        return cls(
            artifacts=artifacts,
            output_text=payload.get("output_text"),
            data=dict(payload.get("data") or {}),
            error=payload.get("error"),
        )


CapabilityHandler = Callable[[dict[str, Any]], Awaitable[CapabilityResult]]


class CapabilityInvoker(Protocol):
    """Anything that can invoke a capability by name (HTTP client, fakes)."""

    async def invoke(self, name: str, context: dict[str, Any]) -> CapabilityResult: ...


class CapabilityRegistry:
    """Closed, enum-keyed registry of capability handlers.

    task_handlers maps every Capability member to a handler, or to None when
    the capability is manual. Coverage is checked by CapabilityDispatcher at
    construction. pipeline_handlers may omit optional capabilities such as
    PACKAGE; invoking a missing one raises CapabilityError.
    """

    def __init__(
        self,
        task_handlers: Mapping[Capability, CapabilityHandler | None],
        pipeline_handlers: Mapping[PipelineCapability, CapabilityHandler],
    ):
        self.task_handlers = dict(task_handlers)
        self.pipeline_handlers = dict(pipeline_handlers)

    def has_pipeline(self, capability: PipelineCapability) -> bool:
        return capability in self.pipeline_handlers

    async def invoke(
        self, capability: PipelineCapability, context: dict[str, Any]
    ) -> CapabilityResult:
        """Invoke a pipeline capability, normalising every failure to CapabilityError.

        Raises:
            CapabilityError: If the capability is not registered, raised, or
                returned an in-band error.
        """
        handler = self.pipeline_handlers.get(capability)
        if handler is None:
            raise CapabilityError("capability is not registered", capability=capability.value)
        return await call_handler(capability.value, handler, context)


async def call_handler(
    name: str, handler: CapabilityHandler, context: dict[str, Any]
) -> CapabilityResult:
    """Run a handler and turn any failure into CapabilityError."""
    try:
        result = await handler(context)
    except CapabilityError:
        raise
    except Exception as e:
        raise CapabilityError(f"{type(e).__name__}: {e}", capability=name) from e

    if not result.ok:
        raise CapabilityError(result.error, capability=name)
    return result


def build_registry(
    invoker: CapabilityInvoker,
    manual: Iterable[str] = (),
    optional_pipeline: Iterable[PipelineCapability] = (),
) -> CapabilityRegistry:
    """Build a registry that routes every capability through one invoker.

    Args:
        invoker: Object with an async invoke(name, context) method.
        manual: Task capability names left to humans (mapped to None).
        optional_pipeline: Pipeline capabilities to leave unregistered.

    Returns:
        CapabilityRegistry covering every Capability member.
    """
    manual_names = {name.lower() for name in manual}
    skipped = set(optional_pipeline)

    def _bind(name: str) -> CapabilityHandler:
        async def _handler(context: dict[str, Any]) -> CapabilityResult:
            return await invoker.invoke(name, context)

        return _handler

    task_handlers: dict[Capability, CapabilityHandler | None] = {
        capability: None if capability.value in manual_names else _bind(capability.value)
        for capability in Capability
    }
    pipeline_handlers = {
        capability: _bind(capability.value)
        for capability in PipelineCapability
        if capability not in skipped
    }

    log.info(
        "capability_registry_built",
        manual=sorted(c.value for c, h in task_handlers.items() if h is None),
        pipeline_count=len(pipeline_handlers),
    )
    return CapabilityRegistry(task_handlers, pipeline_handlers)
