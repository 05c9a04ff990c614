"""Scripted stand-in for the capability gateway.

FakeCapabilityService implements the same invoke(name, context) surface as
CapabilityClient, so it plugs into build_registry() unchanged. Every call is
recorded; responses default to plausible artifacts and can be overridden per
capability with a fixed CapabilityResult, a callable, or a failure.
"""

from collections.abc import Callable
from typing import Any

from app.capabilities import ArtifactRef, CapabilityResult

DEFAULT_PLAN: dict[str, Any] = {
    "phases": [{"name": "design", "order": 1}, {"name": "build", "order": 2}],
    "tasks": [
        {
            "id": "T1",
            "title": "Wireframes",
            "phase": "design",
            "agentName": "design",
            "priority": "high",
            "dependsOn": [],
            "acceptanceCriteria": ["Covers the checkout flow"],
        },
        {
            "id": "T2",
            "title": "API",
            "phase": "build",
            "agentName": "backend",
            "priority": "high",
            "dependsOn": ["T1"],
        },
        {
            "id": "T3",
            "title": "Landing page",
            "phase": "build",
            "agentName": "frontend",
            "priority": "medium",
            "dependsOn": ["T1", "T2"],
        },
    ],
}

DEFAULT_OUTLINE: dict[str, Any] = {
    "scenes": [
        {
            "name": "Opening",
            "script": "A quiet town wakes up.",
            "shots": [
                {"name": "Sunrise", "script": "The sun rises over the rooftops."},
                {"name": "Street", "script": "A baker opens the shop door."},
            ],
        },
        {
            "name": "Turn",
            "script": "Something unusual arrives.",
            "shots": [
                {"name": "Arrival", "script": "A red balloon drifts into the square."},
                {"name": "Crowd", "script": "Children run after it, laughing."},
            ],
        },
    ]
}

Response = CapabilityResult | Callable[[dict[str, Any]], CapabilityResult]


def artifact(name: str, kind: str, content_type: str = "application/octet-stream") -> ArtifactRef:
    return ArtifactRef(url=f"https://cdn.test/{name}/{kind}", content_type=content_type)


def shot_bundle(context: dict[str, Any]) -> CapabilityResult:
    """Every link of a shot's chain in one result."""
    shot_id = context["shot_id"]
    return CapabilityResult(
        artifacts={
            "image": artifact(shot_id, "image.png", "image/png"),
            "audio": artifact(shot_id, "audio.mp3", "audio/mpeg"),
            "video": artifact(shot_id, "clip.mp4", "video/mp4"),
            "final": artifact(shot_id, "final.mp4", "video/mp4"),
        },
        data={"duration_seconds": 4.0},
    )


class FakeCapabilityService:
    """In-memory capability gateway with call recording."""

    def __init__(
        self,
        plan: dict[str, Any] | None = None,
        outline: dict[str, Any] | None = None,
    ):
        self.plan = plan if plan is not None else DEFAULT_PLAN
        self.outline = outline if outline is not None else DEFAULT_OUTLINE
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.responses: dict[str, Response] = {}
        self.failures: dict[str, Callable[[dict[str, Any]], bool]] = {}

    # ------------------------------------------------------------ scripting

    def respond(self, name: str, response: Response) -> None:
        self.responses[name] = response

    def fail(
        self, name: str, when: Callable[[dict[str, Any]], bool] | None = None
    ) -> None:
        """Make capability name raise, for every call or only when when(context) holds."""
        self.failures[name] = when or (lambda context: True)

    def names_called(self) -> list[str]:
        return [name for name, _ in self.calls]

    # ----------------------------------------------------------- invocation

    async def invoke(self, name: str, context: dict[str, Any]) -> CapabilityResult:
        self.calls.append((name, context))

        should_fail = self.failures.get(name)
        if should_fail and should_fail(context):
            raise RuntimeError(f"{name} backend unavailable")

        response = self.responses.get(name)
        if response is None:
            return self._default(name, context)
        if callable(response):
            return response(context)
        return response

    def _default(self, name: str, context: dict[str, Any]) -> CapabilityResult:
        job_id = context.get("job_id", "job")
        if name == "plan":
            return CapabilityResult(data=self.plan)
        if name == "scenes":
            return CapabilityResult(data=self.outline)
        if name == "story":
            return CapabilityResult(output_text="Once upon a time, a town found a balloon.")
        if name == "extract_source":
            return CapabilityResult(output_text="Transcribed narration from the source.")
        if name == "image":
            return CapabilityResult(
                artifacts={"image": artifact(context["shot_id"], "image.png", "image/png")}
            )
        if name == "audio":
            return CapabilityResult(
                artifacts={"audio": artifact(context["shot_id"], "audio.mp3", "audio/mpeg")},
                data={"duration_seconds": 3.5},
            )
        if name == "video":
            return CapabilityResult(
                artifacts={"video": artifact(context["shot_id"], "clip.mp4", "video/mp4")}
            )
        if name == "mix":
            return CapabilityResult(
                artifacts={"final": artifact(context["shot_id"], "final.mp4", "video/mp4")}
            )
        if name == "combine_shots":
            return CapabilityResult(
                artifacts={"video": artifact(context["scene_id"], "scene.mp4", "video/mp4")}
            )
        if name in ("combine_scenes", "captions"):
            return CapabilityResult(
                artifacts={"video": artifact(job_id, f"{name}.mp4", "video/mp4")}
            )
        if name == "package":
            return CapabilityResult(
                artifacts={"bundle": artifact(job_id, "bundle.zip", "application/zip")}
            )
        # Task capabilities (design, frontend, backend, content, ...)
        task = context.get("task", {})
        return CapabilityResult(
            artifacts={"document": artifact(task.get("id", job_id), f"{name}.md", "text/markdown")},
            output_text=f"Done: {task.get('title')}",
        )
