"""Shot-level work selection for the media stage.

Each shot fills its artifacts along a strict chain:

    image → audio → video → mix (final shot)

video_ref requires image_ref; final_shot_ref requires video_ref and audio_ref.
Narration audio is generated before the clip so the video capability can
match the clip length to the narration.

One step performs exactly one missing sub-step of the first incomplete shot
in (scene_index, sort_index) order.
"""

import enum
from collections.abc import Iterable
from typing import Any

from app.capabilities import CapabilityResult
from app.exceptions import CapabilityError
from app.models import Job, PipelineCapability, Shot


class ShotSubStep(enum.Enum):
    """One link of a shot's artifact chain."""

    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    MIX = "mix"


# sub-step → (capability, result artifact role, Shot column)
SUB_STEPS: dict[ShotSubStep, tuple[PipelineCapability, str, str]] = {
    ShotSubStep.IMAGE: (PipelineCapability.IMAGE, "image", "image_ref"),
    ShotSubStep.AUDIO: (PipelineCapability.AUDIO, "audio", "audio_ref"),
    ShotSubStep.VIDEO: (PipelineCapability.VIDEO, "video", "video_ref"),
    ShotSubStep.MIX: (PipelineCapability.MIX, "final", "final_shot_ref"),
}

ROLE_COLUMNS = {role: column for _, role, column in SUB_STEPS.values()}


def order_shots(shots: Iterable[Shot]) -> list[Shot]:
    return sorted(shots, key=lambda s: (s.scene_index, s.sort_index))


def missing_sub_step(shot: Shot) -> ShotSubStep | None:
    """First link of the chain the shot is missing, or None when complete."""
    if shot.image_ref is None:
        return ShotSubStep.IMAGE
    if shot.audio_ref is None:
        return ShotSubStep.AUDIO
    if shot.video_ref is None:
        return ShotSubStep.VIDEO
    if shot.final_shot_ref is None:
        return ShotSubStep.MIX
    return None


def next_pending_shot(shots: Iterable[Shot]) -> tuple[Shot, ShotSubStep] | None:
    """The first incomplete shot in (scene, shot) order and its missing sub-step."""
    for shot in order_shots(shots):
        sub_step = missing_sub_step(shot)
        if sub_step is not None:
            return shot, sub_step
    return None


def chain_violation(shot: Shot) -> str | None:
    """Describe a broken artifact chain, or None if the shot is consistent."""
    if shot.video_ref is not None and shot.image_ref is None:
        return "video without image"
    if shot.final_shot_ref is not None and (shot.video_ref is None or shot.audio_ref is None):
        return "final shot without video and audio"
    return None


def shot_context(job: Job, shot: Shot, sub_step: ShotSubStep) -> dict[str, Any]:
    """Capability context for one sub-step of a shot."""
    options = job.options or {}
    context: dict[str, Any] = {
        "job_id": str(job.id),
        "shot_id": str(shot.id),
        "scene_index": shot.scene_index,
        "shot_index": shot.sort_index,
        "script": shot.script,
        "options": options,
    }
    if sub_step in (ShotSubStep.VIDEO, ShotSubStep.MIX):
        context["image"] = shot.image_ref
        context["audio"] = shot.audio_ref
        context["audio_duration_seconds"] = shot.audio_duration_seconds
    if sub_step == ShotSubStep.MIX:
        context["video"] = shot.video_ref
    return context


def apply_result(shot: Shot, sub_step: ShotSubStep, result: CapabilityResult) -> list[str]:
    """Attach a capability result to the shot.

    The artifact for the requested sub-step is required. A capability may
    also return later links of the chain in one call (e.g. a bundle of image,
    audio, video and final); they are attached as well as long as the chain
    stays consistent.

    Returns:
        Names of the columns that were filled.

    Raises:
        CapabilityError: If the requested artifact is missing or the result
            would break the chain. The shot is left unchanged.
    """
    capability, role, _ = SUB_STEPS[sub_step]
    artifacts = dict(result.artifacts)
    if role not in artifacts and len(artifacts) == 1:
        # Single unnamed artifact answers the requested sub-step
        artifacts = {role: next(iter(artifacts.values()))}
    if role not in artifacts:
        raise CapabilityError(f"returned no {role} artifact", capability=capability.value)

    updates: dict[str, Any] = {
        ROLE_COLUMNS[r]: ref.to_dict() for r, ref in artifacts.items() if r in ROLE_COLUMNS
    }
    duration = result.data.get("duration_seconds") or result.data.get("audio_duration_seconds")
    if duration is not None and (sub_step == ShotSubStep.AUDIO or "audio_ref" in updates):
        updates["audio_duration_seconds"] = float(duration)

    previous = {name: getattr(shot, name) for name in updates}
    for name, value in updates.items():
        setattr(shot, name, value)
    violation = chain_violation(shot)
    if violation:
        for name, value in previous.items():
            setattr(shot, name, value)
        raise CapabilityError(
            f"result breaks artifact chain: {violation}", capability=capability.value
        )

    shot.error_message = None
    return sorted(updates)
