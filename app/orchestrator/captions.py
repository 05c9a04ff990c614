"""SRT caption track built from shot scripts and narration durations."""

from collections.abc import Iterable

from app.models import Shot
from app.orchestrator.shots import order_shots

# Shots without a measured narration length are assumed to last this long
DEFAULT_SHOT_SECONDS = 5.0


def format_srt_timestamp(seconds: float) -> str:
    """Format seconds as an SRT timestamp, HH:MM:SS,mmm.

    >>> format_srt_timestamp(3725.5)
    '01:02:05,500'
    """
    total_ms = int(round(max(seconds, 0.0) * 1000))
    hours, remainder = divmod(total_ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    secs, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def build_srt(shots: Iterable[Shot]) -> str:
    """One cue per shot, back to back, in (scene, shot) order."""
    entries = []
    current = 0.0
    for index, shot in enumerate(order_shots(shots), start=1):
        duration = shot.audio_duration_seconds or DEFAULT_SHOT_SECONDS
        start, end = current, current + duration
        entries.append(
            f"{index}\n{format_srt_timestamp(start)} --> {format_srt_timestamp(end)}\n"
            f"{shot.script.strip()}\n"
        )
        current = end
    return "\n".join(entries)
