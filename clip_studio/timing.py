"""Conversions between absolute source-video time and clip-relative time."""

from .models import Clip


def clip_duration(clip: Clip) -> float:
    return clip.end_seconds - clip.start_seconds


def relative_time(absolute_time: float, clip: Clip) -> float:
    """Seconds elapsed since the clip start, never negative."""
    return max(0.0, absolute_time - clip.start_seconds)


def progress_ratio(absolute_time: float, clip: Clip) -> float:
    """Fraction of the clip played, clamped to [0, 1]. Zero-length clips report 0."""
    duration = clip_duration(clip)
    if duration <= 0:
        return 0.0
    return min(1.0, max(0.0, relative_time(absolute_time, clip) / duration))


def absolute_time_at(percent: float, clip: Clip) -> float:
    """Absolute source time for a progress percentage in [0, 100]."""
    percent = min(100.0, max(0.0, percent))
    return clip.start_seconds + clip_duration(clip) * (percent / 100)
