"""Data models for clip-studio."""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path


class ClipLoadError(ValueError):
    """Clip metadata could not be parsed."""


@dataclass(frozen=True)
class Caption:
    """A short timed phrase, in absolute source-video seconds."""

    text: str
    start_seconds: float
    end_seconds: float
    start: str = ""  # label as delivered, e.g. "01:12"
    end: str = ""

    @property
    def duration(self) -> float:
        return self.end_seconds - self.start_seconds


@dataclass(frozen=True)
class Clip:
    """A selected window of the source video with its captions."""

    id: str
    title: str
    start_seconds: float
    end_seconds: float
    description: str = ""
    viral_score: int = 0  # 1-10
    captions: tuple[Caption, ...] = field(default_factory=tuple)
    start_time: str = ""  # label as delivered, e.g. "01:05"
    end_time: str = ""

    @property
    def duration(self) -> float:
        return self.end_seconds - self.start_seconds


def parse_timestamp(ts: str) -> float:
    """
    Convert a timestamp label to seconds.

    Accepts "MM:SS", "HH:MM:SS", plain seconds and decimal fractions
    (with "." or ","). Anything unparseable yields 0.0.
    """
    if ts is None:
        return 0.0
    cleaned = re.sub(r"[^0-9:.,]", "", str(ts)).replace(",", ".")
    if not cleaned:
        return 0.0
    parts = cleaned.split(":")
    try:
        if len(parts) == 2:
            minutes, seconds = parts
            return int(minutes or 0) * 60 + float(seconds or 0)
        elif len(parts) == 3:
            hours, minutes, seconds = parts
            return int(hours or 0) * 3600 + int(minutes or 0) * 60 + float(seconds or 0)
        elif len(parts) == 1:
            return float(cleaned)
    except ValueError:
        return 0.0
    return 0.0


def format_clock(seconds: float) -> str:
    """Convert seconds to M:SS format."""
    seconds = max(0.0, seconds)
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}:{secs:02d}"


def _seconds(data: dict, seconds_key: str, label_key: str, required: bool = False) -> float:
    if data.get(seconds_key) is not None:
        return float(data[seconds_key])
    if required and label_key not in data:
        raise KeyError(label_key)
    return parse_timestamp(data.get(label_key, ""))


def _parse_caption(data: dict) -> Caption:
    return Caption(
        text=str(data.get("text", "")),
        start_seconds=_seconds(data, "startSeconds", "start"),
        end_seconds=_seconds(data, "endSeconds", "end"),
        start=str(data.get("start", "")),
        end=str(data.get("end", "")),
    )


def parse_clips(text: str) -> list[Clip]:
    """
    Parse clip metadata as produced by the video analysis step.

    The payload is a JSON list of clips; a surrounding markdown code fence
    is tolerated.
    """
    text = text.strip()
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0]
    elif "```" in text:
        text = text.split("```")[1].split("```")[0]

    try:
        raw_clips = json.loads(text)
    except json.JSONDecodeError as e:
        raise ClipLoadError(f"Clip metadata is not valid JSON: {e}") from e

    if not isinstance(raw_clips, list):
        raise ClipLoadError("Clip metadata is not a list of clips")

    clips = []
    for i, data in enumerate(raw_clips):
        try:
            clip = Clip(
                id=str(data.get("id") or f"clip-{i}"),
                title=data["title"],
                start_seconds=_seconds(data, "startSeconds", "startTime", required=True),
                end_seconds=_seconds(data, "endSeconds", "endTime", required=True),
                description=data.get("description", ""),
                viral_score=int(data.get("viralScore", 0)),
                captions=tuple(_parse_caption(c) for c in data.get("captions") or []),
                start_time=str(data.get("startTime", "")),
                end_time=str(data.get("endTime", "")),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ClipLoadError(f"Clip {i} is malformed: {e!r}") from e
        clips.append(clip)

    return clips


def load_clips(path: Path) -> list[Clip]:
    """Load clip metadata from a JSON file."""
    return parse_clips(Path(path).read_text(encoding="utf-8"))
