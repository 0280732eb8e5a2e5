"""
Caption timing: which caption is on screen and which of its words is highlighted.

Source captions carry phrase-level timing only, so the highlighted word is
estimated by spreading the caption's duration evenly over its characters.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from .models import Caption

# Once this share of the caption has elapsed, the last word stays lit.
LAST_WORD_THRESHOLD = 0.9


@dataclass(frozen=True)
class CaptionOverlay:
    """What the renderer should draw for one frame."""

    caption: Caption
    words: list[str]
    active_index: Optional[int]

    @property
    def active_word(self) -> Optional[str]:
        if self.active_index is None:
            return None
        return self.words[self.active_index]


def split_words(text: str) -> list[str]:
    return text.split()


def find_active_caption(captions: Sequence[Caption], current_time: float) -> Optional[Caption]:
    """
    Return the first caption whose window contains current_time.

    Gaps between phrases are normal and yield None.
    """
    for caption in captions:
        if caption.start_seconds <= current_time <= caption.end_seconds:
            return caption
    return None


def word_windows(caption: Caption) -> list[tuple[float, float]]:
    """
    Estimated (start, end) of each word, relative to the caption start.

    Each word owns its characters plus one trailing space; the duration per
    character is based on the full caption text, spaces included.
    """
    duration = caption.end_seconds - caption.start_seconds
    char_duration = duration / max(1, len(caption.text))

    windows = []
    chars = 0
    for word in split_words(caption.text):
        word_len = len(word) + 1  # +1 for space
        windows.append((chars * char_duration, (chars + word_len) * char_duration))
        chars += word_len
    return windows


def active_word_index(caption: Caption, current_time: float) -> Optional[int]:
    """Index of the word to highlight at current_time, or None."""
    duration = caption.end_seconds - caption.start_seconds
    elapsed = max(0.0, current_time - caption.start_seconds)

    windows = word_windows(caption)
    for i, (start, end) in enumerate(windows):
        if start <= elapsed < end:
            return i

    if windows and elapsed >= duration * LAST_WORD_THRESHOLD:
        return len(windows) - 1
    return None


def resolve_overlay(captions: Sequence[Caption], current_time: float) -> Optional[CaptionOverlay]:
    """Active caption plus its highlighted word for a frame at current_time."""
    caption = find_active_caption(captions, current_time)
    if caption is None:
        return None
    return CaptionOverlay(
        caption=caption,
        words=split_words(caption.text),
        active_index=active_word_index(caption, current_time),
    )
