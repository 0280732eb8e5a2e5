"""Playback control for the active clip: select, play, pause, seek, loop."""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from .media import MediaSource, PlaybackError, PlaybackInterrupted
from .models import Clip
from .render import DisplayClock, FrameRenderer, RenderLoop
from .timing import absolute_time_at, progress_ratio, relative_time

logger = logging.getLogger(__name__)


class PlayerState(str, Enum):
    STOPPED = "stopped"
    PLAYING = "playing"


@dataclass(frozen=True)
class Selection:
    """What the renderer needs for one frame."""

    clip: Optional[Clip]
    current_time: float
    show_captions: bool


class PlaybackController:
    """
    Owns the active clip and keeps the source positioned inside it.

    Playback stops at the clip end and rewinds to the clip start, unless an
    export is recording, in which case the capture pipeline is told the
    boundary was reached.
    """

    def __init__(
        self,
        source: MediaSource,
        clips: Sequence[Clip] = (),
        renderer: Optional[FrameRenderer] = None,
        display: Optional[DisplayClock] = None,
    ):
        self.source = source
        self.clips = tuple(clips)
        self.active_clip: Optional[Clip] = None
        self.state = PlayerState.STOPPED
        self.show_captions = True
        self.relative_time = 0.0
        self.progress = 0.0  # percent of the active clip
        self.capture = None  # CapturePipeline, set by attach_capture()

        self.render_loop = None
        if renderer is not None:
            self.render_loop = RenderLoop(renderer, source, self.snapshot, display)

        source.on("timeupdate", self.tick)
        source.on("play", self._on_play)
        source.on("pause", self._on_pause)

    def attach_capture(self, capture) -> None:
        self.capture = capture

    @property
    def exporting(self) -> bool:
        return self.capture is not None and self.capture.is_active

    def snapshot(self) -> Selection:
        return Selection(self.active_clip, self.source.current_time, self.show_captions)

    def _on_play(self) -> None:
        self.state = PlayerState.PLAYING

    def _on_pause(self) -> None:
        self.state = PlayerState.STOPPED

    # Clip selection

    def select_clip(self, clip: Clip) -> None:
        """Make clip active, parked at its start and paused."""
        if self.capture is not None and self.capture.is_active:
            self.capture.abort("Clip changed during export")

        self.active_clip = clip
        self.source.pause()
        self.rewind()
        self.state = PlayerState.STOPPED

        self._restart_render_loop()

    def _restart_render_loop(self) -> None:
        """Redraw the new clip; without a running event loop, play() starts it."""
        if self.render_loop is None:
            return
        self.render_loop.stop()
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self.render_loop.start()

    async def play_clip(self, clip: Clip) -> bool:
        self.select_clip(clip)
        return await self.play()

    # Transport

    async def play(self) -> bool:
        """
        Resume playback of the active clip.

        Returns True if playback started. A play request superseded by a
        pause or seek is ignored; other failures are logged.
        """
        if self.active_clip is None:
            return False
        if self.render_loop is not None and not self.render_loop.running:
            self.render_loop.start()
        try:
            await self.source.play()
        except PlaybackInterrupted:
            logger.debug("Play request superseded")
            return False
        except PlaybackError as e:
            logger.error(f"Playback failed: {e}")
            return False
        return True

    def pause(self) -> None:
        self.source.pause()
        self.state = PlayerState.STOPPED

    async def toggle_play(self) -> bool:
        if self.source.paused:
            return await self.play()
        self.pause()
        return False

    def seek(self, percent: float) -> None:
        """Jump to a percentage (0-100) of the active clip."""
        clip = self.active_clip
        if clip is None:
            return
        percent = min(100.0, max(0.0, percent))
        target = absolute_time_at(percent, clip)
        self.source.current_time = target
        self.progress = percent
        self.relative_time = relative_time(target, clip)

    def rewind(self) -> None:
        self.seek(0)

    # Captions

    def set_captions(self, enabled: bool) -> None:
        self.show_captions = enabled

    def toggle_captions(self) -> bool:
        self.show_captions = not self.show_captions
        return self.show_captions

    # Time updates

    def tick(self, absolute_time: float) -> None:
        """Handle a time advance of the source."""
        clip = self.active_clip
        if clip is None:
            return

        self.relative_time = relative_time(absolute_time, clip)
        self.progress = progress_ratio(absolute_time, clip) * 100

        exporting = self.exporting
        if exporting:
            self.capture.update_progress(self.progress)

        if absolute_time >= clip.end_seconds:
            if exporting:
                self.capture.boundary_reached()
            else:
                self.source.pause()
                self.rewind()
                self.state = PlayerState.STOPPED

    def close(self) -> None:
        if self.render_loop is not None:
            self.render_loop.stop()
        self.source.off("timeupdate", self.tick)
        self.source.off("play", self._on_play)
        self.source.off("pause", self._on_pause)
