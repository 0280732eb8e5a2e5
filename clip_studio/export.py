"""
Clip export: records the composited surface plus source audio to a file.

An export runs Idle -> Recording -> Finalizing -> Idle, or drops to Aborted
(then Idle) when playback or the encoder fails. Playback itself paces the
recording; the clip end boundary reported by the PlaybackController stops it.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .config import Settings, settings as default_settings
from .media import MediaProbeError
from .models import Clip
from .player import PlaybackController
from .recorder import (
    AudioInput,
    FFmpegRecorder,
    OutputFormat,
    RecorderError,
    available_encoders,
    choose_output_format,
)
from .render import Surface, SurfaceStream

logger = logging.getLogger(__name__)


class CaptureError(Exception):
    """An export was requested in a state that cannot start one."""


class CaptureStatus(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    FINALIZING = "finalizing"
    ABORTED = "aborted"


@dataclass
class ExportResult:
    """A finished export on disk."""

    clip: Clip
    path: Path
    size: int
    output_format: OutputFormat


@dataclass
class CaptureSession:
    """State of one export, from start until finalized or aborted."""

    clip: Clip
    output_format: OutputFormat
    done: asyncio.Future
    status: CaptureStatus = CaptureStatus.IDLE
    progress: float = 0.0
    chunks: list[bytes] = field(default_factory=list)
    has_audio: bool = False
    # Both must be set before the output can be assembled
    stop_acknowledged: bool = False
    final_chunk_delivered: bool = False
    returncode: Optional[int] = None
    recorder: object = None
    stream: Optional[SurfaceStream] = None

    @property
    def ready_to_finalize(self) -> bool:
        return self.stop_acknowledged and self.final_chunk_delivered


def sanitize_filename(title: str) -> str:
    """Replace everything but ASCII letters and digits with underscores."""
    return re.sub(r"[^a-zA-Z0-9]", "_", title)


def save_download(blob: bytes, filename: str, output_dir: Path) -> Path:
    """Write blob to output_dir/filename without overwriting existing files."""
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / filename
    stem, suffix = path.stem, path.suffix
    n = 1
    while path.exists():
        path = output_dir / f"{stem}_{n}{suffix}"
        n += 1
    path.write_bytes(blob)
    return path


class CapturePipeline:
    """Exports the active clip, captions burned in, one clip at a time."""

    def __init__(
        self,
        player: PlaybackController,
        surface: Surface,
        config: Optional[Settings] = None,
        output_dir: Optional[Path] = None,
        recorder_factory: Callable = FFmpegRecorder,
        encoders: Optional[set[str]] = None,
    ):
        self.player = player
        self.surface = surface
        self.settings = config or default_settings
        self.output_dir = Path(output_dir or self.settings.output_dir)
        self.recorder_factory = recorder_factory
        self._encoders = encoders
        self.session: Optional[CaptureSession] = None

        self.on_progress: Callable[[float], None] = lambda percent: None
        self.on_complete: Callable[[ExportResult], None] = lambda result: None
        self.on_error: Callable[[str], None] = lambda message: None

        player.attach_capture(self)

    @property
    def status(self) -> CaptureStatus:
        return self.session.status if self.session else CaptureStatus.IDLE

    @property
    def progress(self) -> float:
        return self.session.progress if self.session else 0.0

    @property
    def is_recording(self) -> bool:
        return self.status is CaptureStatus.RECORDING

    @property
    def is_active(self) -> bool:
        return self.status in (CaptureStatus.RECORDING, CaptureStatus.FINALIZING)

    def encoders(self) -> set[str]:
        if self._encoders is None:
            self._encoders = available_encoders(self.settings.ffmpeg_path)
        return self._encoders

    # Start

    async def start_export(self, clip: Optional[Clip] = None) -> CaptureSession:
        """
        Record clip (default: the active clip) from its start to its end.

        Returns the session; await session.done for the ExportResult, which
        is None if the export was aborted.

        Raises:
            CaptureError: If no clip is active or an export is in progress
        """
        if self.is_active:
            raise CaptureError("An export is already in progress")
        if clip is not None and clip != self.player.active_clip:
            self.player.select_clip(clip)
        clip = self.player.active_clip
        if clip is None:
            raise CaptureError("No clip selected")

        player = self.player
        source = player.source
        player.pause()
        player.rewind()

        session = CaptureSession(
            clip=clip,
            output_format=choose_output_format(self.encoders()),
            done=asyncio.get_running_loop().create_future(),
            status=CaptureStatus.RECORDING,
        )
        self.session = session

        audio = self._audio_input(clip)
        session.has_audio = audio is not None

        width = source.video_width or self.surface.width
        height = source.video_height or self.surface.height
        recorder = self.recorder_factory(
            width,
            height,
            session.output_format,
            fps=self.settings.capture_fps,
            video_bitrate=self.settings.video_bitrate,
            audio=audio,
            audio_bitrate=self.settings.audio_bitrate,
            ffmpeg_path=self.settings.ffmpeg_path,
        )
        recorder.on_data_available = lambda chunk, final: self._on_data(session, chunk, final)
        recorder.on_stop = lambda returncode: self._on_stop(session, returncode)
        session.recorder = recorder

        logger.info(
            f"Exporting {clip.title!r} ({clip.duration:.1f}s, {session.output_format.mime_type}, "
            f"{'with' if audio else 'without'} audio)"
        )

        try:
            await recorder.start()
        except RecorderError as e:
            self._abort(session, f"Export failed: {e}")
            return session
        if session.status is not CaptureStatus.RECORDING:
            return session

        session.stream = self.surface.capture_stream(
            fps=self.settings.capture_fps,
            origin=clip.start_seconds,
            limit=clip.duration,
            sink=recorder.write_frame,
        )

        if not await player.play():
            if session.status is CaptureStatus.RECORDING:
                self._abort(session, "Export playback failed")
        return session

    def _audio_input(self, clip: Clip) -> Optional[AudioInput]:
        try:
            track = self.player.source.audio_track()
        except MediaProbeError as e:
            logger.warning(f"Could not read source audio, exporting without sound: {e}")
            return None
        if track is None:
            logger.info("Source has no audio track, exporting video only")
            return None
        return AudioInput(
            path=track.path,
            start=clip.start_seconds,
            duration=clip.duration,
            stream_index=track.stream_index,
        )

    # Driven by PlaybackController

    def update_progress(self, percent: float) -> None:
        session = self.session
        if session is None or session.status is not CaptureStatus.RECORDING:
            return
        session.progress = percent
        self.on_progress(percent)

    def boundary_reached(self) -> None:
        """Clip end reached while recording: stop capture, pause the source."""
        session = self.session
        if session is None or session.status is not CaptureStatus.RECORDING:
            return
        session.status = CaptureStatus.FINALIZING
        if session.stream is not None:
            session.stream.finish()
        session.recorder.stop()
        self.player.pause()
        self._maybe_finalize(session)

    # Recorder callbacks

    def _on_data(self, session: CaptureSession, chunk: bytes, final: bool) -> None:
        if session is not self.session or session.status is CaptureStatus.ABORTED:
            return
        if chunk:
            session.chunks.append(chunk)
        if final:
            session.final_chunk_delivered = True
            self._maybe_finalize(session)

    def _on_stop(self, session: CaptureSession, returncode: int) -> None:
        if session is not self.session or session.status is CaptureStatus.ABORTED:
            return
        session.returncode = returncode
        if session.status is CaptureStatus.RECORDING:
            self._abort(session, f"Encoder stopped unexpectedly (exit code {returncode})")
            return
        if returncode != 0:
            self._abort(session, f"Encoder failed (exit code {returncode})")
            return
        session.stop_acknowledged = True
        self._maybe_finalize(session)

    # Finish

    def _maybe_finalize(self, session: CaptureSession) -> None:
        if session.status is CaptureStatus.FINALIZING and session.ready_to_finalize:
            self._finalize(session)

    def _finalize(self, session: CaptureSession) -> None:
        clip = session.clip
        blob = b"".join(session.chunks)
        filename = f"{sanitize_filename(clip.title)}.{session.output_format.extension}"
        try:
            path = save_download(blob, filename, self.output_dir)
        except OSError as e:
            self._abort(session, f"Could not save export: {e}")
            return
        session.chunks.clear()

        result = ExportResult(clip=clip, path=path, size=len(blob), output_format=session.output_format)
        logger.info(f"Saved {path} ({len(blob)} bytes)")

        session.status = CaptureStatus.IDLE
        session.progress = 0.0
        self.session = None
        if self.player.active_clip == clip:
            self.player.rewind()

        if not session.done.done():
            session.done.set_result(result)
        self.on_complete(result)

    def abort(self, reason: str = "Export cancelled") -> None:
        if self.session is not None and self.is_active:
            self._abort(self.session, reason)

    def _abort(self, session: CaptureSession, reason: str) -> None:
        logger.warning(f"Export of {session.clip.title!r} aborted: {reason}")
        session.status = CaptureStatus.ABORTED
        if session.stream is not None:
            session.stream.stop()
        if session.recorder is not None:
            session.recorder.kill()
        session.chunks.clear()
        session.progress = 0.0
        if self.session is session:
            self.session = None
        self.player.pause()

        if not session.done.done():
            session.done.set_result(None)
        self.on_error(reason)
