"""Source media: decoding, a playback clock and stream probing."""

import asyncio
import json
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

# Hardware decoding breaks on some AV1 sources
os.environ.setdefault("OPENCV_FFMPEG_CAPTURE_OPTIONS", "hwaccel;none")

import cv2
from PIL import Image

from .config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

EVENTS = ("timeupdate", "play", "pause", "ended")


class PlaybackInterrupted(Exception):
    """A play() request was superseded before playback began."""


class PlaybackError(Exception):
    """Playback could not start."""


class MediaProbeError(Exception):
    """ffprobe could not read the media file."""


@dataclass
class MediaInfo:
    """Stream metadata reported by ffprobe."""

    duration: float
    width: int
    height: int
    fps: float
    has_audio: bool
    audio_stream_index: Optional[int] = None
    audio_codec: Optional[str] = None


@dataclass(frozen=True)
class AudioTrack:
    """An audio stream inside a media file."""

    path: Path
    stream_index: int = 0  # index among the file's audio streams
    codec: Optional[str] = None


def probe_media(path: Path, ffprobe_path: str = "ffprobe") -> MediaInfo:
    """
    Read stream metadata with ffprobe.

    Raises:
        MediaProbeError: If ffprobe is missing, fails, or finds no video stream
    """
    cmd = [
        ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        data = json.loads(result.stdout)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise MediaProbeError(f"ffprobe failed for {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise MediaProbeError(f"Failed to parse ffprobe output: {e}") from e

    video_stream = None
    audio_streams = []
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video" and video_stream is None:
            video_stream = stream
        elif stream.get("codec_type") == "audio":
            audio_streams.append(stream)

    if not video_stream:
        raise MediaProbeError(f"No video stream found in {path}")

    fps_str = video_stream.get("r_frame_rate", "30/1")
    if "/" in fps_str:
        num, den = fps_str.split("/")
        fps = float(num) / float(den) if float(den) > 0 else 30.0
    else:
        fps = float(fps_str)

    duration = float(data.get("format", {}).get("duration", 0) or 0)
    if duration == 0:
        duration = float(video_stream.get("duration", 0) or 0)

    return MediaInfo(
        duration=duration,
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        fps=fps,
        has_audio=bool(audio_streams),
        audio_stream_index=0 if audio_streams else None,
        audio_codec=audio_streams[0].get("codec_name") if audio_streams else None,
    )


class MediaSource:
    """
    A seekable, playable media handle.

    Tracks the absolute playback position and paused flag, and notifies
    listeners of "timeupdate", "play", "pause" and "ended". Subclasses supply
    the clock that advances the position and the decoded frames.
    """

    def __init__(self, duration: float = float("inf")):
        self.duration = duration
        self._position = 0.0
        self._paused = True
        self._generation = 0  # bumped by pause(); stale play() calls see it
        self._listeners: dict[str, list[Callable]] = {name: [] for name in EVENTS}

    # Events

    def on(self, event: str, callback: Callable) -> None:
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable) -> None:
        if callback in self._listeners[event]:
            self._listeners[event].remove(callback)

    def _emit(self, event: str, *args) -> None:
        for callback in list(self._listeners[event]):
            callback(*args)

    # Position

    @property
    def current_time(self) -> float:
        return self._position

    @current_time.setter
    def current_time(self, value: float) -> None:
        self._position = min(max(0.0, value), self.duration)

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def video_width(self) -> int:
        return 0

    @property
    def video_height(self) -> int:
        return 0

    # Control

    async def play(self) -> None:
        """
        Start playback.

        Raises:
            PlaybackInterrupted: If pause() was called before playback began
            PlaybackError: If the source cannot play
        """
        if not self._paused:
            return
        generation = self._generation
        await asyncio.sleep(0)
        if generation != self._generation:
            raise PlaybackInterrupted("play() was interrupted by a call to pause()")
        if self._position >= self.duration:
            self._position = 0.0
        self._paused = False
        self._start_clock()
        self._emit("play")

    def pause(self) -> None:
        self._generation += 1
        if self._paused:
            return
        self._paused = True
        self._stop_clock()
        self._emit("pause")

    def _start_clock(self) -> None:
        pass

    def _stop_clock(self) -> None:
        pass

    def _advance(self, elapsed: float) -> None:
        """Move the playhead forward by elapsed seconds of playback."""
        if self._paused:
            return
        self._position = min(self._position + elapsed, self.duration)
        self._emit("timeupdate", self._position)
        if self._position >= self.duration and not self._paused:
            self._paused = True
            self._stop_clock()
            self._emit("pause")
            self._emit("ended")

    # Frames / streams

    def read_frame(self) -> Optional[Image.Image]:
        return None

    def audio_track(self) -> Optional[AudioTrack]:
        return None

    def close(self) -> None:
        pass


class VideoFileSource(MediaSource):
    """A video file decoded with OpenCV and played against the event loop clock."""

    # Forward jumps beyond this are seeks rather than sequential decodes
    SEEK_THRESHOLD = 1.0

    def __init__(self, path: Path, config: Optional[Settings] = None):
        self.path = Path(path)
        self.settings = config or default_settings

        self._capture = cv2.VideoCapture(str(self.path), cv2.CAP_FFMPEG)
        if not self._capture.isOpened():
            self._capture = cv2.VideoCapture(str(self.path))
        if not self._capture.isOpened():
            raise PlaybackError(f"Could not open video: {self.path}")

        fps = self._capture.get(cv2.CAP_PROP_FPS) or 30.0
        frame_count = self._capture.get(cv2.CAP_PROP_FRAME_COUNT) or 0
        super().__init__(duration=frame_count / fps if frame_count > 0 else float("inf"))

        self.fps = fps
        self._width = int(self._capture.get(cv2.CAP_PROP_FRAME_WIDTH))
        self._height = int(self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self._frame: Optional[Image.Image] = None
        self._frame_time = 0.0
        self._clock_task: Optional[asyncio.Task] = None
        self._anchor: Optional[tuple[float, float]] = None  # (loop time, position) at play
        self._info: Optional[MediaInfo] = None

    @property
    def video_width(self) -> int:
        return self._width

    @property
    def video_height(self) -> int:
        return self._height

    def info(self) -> MediaInfo:
        if self._info is None:
            self._info = probe_media(self.path, self.settings.ffprobe_path)
        return self._info

    def audio_track(self) -> Optional[AudioTrack]:
        """
        The file's first audio stream, or None for silent video.

        Raises:
            MediaProbeError: If the file could not be probed
        """
        info = self.info()
        if not info.has_audio:
            return None
        return AudioTrack(path=self.path, stream_index=info.audio_stream_index or 0, codec=info.audio_codec)

    # Clock

    @property
    def current_time(self) -> float:
        """Playback position, read continuously from the loop clock while playing."""
        if self._paused or self._anchor is None:
            return self._position
        started, position = self._anchor
        return min(position + (self._loop_time() - started), self.duration)

    @current_time.setter
    def current_time(self, value: float) -> None:
        self._position = min(max(0.0, value), self.duration)
        if self._anchor is not None:
            self._anchor = (self._loop_time(), self._position)

    @staticmethod
    def _loop_time() -> float:
        return asyncio.get_running_loop().time()

    def pause(self) -> None:
        if not self._paused:
            self._position = self.current_time
        super().pause()

    def _start_clock(self) -> None:
        self._anchor = (self._loop_time(), self._position)
        self._clock_task = asyncio.get_running_loop().create_task(self._run_clock())

    def _stop_clock(self) -> None:
        self._anchor = None
        if self._clock_task is not None:
            self._clock_task.cancel()
            self._clock_task = None

    async def _run_clock(self) -> None:
        # timeupdate keeps its coarse interval; frames read current_time directly
        while True:
            await asyncio.sleep(self.settings.time_update_interval)
            self._advance(self.current_time - self._position)

    # Decoding

    def _decode_next(self) -> bool:
        ok, bgr = self._capture.read()
        if not ok:
            return False
        index = self._capture.get(cv2.CAP_PROP_POS_FRAMES) - 1
        self._frame = Image.fromarray(cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB))
        self._frame_time = max(0.0, index) / self.fps
        return True

    def read_frame(self) -> Optional[Image.Image]:
        """The decoded frame shown at the current position."""
        target = self.current_time
        if (
            self._frame is None
            or target < self._frame_time
            or target - self._frame_time > self.SEEK_THRESHOLD
        ):
            self._capture.set(cv2.CAP_PROP_POS_FRAMES, int(target * self.fps))
            self._decode_next()

        frame_period = 1.0 / self.fps
        while self._frame is not None and self._frame_time + frame_period <= target:
            if not self._decode_next():
                break
        return self._frame

    def close(self) -> None:
        self.pause()
        self._capture.release()
