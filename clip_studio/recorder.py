"""FFmpeg-backed recorder: raw frames in, a WebM byte stream out."""

import asyncio
import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from PIL import Image

logger = logging.getLogger(__name__)


class RecorderError(Exception):
    """The encoder could not be started."""


@dataclass(frozen=True)
class OutputFormat:
    """An encoding the recorder can produce."""

    mime_type: str
    video_codec: str  # ffmpeg encoder name
    audio_codec: str
    container: str
    extension: str


# Preference order: first one the local ffmpeg can encode wins
OUTPUT_FORMATS = (
    OutputFormat("video/webm;codecs=vp9", "libvpx-vp9", "libopus", "webm", "webm"),
    OutputFormat("video/webm", "libvpx", "libvorbis", "webm", "webm"),
)


@dataclass(frozen=True)
class AudioInput:
    """Audio taken straight from the source file for the clip window."""

    path: Path
    start: float
    duration: float
    stream_index: int = 0


def available_encoders(ffmpeg_path: str = "ffmpeg") -> set[str]:
    """Names of the encoders compiled into ffmpeg (empty if ffmpeg is missing)."""
    try:
        result = subprocess.run(
            [ffmpeg_path, "-hide_banner", "-encoders"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        return set()

    encoders = set()
    listing = False  # the flag legend comes first, then a "------" rule
    for line in result.stdout.splitlines():
        parts = line.split()
        if not listing:
            listing = bool(parts) and parts[0].startswith("------")
            continue
        # " V....D libx264   H.264 ..." -> flags, name, description
        if len(parts) >= 2 and len(parts[0]) == 6 and parts[0][0] in "VAS":
            encoders.add(parts[1])
    return encoders


def choose_output_format(encoders: Iterable[str], formats=OUTPUT_FORMATS) -> OutputFormat:
    """First preferred format whose video codec is available, else the baseline."""
    encoders = set(encoders)
    for fmt in formats:
        if fmt.video_codec in encoders:
            return fmt
    logger.warning(f"No preferred encoder available, falling back to {formats[-1].video_codec}")
    return formats[-1]


class RecorderState(str, Enum):
    INACTIVE = "inactive"
    RECORDING = "recording"


class FFmpegRecorder:
    """
    Encodes frames pushed with write_frame() into the chosen format.

    Output bytes are delivered as they appear through
    on_data_available(chunk, final); the last call has final=True. Process
    exit is reported separately through on_stop(returncode). The two
    callbacks come from different tasks and may arrive in either order.
    """

    CHUNK_SIZE = 64 * 1024

    def __init__(
        self,
        width: int,
        height: int,
        output_format: OutputFormat,
        fps: int = 30,
        video_bitrate: int = 2_500_000,
        audio: Optional[AudioInput] = None,
        audio_bitrate: str = "128k",
        ffmpeg_path: str = "ffmpeg",
    ):
        self.width = width
        self.height = height
        self.output_format = output_format
        self.fps = fps
        self.video_bitrate = video_bitrate
        self.audio = audio
        self.audio_bitrate = audio_bitrate
        self.ffmpeg_path = ffmpeg_path

        self.on_data_available: Callable[[bytes, bool], None] = lambda chunk, final: None
        self.on_stop: Callable[[int], None] = lambda returncode: None

        self.state = RecorderState.INACTIVE
        self.frames_written = 0
        self._process: Optional[asyncio.subprocess.Process] = None
        self._frames: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._stderr: list[bytes] = []

    def build_command(self) -> list[str]:
        fmt = self.output_format
        cmd = [
            self.ffmpeg_path, "-y",
            "-hide_banner", "-loglevel", "error",
            "-f", "rawvideo",
            "-pix_fmt", "rgb24",
            "-s", f"{self.width}x{self.height}",
            "-framerate", str(self.fps),
            "-i", "pipe:0",
        ]
        if self.audio:
            cmd.extend([
                "-ss", f"{self.audio.start:.3f}",
                "-t", f"{self.audio.duration:.3f}",
                "-i", str(self.audio.path),
            ])

        cmd.extend(["-map", "0:v:0"])
        if self.audio:
            cmd.extend([
                "-map", f"1:a:{self.audio.stream_index}",
                "-c:a", fmt.audio_codec,
                "-b:a", self.audio_bitrate,
            ])

        cmd.extend([
            # yuv420p needs even dimensions
            "-vf", "pad=ceil(iw/2)*2:ceil(ih/2)*2",
            "-pix_fmt", "yuv420p",
            "-c:v", fmt.video_codec,
            "-b:v", str(self.video_bitrate),
            "-deadline", "realtime",
            "-cpu-used", "8",
            "-f", fmt.container,
            "pipe:1",
        ])
        return cmd

    async def start(self) -> None:
        """
        Launch ffmpeg and begin accepting frames.

        Raises:
            RecorderError: If ffmpeg could not be started
        """
        if self.state is RecorderState.RECORDING:
            return
        cmd = self.build_command()
        logger.debug(f"Starting recorder: {' '.join(cmd)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise RecorderError(f"Could not start ffmpeg: {e}") from e

        self.state = RecorderState.RECORDING
        self._tasks = [
            asyncio.create_task(self._feed_frames()),
            asyncio.create_task(self._read_output()),
            asyncio.create_task(self._drain_stderr()),
            asyncio.create_task(self._wait_for_exit()),
        ]

    def write_frame(self, image: Image.Image) -> None:
        if self.state is not RecorderState.RECORDING:
            return
        if image.size != (self.width, self.height):
            image = image.resize((self.width, self.height))
        if image.mode != "RGB":
            image = image.convert("RGB")
        self._frames.put_nowait(image.tobytes())
        self.frames_written += 1

    def stop(self) -> None:
        """Stop accepting frames and let ffmpeg flush. No-op when inactive."""
        if self.state is RecorderState.INACTIVE:
            return
        self.state = RecorderState.INACTIVE
        self._frames.put_nowait(None)

    def kill(self) -> None:
        """Terminate without flushing; no callbacks follow."""
        self.state = RecorderState.INACTIVE
        self.on_data_available = lambda chunk, final: None
        self.on_stop = lambda returncode: None
        for task in self._tasks:
            task.cancel()
        if self._process is not None and self._process.returncode is None:
            self._process.kill()

    @property
    def stderr(self) -> str:
        return b"".join(self._stderr).decode(errors="replace")

    async def _feed_frames(self) -> None:
        stdin = self._process.stdin
        try:
            while True:
                data = await self._frames.get()
                if data is None:
                    break
                stdin.write(data)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Recorder input closed early")
        finally:
            stdin.close()

    async def _read_output(self) -> None:
        stdout = self._process.stdout
        while True:
            chunk = await stdout.read(self.CHUNK_SIZE)
            if not chunk:
                break
            self.on_data_available(chunk, False)
        self.on_data_available(b"", True)

    async def _drain_stderr(self) -> None:
        async for line in self._process.stderr:
            self._stderr.append(line)

    async def _wait_for_exit(self) -> None:
        returncode = await self._process.wait()
        self.state = RecorderState.INACTIVE
        if returncode != 0:
            logger.error(f"ffmpeg exited with {returncode}: {self.stderr[-500:]}")
        self.on_stop(returncode)
