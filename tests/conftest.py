"""Shared fixtures: a hand-driven media source and a recorder that never spawns ffmpeg."""

from pathlib import Path

import pytest
from PIL import Image

from clip_studio.media import AudioTrack, MediaSource, PlaybackError
from clip_studio.models import Caption, Clip
from clip_studio.recorder import RecorderState


class ManualSource(MediaSource):
    """MediaSource whose clock only moves when a test calls advance()."""

    def __init__(self, duration=120.0, width=320, height=180, audio=True):
        super().__init__(duration=duration)
        self.width = width
        self.height = height
        self.audio = audio  # True, False, or an exception to raise
        self.fail_play = False

    @property
    def video_width(self):
        return self.width

    @property
    def video_height(self):
        return self.height

    async def play(self):
        if self.fail_play:
            raise PlaybackError("decoder unavailable")
        await super().play()

    def advance(self, seconds, step=0.25):
        """Play forward in step-sized time updates."""
        remaining = seconds
        while remaining > 1e-9 and not self.paused:
            delta = min(step, remaining)
            self._advance(delta)
            remaining -= delta

    def read_frame(self):
        return Image.new("RGB", (self.width, self.height), (40, 80, 120))

    def audio_track(self):
        if isinstance(self.audio, Exception):
            raise self.audio
        if not self.audio:
            return None
        return AudioTrack(path=Path("source.mp4"), stream_index=0, codec="aac")


class FakeRecorder:
    """Records calls instead of running ffmpeg."""

    instances = []

    def __init__(self, width, height, output_format, **kwargs):
        self.width = width
        self.height = height
        self.output_format = output_format
        self.options = kwargs
        self.audio = kwargs.get("audio")
        self.frames = []
        self.stop_calls = 0
        self.killed = False
        self.state = RecorderState.INACTIVE
        self.on_data_available = lambda chunk, final: None
        self.on_stop = lambda returncode: None
        FakeRecorder.instances.append(self)

    async def start(self):
        self.state = RecorderState.RECORDING

    def write_frame(self, image):
        if self.state is RecorderState.RECORDING:
            self.frames.append(image.size)

    def stop(self):
        self.stop_calls += 1
        self.state = RecorderState.INACTIVE

    def kill(self):
        self.killed = True
        self.state = RecorderState.INACTIVE

    def deliver(self, *chunks, returncode=0):
        """Simulate ffmpeg flushing its output and exiting."""
        for chunk in chunks:
            self.on_data_available(chunk, False)
        self.on_data_available(b"", True)
        self.on_stop(returncode)


@pytest.fixture
def caption():
    return Caption(text="this is a test", start_seconds=12.0, end_seconds=16.0)


@pytest.fixture
def clip(caption):
    return Clip(
        id="clip-0",
        title="Why this works: 100% real!",
        start_seconds=10.0,
        end_seconds=40.0,
        description="A test clip",
        viral_score=8,
        captions=(caption,),
    )


@pytest.fixture
def other_clip():
    return Clip(id="clip-1", title="Second", start_seconds=50.0, end_seconds=80.0)


@pytest.fixture
def source():
    return ManualSource()


@pytest.fixture
def fake_recorder():
    FakeRecorder.instances = []
    return FakeRecorder
