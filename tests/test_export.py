"""Tests for the capture pipeline state machine."""
import pytest
from PIL import Image

from clip_studio.config import Settings
from clip_studio.export import CaptureError, CapturePipeline, CaptureStatus, sanitize_filename, save_download
from clip_studio.media import MediaProbeError
from clip_studio.player import PlaybackController
from clip_studio.recorder import OUTPUT_FORMATS
from clip_studio.render import FrameRenderer, Surface


@pytest.fixture
def rig(source, clip, other_clip, fake_recorder, tmp_path):
    """Player + renderer + capture wired to a manual source and fake recorder."""
    renderer = FrameRenderer(Surface(source.width, source.height))
    player = PlaybackController(source, [clip, other_clip])
    capture = CapturePipeline(
        player,
        renderer.surface,
        config=Settings(),
        output_dir=tmp_path,
        recorder_factory=fake_recorder,
        encoders={"libvpx-vp9", "libvpx"},
    )
    events = {"complete": [], "error": [], "progress": []}
    capture.on_complete = events["complete"].append
    capture.on_error = events["error"].append
    capture.on_progress = events["progress"].append

    def play_for(seconds, step=0.25):
        """Advance playback, compositing a frame after every time update."""
        remaining = seconds
        while remaining > 1e-9 and not source.paused:
            delta = min(step, remaining)
            source.advance(delta, step=delta)
            renderer.render(source.read_frame(), source.current_time, player.active_clip.captions)
            remaining -= delta

    player.select_clip(clip)
    return player, capture, renderer, events, play_for


class TestStartExport:
    """Tests for starting an export."""

    @pytest.mark.asyncio
    async def test_starts_recording_from_clip_start(self, rig, source, clip, fake_recorder):
        player, capture, renderer, events, play_for = rig
        player.seek(50)

        session = await capture.start_export()

        assert capture.status is CaptureStatus.RECORDING
        assert session.clip is clip
        assert session.progress == 0.0
        assert source.current_time == clip.start_seconds
        assert not source.paused

        recorder = fake_recorder.instances[-1]
        assert (recorder.width, recorder.height) == (320, 180)
        assert recorder.options["fps"] == 30
        assert recorder.options["video_bitrate"] == 2_500_000
        assert recorder.output_format is OUTPUT_FORMATS[0]

    @pytest.mark.asyncio
    async def test_attaches_source_audio(self, rig, clip, fake_recorder):
        player, capture, *_ = rig
        session = await capture.start_export()
        audio = fake_recorder.instances[-1].audio
        assert session.has_audio
        assert audio.start == clip.start_seconds
        assert audio.duration == clip.duration

    @pytest.mark.asyncio
    async def test_no_audio_track_exports_video_only(self, rig, source, fake_recorder):
        player, capture, *_ = rig
        source.audio = False
        session = await capture.start_export()
        assert capture.is_recording
        assert not session.has_audio
        assert fake_recorder.instances[-1].audio is None

    @pytest.mark.asyncio
    async def test_audio_probe_failure_exports_video_only(self, rig, source, fake_recorder):
        player, capture, *_ = rig
        source.audio = MediaProbeError("ffprobe missing")
        session = await capture.start_export()
        assert capture.is_recording
        assert not session.has_audio

    @pytest.mark.asyncio
    async def test_falls_back_to_baseline_codec(self, rig):
        player, capture, *_ = rig
        capture._encoders = {"libx264"}
        session = await capture.start_export()
        assert session.output_format is OUTPUT_FORMATS[-1]

    @pytest.mark.asyncio
    async def test_rejects_second_export(self, rig):
        player, capture, *_ = rig
        await capture.start_export()
        with pytest.raises(CaptureError):
            await capture.start_export()

    @pytest.mark.asyncio
    async def test_requires_active_clip(self, source, fake_recorder, tmp_path):
        player = PlaybackController(source)
        capture = CapturePipeline(player, Surface(), output_dir=tmp_path, recorder_factory=fake_recorder, encoders=set())
        with pytest.raises(CaptureError):
            await capture.start_export()

    @pytest.mark.asyncio
    async def test_explicit_clip_is_selected(self, rig, other_clip):
        player, capture, *_ = rig
        session = await capture.start_export(other_clip)
        assert player.active_clip is other_clip
        assert session.clip is other_clip

    @pytest.mark.asyncio
    async def test_playback_failure_aborts(self, rig, source, fake_recorder, tmp_path):
        player, capture, renderer, events, play_for = rig
        source.fail_play = True

        session = await capture.start_export()

        assert capture.status is CaptureStatus.IDLE
        assert session.status is CaptureStatus.ABORTED
        assert session.done.result() is None
        assert fake_recorder.instances[-1].killed
        assert events["error"] == ["Export playback failed"]
        assert list(tmp_path.iterdir()) == []


class TestRecording:
    """Tests for the recording run and finalization."""

    @pytest.mark.asyncio
    async def test_progress_reported(self, rig, fake_recorder):
        player, capture, renderer, events, play_for = rig
        await capture.start_export()
        play_for(15.0)
        assert capture.progress == pytest.approx(50.0)
        assert events["progress"][-1] == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_no_finalize_before_clip_end(self, rig, fake_recorder):
        player, capture, renderer, events, play_for = rig
        await capture.start_export()
        play_for(29.75)
        recorder = fake_recorder.instances[-1]
        assert recorder.stop_calls == 0
        assert capture.is_recording
        assert events["complete"] == []

    @pytest.mark.asyncio
    async def test_boundary_finalizes_exactly_once(self, rig, source, clip, fake_recorder, tmp_path):
        player, capture, renderer, events, play_for = rig
        session = await capture.start_export()
        recorder = fake_recorder.instances[-1]

        play_for(30.0)

        assert session.status is CaptureStatus.FINALIZING
        assert recorder.stop_calls == 1
        assert source.paused
        # One frame per 1/30 s of clip time, none past the end
        assert len(recorder.frames) == 900
        assert set(recorder.frames) == {(320, 180)}

        # A late user stop and another boundary tick change nothing
        capture.boundary_reached()
        player.tick(clip.end_seconds)
        assert recorder.stop_calls == 1

        recorder.deliver(b"webm-", b"bytes")

        assert len(events["complete"]) == 1
        result = events["complete"][0]
        assert result.path == tmp_path / "Why_this_works__100__real_.webm"
        assert result.path.read_bytes() == b"webm-bytes"
        assert result.size == 10
        assert session.done.result() is result

        assert capture.status is CaptureStatus.IDLE
        assert capture.progress == 0.0
        assert session.chunks == []
        assert source.current_time == clip.start_seconds
        assert player.progress == 0.0

    @pytest.mark.asyncio
    async def test_finalize_waits_for_both_signals(self, rig, fake_recorder):
        player, capture, renderer, events, play_for = rig
        session = await capture.start_export()
        recorder = fake_recorder.instances[-1]
        play_for(30.0)

        # Process exit reported before the final chunk
        recorder.on_stop(0)
        assert events["complete"] == []
        assert session.stop_acknowledged and not session.final_chunk_delivered

        recorder.on_data_available(b"tail", False)
        recorder.on_data_available(b"", True)
        assert len(events["complete"]) == 1
        assert events["complete"][0].path.read_bytes() == b"tail"

    @pytest.mark.asyncio
    async def test_encoder_crash_aborts(self, rig, fake_recorder, tmp_path):
        player, capture, renderer, events, play_for = rig
        session = await capture.start_export()
        play_for(5.0)

        fake_recorder.instances[-1].on_stop(1)

        assert session.status is CaptureStatus.ABORTED
        assert capture.status is CaptureStatus.IDLE
        assert len(events["error"]) == 1
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_failed_flush_aborts(self, rig, fake_recorder, tmp_path):
        player, capture, renderer, events, play_for = rig
        session = await capture.start_export()
        play_for(30.0)
        fake_recorder.instances[-1].deliver(b"partial", returncode=1)
        assert session.done.result() is None
        assert events["complete"] == []
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_clip_switch_aborts_export(self, rig, other_clip, fake_recorder, tmp_path):
        player, capture, renderer, events, play_for = rig
        session = await capture.start_export()
        play_for(10.0)

        player.select_clip(other_clip)

        assert session.status is CaptureStatus.ABORTED
        assert capture.status is CaptureStatus.IDLE
        assert player.active_clip is other_clip
        assert fake_recorder.instances[-1].killed

        # Late callbacks from the killed encoder are ignored
        fake_recorder.instances[-1].deliver(b"late")
        assert events["complete"] == []
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_new_export_after_finish(self, rig, fake_recorder):
        player, capture, renderer, events, play_for = rig
        await capture.start_export()
        play_for(30.0)
        fake_recorder.instances[-1].deliver(b"one")

        await capture.start_export()
        play_for(30.0)
        fake_recorder.instances[-1].deliver(b"two")

        paths = [r.path for r in events["complete"]]
        assert len(paths) == 2
        assert paths[0] != paths[1]
        assert paths[1].name == "Why_this_works__100__real__1.webm"

    @pytest.mark.asyncio
    async def test_unwritable_output_aborts_and_recovers(self, rig, fake_recorder, tmp_path):
        player, capture, renderer, events, play_for = rig
        blocker = tmp_path / "not_a_dir"
        blocker.write_bytes(b"")
        capture.output_dir = blocker

        session = await capture.start_export()
        play_for(30.0)
        fake_recorder.instances[-1].deliver(b"webm")

        assert session.done.result() is None
        assert session.status is CaptureStatus.ABORTED
        assert capture.status is CaptureStatus.IDLE
        assert events["complete"] == []
        assert events["error"][-1].startswith("Could not save export")

        capture.output_dir = tmp_path / "exports"
        await capture.start_export()
        play_for(30.0)
        fake_recorder.instances[-1].deliver(b"webm")
        assert events["complete"][-1].path.parent == tmp_path / "exports"


class TestHelpers:
    def test_sanitize_filename(self):
        assert sanitize_filename("Why this works: 100% real!") == "Why_this_works__100__real_"
        assert sanitize_filename("plain123") == "plain123"

    def test_save_download_never_overwrites(self, tmp_path):
        first = save_download(b"a", "clip.webm", tmp_path)
        second = save_download(b"b", "clip.webm", tmp_path)
        assert first.name == "clip.webm"
        assert second.name == "clip_1.webm"
        assert first.read_bytes() == b"a"

    def test_save_download_creates_directory(self, tmp_path):
        path = save_download(b"x", "c.webm", tmp_path / "nested" / "dir")
        assert path.exists()


def test_surface_stream_carries_composited_pixels():
    surface = Surface(320, 180)
    frames = []
    stream = surface.capture_stream(fps=30, origin=0.0, limit=1.0, sink=frames.append)
    surface.blit(Image.new("RGB", (320, 180), "red"))
    surface.commit(0.11)
    stream.stop()
    assert len(frames) == 4
    assert frames[0].getpixel((0, 0)) == (255, 0, 0)
