"""Runtime settings for clip-studio, read from the environment / .env file."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    """Tunables for playback, rendering and export."""

    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    output_dir: Path = Path("outputs")

    # Capture
    capture_fps: int = 30
    video_bitrate: int = 2_500_000  # bits per second
    audio_bitrate: str = "128k"

    # Playback / display
    display_fps: int = 30
    time_update_interval: float = 0.25  # seconds between timeupdate events

    # Captions
    caption_font: str = "DejaVuSans-Bold.ttf"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            ffmpeg_path=env.get("FFMPEG_PATH", "ffmpeg"),
            ffprobe_path=env.get("FFPROBE_PATH", "ffprobe"),
            output_dir=Path(env.get("CLIP_OUTPUT_DIR", "outputs")),
            capture_fps=int(env.get("CAPTURE_FPS", 30)),
            video_bitrate=int(env.get("CAPTURE_VIDEO_BITRATE", 2_500_000)),
            audio_bitrate=env.get("CAPTURE_AUDIO_BITRATE", "128k"),
            display_fps=int(env.get("DISPLAY_FPS", 30)),
            time_update_interval=float(env.get("TIME_UPDATE_INTERVAL", 0.25)),
            caption_font=env.get("CAPTION_FONT", "DejaVuSans-Bold.ttf"),
        )


settings = Settings.from_env()
