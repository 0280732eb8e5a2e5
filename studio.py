#!/usr/bin/env python3
"""
Clip Studio - burn word-highlighted captions into viral clips and export them.

Interactive CLI tool - run: python studio.py [--video FILE] [--clips FILE]
Clip metadata is the JSON list produced by the video analysis step.
"""

import argparse
import asyncio
import logging
import shutil
import sys
from pathlib import Path

from clip_studio.config import settings
from clip_studio.export import CapturePipeline, ExportResult
from clip_studio.media import PlaybackError, VideoFileSource
from clip_studio.models import Clip, ClipLoadError, format_clock, load_clips
from clip_studio.player import PlaybackController
from clip_studio.recorder import available_encoders
from clip_studio.render import CaptionStyle, DisplayClock, FrameRenderer, Surface
from clip_studio.utils import ProgressBar, Spinner

VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".mkv", ".webm"}
ANSWERS = {"y": True, "yes": True, "n": False, "no": False}


def prompt_choice(question: str, options: list[str], default: int = 0) -> int | None:
    """
    Ask the user to pick one of options by number.

    Returns the chosen index, or None when the user enters "q".
    """
    print(f"\n{question}")
    for number, option in enumerate(options, start=1):
        print(f"  {'→' if number - 1 == default else ' '} {number}. {option}")

    prompt = f"\nClip number [1-{len(options)}], q to quit (default: {default + 1}): "
    while True:
        raw = input(prompt).strip().lower()
        if raw == "q":
            return None
        if not raw:
            return default
        if raw.isdigit() and 1 <= int(raw) <= len(options):
            return int(raw) - 1
        print(f"Enter a number from 1 to {len(options)}, or q")


def prompt_yes_no(question: str, default: bool = True) -> bool:
    hint = "Y/n" if default else "y/N"
    while True:
        answer = input(f"\n{question} [{hint}]: ").strip().lower()
        if not answer:
            return default
        if answer in ANSWERS:
            return ANSWERS[answer]
        print("Please answer y or n")


def prompt_path(question: str, extensions: set[str] | None = None) -> Path:
    """Ask for an existing file, re-prompting until one is given."""
    while True:
        raw = input(f"{question}: ").strip().strip("\"'")
        if not raw:
            print("Please enter a file path")
            continue
        path = Path(raw).expanduser().resolve()
        if not path.is_file():
            print(f"❌ File not found: {path}")
            continue
        if extensions and path.suffix.lower() not in extensions:
            print(f"❌ Unsupported format: {path.suffix}")
            print(f"   Supported: {', '.join(sorted(extensions))}")
            continue
        return path


def check_tools() -> bool:
    """Check that ffmpeg and ffprobe are installed."""
    return all(shutil.which(tool) for tool in (settings.ffmpeg_path, settings.ffprobe_path))


def clip_label(clip: Clip) -> str:
    start = clip.start_time or format_clock(clip.start_seconds)
    end = clip.end_time or format_clock(clip.end_seconds)
    return f"[{start} - {end}] {round(clip.duration):3}s │ {clip.viral_score:2}/10 │ {clip.title}"


async def export_clip(
    source: VideoFileSource,
    clips: list[Clip],
    clip: Clip,
    show_captions: bool,
    encoders: set[str],
    output_dir: Path,
) -> ExportResult | None:
    """Play clip through the renderer and record it to output_dir."""
    renderer = FrameRenderer(Surface(), CaptionStyle(font=settings.caption_font))
    player = PlaybackController(source, clips, renderer=renderer, display=DisplayClock(settings.display_fps))
    capture = CapturePipeline(player, renderer.surface, output_dir=output_dir, encoders=encoders)

    progress_bar = ProgressBar(prefix="🎬 ")
    capture.on_progress = progress_bar.update
    capture.on_error = lambda message: print(f"\n   ⚠️  {message}")

    player.set_captions(show_captions)
    player.select_clip(clip)
    progress_bar.update(0)
    try:
        session = await capture.start_export()
        result = await session.done
    finally:
        player.close()
    progress_bar.finish(complete=result is not None)
    return result


def main():
    parser = argparse.ArgumentParser(description="Export captioned viral clips")
    parser.add_argument("--video", type=Path, help="source video file")
    parser.add_argument("--clips", type=Path, help="clip metadata JSON")
    parser.add_argument("--output", type=Path, default=settings.output_dir, help="export directory")
    parser.add_argument("--verbose", action="store_true", help="debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    print("\n" + "═" * 60)
    print("🎬 CLIP STUDIO")
    print("   Caption and export viral clips")
    print("═" * 60)

    if not check_tools():
        print("\n❌ FFmpeg/ffprobe not found. Please install FFmpeg first.")
        sys.exit(1)

    # Step 1: Source video + clip metadata
    print("\n📺 STEP 1: Load Video and Clips")
    print("─" * 60)

    video_path = args.video or prompt_path("Enter path to video file", VIDEO_EXTENSIONS)
    clips_path = args.clips or prompt_path("Enter path to clip metadata (JSON)", {".json"})

    try:
        clips = load_clips(clips_path)
    except (ClipLoadError, OSError) as e:
        print(f"❌ Could not load clips: {e}")
        sys.exit(1)
    if not clips:
        print("❌ No clips in metadata")
        sys.exit(1)

    try:
        source = VideoFileSource(video_path)
    except PlaybackError as e:
        print(f"❌ {e}")
        sys.exit(1)
    print(f"✅ Loaded: {video_path.name} ({source.video_width}x{source.video_height})")
    print(f"✅ Found {len(clips)} clips")

    spinner = Spinner("Checking available encoders...")
    spinner.start()
    encoders = available_encoders(settings.ffmpeg_path)
    spinner.stop(f"✅ {len(encoders)} encoders available")

    # Step 2..: Pick and export, one clip at a time
    try:
        while True:
            print("\n📋 STEP 2: Choose a Clip")
            print("─" * 60)
            choice = prompt_choice("Which clip would you like to export?", [clip_label(c) for c in clips])
            if choice is None:
                break
            clip = clips[choice]

            show_captions = prompt_yes_no("Burn in captions?", default=True)

            print("\n🎬 STEP 3: Exporting")
            print("─" * 60)
            print(f"Recording {clip.title!r} in real time ({round(clip.duration)}s)...")
            result = asyncio.run(export_clip(source, clips, clip, show_captions, encoders, args.output))
            if result:
                print(f"   ✅ Saved: {result.path} ({result.size / (1024 * 1024):.1f} MB)")
            else:
                print("   ❌ Export failed")

            if not prompt_yes_no("Export another clip?", default=True):
                break
    except KeyboardInterrupt:
        print("\n\nCancelled.")
        sys.exit(1)
    finally:
        source.close()

    print("\n" + "═" * 60)
    print("🎉 DONE!")
    print(f"   Clips saved to: {args.output}/")
    print("═" * 60 + "\n")


if __name__ == "__main__":
    main()
