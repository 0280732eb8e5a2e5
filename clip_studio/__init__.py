"""Clip Studio - play, caption and export viral clips cut from a long video."""

from .models import Caption, Clip, load_clips
from .player import PlaybackController
from .export import CapturePipeline

__all__ = ["Caption", "Clip", "load_clips", "PlaybackController", "CapturePipeline"]
