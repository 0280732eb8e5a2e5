"""Terminal feedback helpers for the clip-studio CLI."""

import itertools
import threading
import time


class Spinner:
    """Animated spinner for blocking steps (probing, loading)."""

    FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"

    def __init__(self, message: str = ""):
        self.message = message
        self._stop = threading.Event()
        self._thread = None

    def _spin(self):
        for frame in itertools.cycle(self.FRAMES):
            if self._stop.is_set():
                break
            print(f"\r{frame} {self.message}", end="", flush=True)
            time.sleep(0.1)

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()

    def stop(self, final_message: str = ""):
        self._stop.set()
        if self._thread:
            self._thread.join()
            self._thread = None
        print(f"\r{' ' * (len(self.message) + 5)}\r", end="")
        if final_message:
            print(final_message)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()


class ProgressBar:
    """Single-line percentage bar, redrawn in place."""

    def __init__(self, width: int = 30, prefix: str = ""):
        self.width = width
        self.prefix = prefix
        self.percent = 0.0

    def update(self, percent: float):
        self.percent = min(100.0, max(0.0, percent))
        filled = int(self.width * self.percent / 100)
        bar = "█" * filled + "░" * (self.width - filled)
        print(f"\r   {self.prefix}[{bar}] {self.percent:5.1f}%", end="", flush=True)

    def finish(self, complete: bool = True):
        if complete:
            self.update(100)
        print()
