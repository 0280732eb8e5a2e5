"""Frame compositing: video frame plus word-highlighted caption overlay."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from PIL import Image, ImageDraw, ImageFont

from .captions import CaptionOverlay, resolve_overlay

logger = logging.getLogger(__name__)

# Surface size before any frame has been decoded
FALLBACK_SIZE = (640, 360)


@dataclass
class CaptionStyle:
    """Look of the burned-in captions, mostly relative to the frame height."""

    font: str = "DejaVuSans-Bold.ttf"
    font_scale: float = 0.05  # of surface height
    min_font_size: int = 24
    baseline: float = 0.85  # vertical centre of the line, share of height
    text_color: str = "white"
    stroke_color: str = "black"
    stroke_ratio: float = 0.15  # outline width / font size
    highlight_color: str = "#D946EF"
    pad_x: float = 0.2  # highlight padding / font size
    pad_y: float = 0.15
    corner_radius: int = 8


@dataclass(frozen=True)
class WordBox:
    text: str
    x: float
    width: float


class Surface:
    """
    Off-screen RGB pixel buffer that composited frames are drawn onto.

    Every finished composite is committed with the media time it shows;
    listeners (the capture stream) receive (image, media_time).
    """

    def __init__(self, width: int = FALLBACK_SIZE[0], height: int = FALLBACK_SIZE[1]):
        self.image = Image.new("RGB", (width, height), "black")
        self.draw = ImageDraw.Draw(self.image)
        self.frames_committed = 0
        self._listeners: list[Callable[[Image.Image, float], None]] = []

    @property
    def size(self) -> tuple[int, int]:
        return self.image.size

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    def resize(self, width: int, height: int) -> None:
        if (width, height) == self.size:
            return
        logger.debug(f"Surface resized to {width}x{height}")
        self.image = Image.new("RGB", (width, height), "black")
        self.draw = ImageDraw.Draw(self.image)

    def blit(self, frame: Image.Image) -> None:
        self.image.paste(frame.convert("RGB") if frame.mode != "RGB" else frame, (0, 0))

    def clear(self) -> None:
        self.draw.rectangle([0, 0, self.width, self.height], fill="black")

    def add_listener(self, callback: Callable[[Image.Image, float], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[Image.Image, float], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def commit(self, media_time: float) -> None:
        self.frames_committed += 1
        for callback in list(self._listeners):
            callback(self.image, media_time)

    def capture_stream(self, fps: int, origin: float, limit: float, sink: Callable[[Image.Image], None]) -> "SurfaceStream":
        return SurfaceStream(self, fps, origin, limit, sink)


class SurfaceStream:
    """
    Fixed-rate video stream tapped off a surface.

    Emits one frame per 1/fps seconds of media time after origin, repeating
    the latest composite when the display fell behind. Nothing at or past
    limit seconds is emitted.
    """

    def __init__(self, surface: Surface, fps: int, origin: float, limit: float, sink: Callable[[Image.Image], None]):
        self.surface = surface
        self.fps = fps
        self.origin = origin
        self.limit = limit
        self.sink = sink
        self.frames_emitted = 0
        self.active = True
        surface.add_listener(self._on_commit)

    def _on_commit(self, image: Image.Image, media_time: float) -> None:
        if not self.active or media_time < self.origin:
            return
        elapsed = media_time - self.origin
        while True:
            frame_time = self.frames_emitted / self.fps
            if frame_time > elapsed or frame_time >= self.limit:
                break
            self.sink(image)
            self.frames_emitted += 1

    def finish(self) -> None:
        """Pad the stream up to limit with the latest composite, then stop."""
        if self.active:
            while self.frames_emitted / self.fps < self.limit:
                self.sink(self.surface.image)
                self.frames_emitted += 1
        self.stop()

    def stop(self) -> None:
        self.active = False
        self.surface.remove_listener(self._on_commit)


class FrameRenderer:
    """Draws a video frame and the caption overlay onto a Surface."""

    def __init__(self, surface: Optional[Surface] = None, style: Optional[CaptionStyle] = None):
        self.surface = surface or Surface()
        self.style = style or CaptionStyle()
        self._fonts: dict[int, ImageFont.FreeTypeFont] = {}

    def font(self, size: int):
        if size not in self._fonts:
            try:
                self._fonts[size] = ImageFont.truetype(self.style.font, size)
            except OSError:
                logger.warning(f"Font {self.style.font!r} not found, using Pillow default")
                self._fonts[size] = ImageFont.load_default(size=size)
        return self._fonts[size]

    def font_size(self) -> int:
        return int(max(self.style.min_font_size, self.surface.height * self.style.font_scale))

    def render(self, frame: Optional[Image.Image], media_time: float, captions=(), show_captions: bool = True) -> Optional[CaptionOverlay]:
        """
        Composite one frame and commit it to the surface.

        Returns the caption overlay that was drawn, if any.
        """
        if frame is not None:
            self.surface.resize(*frame.size)
            self.surface.blit(frame)
        else:
            self.surface.clear()

        overlay = None
        if show_captions:
            overlay = resolve_overlay(captions, media_time)
            if overlay is not None and overlay.words:
                self.draw_caption(overlay)

        self.surface.commit(media_time)
        return overlay

    def layout(self, words: list[str], font) -> list[WordBox]:
        """Place uppercase words on one line, centred as a unit."""
        draw = self.surface.draw
        space = draw.textlength(" ", font=font)
        texts = [w.upper() for w in words]
        widths = [draw.textlength(t, font=font) for t in texts]
        total = sum(widths) + (len(texts) - 1) * space

        x = (self.surface.width - total) / 2
        boxes = []
        for text, width in zip(texts, widths):
            boxes.append(WordBox(text=text, x=x, width=width))
            x += width + space
        return boxes

    def draw_caption(self, overlay: CaptionOverlay) -> None:
        style = self.style
        draw = self.surface.draw
        size = self.font_size()
        font = self.font(size)
        y = self.surface.height * style.baseline
        stroke = max(1, round(size * style.stroke_ratio / 2))

        for i, box in enumerate(self.layout(overlay.words, font)):
            if i == overlay.active_index:
                pad_x = size * style.pad_x
                pad_y = size * style.pad_y
                draw.rounded_rectangle(
                    [box.x - pad_x, y - size / 2 - pad_y, box.x + box.width + pad_x, y + size / 2 + pad_y],
                    radius=style.corner_radius,
                    fill=style.highlight_color,
                )
            draw.text(
                (box.x, y),
                box.text,
                font=font,
                anchor="lm",
                fill=style.text_color,
                stroke_width=stroke,
                stroke_fill=style.stroke_color,
            )


class DisplayClock:
    """Paces the render loop at a fixed display refresh rate."""

    def __init__(self, fps: int = 30):
        self.interval = 1.0 / fps
        self._deadline: Optional[float] = None

    async def next_frame(self) -> None:
        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._deadline is None or self._deadline < now - self.interval:
            # first frame, or fell more than a frame behind
            self._deadline = now
        self._deadline += self.interval
        await asyncio.sleep(max(0.0, self._deadline - now))


class RenderLoop:
    """
    Redraws the surface once per display refresh while a clip is loaded.

    start() returns the task handle; stop() cancels it.
    """

    def __init__(self, renderer: FrameRenderer, source, snapshot: Callable, display: Optional[DisplayClock] = None):
        self.renderer = renderer
        self.source = source
        self.snapshot = snapshot
        self.display = display or DisplayClock()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def tick(self) -> Optional[CaptionOverlay]:
        selection = self.snapshot()
        if selection.clip is None:
            return None
        frame = self.source.read_frame()
        return self.renderer.render(
            frame,
            selection.current_time,
            selection.clip.captions,
            selection.show_captions,
        )

    async def _run(self) -> None:
        while True:
            try:
                self.tick()
            except Exception:
                logger.exception("Frame render failed")
            await self.display.next_frame()

    def start(self) -> asyncio.Task:
        self.stop()
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
