"""
Overlay frame renderer.

Rasterizes styled elements (text, captions, stickers, still images) into a
directory of transparent PNG frames, one per output frame:
- Frame n shows time n * 1000 / fps ms
- An element is visible in [timelineStartMs, timelineEndMs)
- Elements are composited in track z-order, ties keep input order
- Transition effects follow the editor preview (opacity, 100px slide,
  0.5 -> 1 zoom, left-to-right wipe, circular iris)

Frames are rendered on a thread pool. Frames whose visible state is the same
reuse the encoded PNG bytes. Any failure removes the directory and raises
OverlayRenderError.
"""

import io
import logging
import math
import os
import shutil
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass

from PIL import Image, ImageDraw, ImageOps, ImageSequence

from lemona_export.exceptions import OverlayRenderError
from lemona_export.render.compiler import OVERLAY_FRAME_PATTERN, OverlaySequence
from lemona_export.render.text_renderer import (
    TextRenderer,
    TextRun,
    block_style_for,
    parse_caption_runs,
)
from lemona_export.schemas.timeline import TimelineElement, Track, Transition

logger = logging.getLogger(__name__)

RENDERABLE_KINDS: frozenset[str] = frozenset({"text", "caption", "sticker", "image"})

# Fit box when no crop is given; images default to the full frame
DEFAULT_BOX: dict[str, tuple[int, int]] = {"sticker": (200, 200)}
# Text wraps at this fraction of the frame width when no crop is given
TEXT_WRAP_FRACTION = 0.8

# Placement anchors as a fraction of frame height
PLACEMENT_MARGIN = 0.15
SLIDE_OFFSET_PX = 100
ZOOM_START_SCALE = 0.5
# CSS circle() percentages are relative to hypot(w, h) / sqrt(2)
IRIS_MAX_RADIUS = 1.5

ProgressCallback = Callable[[int, int], None]


def can_render(element: TimelineElement) -> bool:
    """Whether the overlay renderer can rasterize this element kind."""
    return element.kind in RENDERABLE_KINDS


@dataclass
class _Sprite:
    """An element's pre-rendered pixels and resting position."""

    element: TimelineElement
    frames: list[Image.Image]
    frame_durations_ms: list[float]
    x: int
    y: int

    def frame_index(self, local_ms: float) -> int:
        if len(self.frames) == 1:
            return 0
        cycle = sum(self.frame_durations_ms)
        t = local_ms % cycle if cycle > 0 else 0
        for i, duration in enumerate(self.frame_durations_ms):
            if t < duration:
                return i
            t -= duration
        return len(self.frames) - 1


@dataclass(frozen=True)
class _ElementState:
    """Everything that decides how one element looks in one frame."""

    sprite: int
    frame: int
    alpha: float = 1.0
    dx: float = 0.0
    scale: float = 1.0
    wipe: float = 1.0
    iris: float | None = None

    @property
    def in_transition(self) -> bool:
        return self.alpha != 1.0 or self.dx != 0 or self.scale != 1.0 or self.wipe != 1.0 or self.iris is not None


def _visibility(element: TimelineElement, t_ms: float) -> list[tuple[Transition, float]]:
    """Active transitions at t as (transition, p), p = 0 hidden .. 1 fully shown."""
    active = []
    d_in = element.transition_ms(element.transition_in)
    if d_in > 0 and t_ms < element.timeline_start_ms + d_in:
        active.append((element.transition_in, (t_ms - element.timeline_start_ms) / d_in))
    d_out = element.transition_ms(element.transition_out)
    if d_out > 0 and t_ms > element.timeline_end_ms - d_out:
        active.append((element.transition_out, (element.timeline_end_ms - t_ms) / d_out))
    return active


class OverlayFrameRenderer:
    """Renders styled elements into a transparent frame sequence."""

    def __init__(
        self,
        width: int,
        height: int,
        fps: int,
        max_workers: int = 4,
        text_renderer: TextRenderer | None = None,
    ):
        self.width = width
        self.height = height
        self.fps = fps
        self.max_workers = max_workers
        self.text_renderer = text_renderer or TextRenderer()

    def frame_count(self, duration_ms: float) -> int:
        return math.ceil(round(duration_ms * self.fps / 1000, 6))

    def frame_time_ms(self, n: int) -> float:
        return n * 1000 / self.fps

    def render(
        self,
        elements: Sequence[TimelineElement],
        tracks: Sequence[Track],
        duration_ms: float,
        output_dir: str,
        on_progress: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> OverlaySequence:
        """Render all frames of the overlay.

        Args:
            elements: Styled elements; sticker/image sources must be local files
            tracks: Track list, used for z-order
            duration_ms: Output duration
            output_dir: Directory to create and fill with frames
            on_progress: Called with (frames_done, frame_count)
            cancel_event: When set, remaining frames are abandoned

        Returns:
            OverlaySequence describing the written frames

        Raises:
            OverlayRenderError: If any frame fails; output_dir is removed
        """
        total = self.frame_count(duration_ms)
        if total <= 0:
            raise OverlayRenderError("Overlay duration must be positive")
        if cancel_event is not None and cancel_event.is_set():
            raise OverlayRenderError("Overlay rendering cancelled")

        os.makedirs(output_dir, exist_ok=True)
        try:
            sprites = self._prepare_sprites(elements, tracks)
            self._render_frames(sprites, total, output_dir, on_progress, cancel_event)
            self._verify_sequence(output_dir, total)
        except Exception as e:
            shutil.rmtree(output_dir, ignore_errors=True)
            logger.error(f"[OVERLAY] Abandoned overlay pass: {e}")
            if isinstance(e, OverlayRenderError):
                raise
            raise OverlayRenderError(f"Overlay rendering failed: {e}") from e

        logger.info(f"[OVERLAY] Rendered {total} frames for {len(sprites)} elements into {output_dir}")
        return OverlaySequence(directory=output_dir, frame_count=total, fps=self.fps)

    # =========================================================================
    # Sprites
    # =========================================================================

    def _prepare_sprites(self, elements: Sequence[TimelineElement], tracks: Sequence[Track]) -> list[_Sprite]:
        track_index = {track.id: track.index for track in tracks}
        ordered = sorted(
            enumerate(elements),
            key=lambda item: (track_index.get(item[1].track_id, 0), item[0]),
        )
        sprites = []
        for _, element in ordered:
            if not can_render(element):
                raise OverlayRenderError(f"Element {element.id} of kind {element.kind} cannot be rendered as overlay")
            sprites.append(self._build_sprite(element))
        return sprites

    def _build_sprite(self, element: TimelineElement) -> _Sprite:
        props = element.properties
        if element.kind in ("text", "caption"):
            caption = element.kind == "caption"
            runs = parse_caption_runs(element.display_text) if caption else [TextRun(element.display_text)]
            style = block_style_for(props.style, caption=caption)
            max_width = props.crop.width if props.crop else self.width * TEXT_WRAP_FRACTION
            image, margin = self.text_renderer.render(runs, style, max_width=int(max_width))
            if props.scale != 1:
                image = image.resize(
                    (max(1, round(image.width * props.scale)), max(1, round(image.height * props.scale))),
                    Image.Resampling.LANCZOS,
                )
                margin = round(margin * props.scale)
            frames, durations = [image], [0.0]
        else:
            frames, durations = self._load_picture(element)
            margin = 0

        x, y = self._place(element, frames[0].width - 2 * margin, frames[0].height - 2 * margin)
        return _Sprite(element=element, frames=frames, frame_durations_ms=durations, x=x - margin, y=y - margin)

    def _load_picture(self, element: TimelineElement) -> tuple[list[Image.Image], list[float]]:
        path = element.asset_source
        if not path or not os.path.isfile(path):
            raise OverlayRenderError(f"Element {element.id}: source file missing: {path}")

        props = element.properties
        if props.crop is not None:
            box = (props.crop.width, props.crop.height)
        else:
            box = DEFAULT_BOX.get(element.kind, (self.width, self.height))
        box = (max(1, round(box[0] * props.scale)), max(1, round(box[1] * props.scale)))

        frames, durations = [], []
        with Image.open(path) as source:
            for frame in ImageSequence.Iterator(source):
                frames.append(ImageOps.contain(frame.convert("RGBA"), box, Image.Resampling.LANCZOS))
                durations.append(float(frame.info.get("duration", 100) or 100))
        return frames, durations

    def _place(self, element: TimelineElement, w: int, h: int) -> tuple[int, int]:
        """Top-left of a w x h block at rest."""
        props = element.properties
        if props.crop is not None:
            crop = props.crop
            return (
                round(crop.left + (crop.width - w) / 2),
                round(crop.top + (crop.height - h) / 2),
            )

        offset_x = props.position.x if props.position else 0
        offset_y = props.position.y if props.position else 0
        x = (self.width - w) / 2 + offset_x

        placement = props.placement or ("bottom" if element.kind == "caption" else "middle")
        if placement == "top":
            y = self.height * PLACEMENT_MARGIN
        elif placement == "bottom":
            y = self.height * (1 - PLACEMENT_MARGIN) - h
        else:
            y = (self.height - h) / 2
        return round(x), round(y + offset_y)

    # =========================================================================
    # Frames
    # =========================================================================

    def _frame_state(self, sprites: list[_Sprite], t_ms: float) -> tuple[_ElementState, ...]:
        states = []
        for index, sprite in enumerate(sprites):
            element = sprite.element
            if not element.timeline_start_ms <= t_ms < element.timeline_end_ms:
                continue
            alpha, dx, scale, wipe, iris = element.opacity, 0.0, 1.0, 1.0, None
            for transition, p in _visibility(element, t_ms):
                p = max(0.0, min(1.0, p))
                if transition.kind in ("fade", "dissolve"):
                    alpha *= p
                elif transition.kind == "slide":
                    dx -= (1 - p) * SLIDE_OFFSET_PX
                elif transition.kind == "zoom":
                    scale *= ZOOM_START_SCALE + (1 - ZOOM_START_SCALE) * p
                    alpha *= p
                elif transition.kind == "wipe":
                    wipe = min(wipe, p)
                elif transition.kind == "iris":
                    iris = p if iris is None else min(iris, p)
            local = t_ms - element.timeline_start_ms
            states.append(
                _ElementState(
                    sprite=index,
                    frame=sprite.frame_index(local),
                    alpha=round(alpha, 4),
                    dx=round(dx, 2),
                    scale=round(scale, 4),
                    wipe=round(wipe, 4),
                    iris=None if iris is None else round(iris, 4),
                )
            )
        return tuple(states)

    def _compose(self, sprites: list[_Sprite], states: tuple[_ElementState, ...]) -> Image.Image:
        canvas = Image.new("RGBA", (self.width, self.height), (0, 0, 0, 0))
        for state in states:
            sprite = sprites[state.sprite]
            image = sprite.frames[state.frame]
            x, y = sprite.x + state.dx, float(sprite.y)

            if state.scale != 1.0:
                w = max(1, round(image.width * state.scale))
                h = max(1, round(image.height * state.scale))
                x += (image.width - w) / 2
                y += (image.height - h) / 2
                image = image.resize((w, h), Image.Resampling.BILINEAR)
            else:
                image = image.copy()

            alpha = image.getchannel("A")
            if state.alpha != 1.0:
                alpha = alpha.point(lambda a, f=state.alpha: round(a * f))
            if state.wipe != 1.0 or state.iris is not None:
                mask = Image.new("L", image.size, 0)
                draw = ImageDraw.Draw(mask)
                if state.iris is not None:
                    radius = state.iris * IRIS_MAX_RADIUS * math.hypot(*image.size) / math.sqrt(2)
                    cx, cy = image.width / 2, image.height / 2
                    draw.ellipse((cx - radius, cy - radius, cx + radius, cy + radius), fill=255)
                else:
                    mask.paste(255, (0, 0, image.width, image.height))
                if state.wipe != 1.0:
                    mask.paste(0, (round(image.width * state.wipe), 0, image.width, image.height))
                alpha = Image.composite(alpha, Image.new("L", image.size, 0), mask)
            image.putalpha(alpha)

            layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
            layer.paste(image, (round(x), round(y)), image)
            canvas = Image.alpha_composite(canvas, layer)
        return canvas

    def _render_frames(
        self,
        sprites: list[_Sprite],
        total: int,
        output_dir: str,
        on_progress: ProgressCallback | None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        png_cache: dict[tuple[_ElementState, ...], bytes] = {}
        cache_lock = threading.Lock()
        reused = 0

        def render_one(n: int) -> None:
            nonlocal reused
            if cancel_event is not None and cancel_event.is_set():
                raise OverlayRenderError("Overlay rendering cancelled")
            states = self._frame_state(sprites, self.frame_time_ms(n))
            cacheable = not any(state.in_transition for state in states)
            data = None
            if cacheable:
                with cache_lock:
                    data = png_cache.get(states)
                    if data is not None:
                        reused += 1
            if data is None:
                buffer = io.BytesIO()
                self._compose(sprites, states).save(buffer, format="PNG")
                data = buffer.getvalue()
                if cacheable:
                    with cache_lock:
                        png_cache[states] = data
            with open(os.path.join(output_dir, OVERLAY_FRAME_PATTERN % n), "wb") as f:
                f.write(data)

        done = 0
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="overlay") as pool:
            pending = {pool.submit(render_one, n): n for n in range(total)}
            for future in as_completed(pending):
                error = future.exception()
                if error is not None:
                    for other in pending:
                        other.cancel()
                    raise OverlayRenderError(f"Frame {pending[future]} failed: {error}") from error
                done += 1
                if on_progress is not None:
                    on_progress(done, total)

        logger.debug(f"[OVERLAY] {reused}/{total} frames reused encoded PNG data")

    def _verify_sequence(self, output_dir: str, total: int) -> None:
        """Frames must be numbered 0..total-1 with no gaps."""
        expected = {OVERLAY_FRAME_PATTERN % n for n in range(total)}
        present = {name for name in os.listdir(output_dir) if name.startswith("frame_")}
        missing = expected - present
        if missing:
            raise OverlayRenderError(f"Overlay sequence has {len(missing)} missing frames, first {min(missing)}")
        extra = present - expected
        if extra:
            raise OverlayRenderError(f"Overlay sequence has unexpected frames: {sorted(extra)[:3]}")
