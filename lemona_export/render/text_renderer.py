"""
Pillow text rendering for overlay elements.

Draws text and caption blocks the way the editor's preview shows them:
- Font family / weight resolution with system font fallbacks
- Text color, background color, rounded corners, padding
- CSS-style text-shadow and box-shadow (offset + blur)
- Word wrapping and left/center/right alignment
- Caption highlight spans: <span color="#ff0">word</span>
"""

import logging
import re
from dataclasses import dataclass
from functools import lru_cache

from PIL import Image, ImageColor, ImageDraw, ImageFilter, ImageFont

logger = logging.getLogger(__name__)

RGBA = tuple[int, int, int, int]

TRANSPARENT: RGBA = (0, 0, 0, 0)

# Map editor font families to candidate font files (Linux first, macOS fallback)
FONT_CANDIDATES: dict[str, list[str]] = {
    "Inter": [
        "/usr/share/fonts/truetype/inter/Inter-Regular.ttf",
        "/usr/share/fonts/opentype/inter/Inter-Regular.otf",
    ],
    "Inter Bold": [
        "/usr/share/fonts/truetype/inter/Inter-Bold.ttf",
        "/usr/share/fonts/opentype/inter/Inter-Bold.otf",
    ],
    "Roboto": ["/usr/share/fonts/truetype/roboto/unhinted/RobotoTTF/Roboto-Regular.ttf"],
    "Roboto Bold": ["/usr/share/fonts/truetype/roboto/unhinted/RobotoTTF/Roboto-Bold.ttf"],
    "Open Sans": ["/usr/share/fonts/truetype/open-sans/OpenSans-Regular.ttf"],
    "Open Sans Bold": ["/usr/share/fonts/truetype/open-sans/OpenSans-Bold.ttf"],
    "Poppins": ["/usr/share/fonts/truetype/poppins/Poppins-Regular.ttf"],
    "Poppins Bold": ["/usr/share/fonts/truetype/poppins/Poppins-Bold.ttf"],
    "sans-serif": [
        "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
        "/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc",
        "/System/Library/Fonts/Helvetica.ttc",
    ],
    "sans-serif Bold": [
        "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
        "/usr/share/fonts/opentype/noto/NotoSansCJK-Bold.ttc",
        "/System/Library/Fonts/Helvetica.ttc",
    ],
}

_SPAN_PATTERN = re.compile(r'<span color="([^"]*)">(.*?)</span>', re.DOTALL)
_SHADOW_LENGTH = re.compile(r"^-?\d+(?:\.\d+)?(?:px)?$")


def parse_color(value: str | None, default: RGBA = TRANSPARENT) -> RGBA:
    """Parse a CSS color (#rgb, #rrggbb, #rrggbbaa, rgb(), rgba(), names)."""
    if not value or value == "transparent":
        return default
    value = value.strip()

    rgba_match = re.match(r"^rgba?\(([^)]*)\)$", value)
    if rgba_match:
        parts = [p.strip() for p in rgba_match.group(1).split(",")]
        try:
            r, g, b = (int(float(p)) for p in parts[:3])
            a = int(round(float(parts[3]) * 255)) if len(parts) > 3 else 255
            return (r, g, b, max(0, min(255, a)))
        except (ValueError, IndexError):
            return default

    hex_value = value.lstrip("#")
    if value.startswith("#") and len(hex_value) == 8:
        try:
            return tuple(int(hex_value[i : i + 2], 16) for i in (0, 2, 4, 6))  # type: ignore[return-value]
        except ValueError:
            return default

    try:
        rgb = ImageColor.getrgb(value)
    except ValueError:
        logger.warning(f"[TEXT] Unknown color {value!r}, using default")
        return default
    return rgb if len(rgb) == 4 else (*rgb, 255)


def with_alpha(color: RGBA, factor: float) -> RGBA:
    return (color[0], color[1], color[2], int(round(color[3] * factor)))


@dataclass(frozen=True)
class Shadow:
    dx: float
    dy: float
    blur: float
    color: RGBA


def parse_shadow(css: str | None) -> Shadow | None:
    """Parse the first layer of a CSS shadow, e.g. "2px 2px 4px rgba(0,0,0,0.5)"."""
    if not css or css.strip() == "none":
        return None
    first = re.split(r",(?![^(]*\))", css)[0].strip()
    tokens = re.findall(r"rgba?\([^)]*\)|#[0-9a-fA-F]+|[^\s]+", first)
    lengths = [float(t.rstrip("px")) for t in tokens if _SHADOW_LENGTH.match(t)]
    colors = [t for t in tokens if not _SHADOW_LENGTH.match(t) and t != "inset"]
    if len(lengths) < 2:
        return None
    blur = lengths[2] if len(lengths) > 2 else 0.0
    color = parse_color(colors[0], (0, 0, 0, 128)) if colors else (0, 0, 0, 128)
    return Shadow(dx=lengths[0], dy=lengths[1], blur=max(0.0, blur), color=color)


def _is_bold(font_weight: str | None) -> bool:
    if not font_weight:
        return False
    if font_weight.isdigit():
        return int(font_weight) >= 600
    return font_weight in ("bold", "bolder")


@lru_cache(maxsize=64)
def load_font(family: str | None, size: int, bold: bool = False) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    """Load a font for a family name, falling back to sans-serif then Pillow's default."""
    key = family or "sans-serif"
    candidates = FONT_CANDIDATES.get(f"{key} Bold" if bold else key, [])
    fallback = FONT_CANDIDATES["sans-serif Bold" if bold else "sans-serif"]
    for candidate_path in candidates + [c for c in fallback if c not in candidates]:
        try:
            return ImageFont.truetype(candidate_path, size)
        except OSError:
            continue

    logger.warning(f"[TEXT] No font file for {key!r}, using PIL default")
    try:
        return ImageFont.load_default(size=size)
    except TypeError:
        # Pillow < 10.1 has a fixed-size default font
        return ImageFont.load_default()


@dataclass(frozen=True)
class TextRun:
    text: str
    color: RGBA | None = None  # None = block text color
    bold: bool = False


def parse_caption_runs(text: str) -> list[TextRun]:
    """Split caption text into plain and highlighted runs."""
    runs: list[TextRun] = []
    position = 0
    for match in _SPAN_PATTERN.finditer(text):
        if match.start() > position:
            runs.append(TextRun(text[position : match.start()]))
        runs.append(TextRun(match.group(2), color=parse_color(match.group(1), (255, 255, 255, 255)), bold=True))
        position = match.end()
    if position < len(text):
        runs.append(TextRun(text[position:]))
    return runs


@dataclass(frozen=True)
class TextBlockStyle:
    font_family: str | None = None
    font_size: int = 48
    bold: bool = False
    color: RGBA = (255, 255, 255, 255)
    background: RGBA = TRANSPARENT
    border_radius: float = 0
    padding_x: float = 8
    padding_y: float = 8
    align: str = "center"
    line_height: float = 1.4
    text_shadow: Shadow | None = None
    box_shadow: Shadow | None = None


class TextRenderer:
    """Renders styled text blocks into transparent RGBA images."""

    def render(
        self,
        runs: list[TextRun],
        style: TextBlockStyle,
        max_width: int | None = None,
    ) -> tuple[Image.Image, int]:
        """Render runs into an image.

        Args:
            runs: Text runs; newlines inside runs start new lines
            style: Block style
            max_width: Wrap width for the text area, if any

        Returns:
            (image, margin): the image includes `margin` pixels of room on
            every side for shadows; the block itself starts at (margin, margin)
        """
        regular = load_font(style.font_family, style.font_size, style.bold)
        bold = load_font(style.font_family, style.font_size, True)

        def font_for(run: TextRun):
            return bold if run.bold or style.bold else regular

        wrap_width = None
        if max_width is not None:
            wrap_width = max(1, int(max_width - 2 * style.padding_x))
        lines = self._layout(runs, font_for, wrap_width)

        line_px = int(style.font_size * style.line_height)
        widths = [sum(font_for(run).getlength(run.text) for run in line) for line in lines]
        content_w = int(max(widths, default=0)) + 1
        block_w = int(content_w + 2 * style.padding_x)
        block_h = int(line_px * len(lines) + 2 * style.padding_y)

        shadows = [s for s in (style.text_shadow, style.box_shadow) if s is not None]
        margin = int(max((abs(s.dx) + abs(s.dy) + 2 * s.blur for s in shadows), default=0))
        size = (block_w + 2 * margin, block_h + 2 * margin)
        box = (margin, margin, margin + block_w - 1, margin + block_h - 1)

        image = Image.new("RGBA", size, TRANSPARENT)

        if style.box_shadow is not None and style.background[3] > 0:
            shadow = style.box_shadow
            layer = Image.new("RGBA", size, TRANSPARENT)
            shifted = (box[0] + shadow.dx, box[1] + shadow.dy, box[2] + shadow.dx, box[3] + shadow.dy)
            ImageDraw.Draw(layer).rounded_rectangle(shifted, radius=style.border_radius, fill=shadow.color)
            if shadow.blur > 0:
                layer = layer.filter(ImageFilter.GaussianBlur(shadow.blur / 2))
            image = Image.alpha_composite(image, layer)

        if style.background[3] > 0:
            layer = Image.new("RGBA", size, TRANSPARENT)
            ImageDraw.Draw(layer).rounded_rectangle(box, radius=style.border_radius, fill=style.background)
            image = Image.alpha_composite(image, layer)

        text_layer = Image.new("RGBA", size, TRANSPARENT)
        draw = ImageDraw.Draw(text_layer)
        y = margin + style.padding_y
        for line, width in zip(lines, widths):
            if style.align == "left":
                x = margin + style.padding_x
            elif style.align == "right":
                x = margin + block_w - style.padding_x - width
            else:
                x = margin + (block_w - width) / 2
            for run in line:
                font = font_for(run)
                draw.text((x, y), run.text, font=font, fill=run.color or style.color)
                x += font.getlength(run.text)
            y += line_px

        if style.text_shadow is not None:
            shadow = style.text_shadow
            alpha = text_layer.getchannel("A")
            layer = Image.new("RGBA", size, shadow.color[:3] + (0,))
            shadow_alpha = alpha.point(lambda a: a * shadow.color[3] // 255)
            layer.putalpha(shadow_alpha)
            layer = layer.transform(
                size, Image.Transform.AFFINE, (1, 0, -shadow.dx, 0, 1, -shadow.dy), fillcolor=TRANSPARENT
            )
            if shadow.blur > 0:
                layer = layer.filter(ImageFilter.GaussianBlur(shadow.blur / 2))
            image = Image.alpha_composite(image, layer)

        return Image.alpha_composite(image, text_layer), margin

    def _layout(self, runs: list[TextRun], font_for, wrap_width: int | None) -> list[list[TextRun]]:
        """Break runs into lines on newlines and, if wrap_width is set, on spaces."""
        lines: list[list[TextRun]] = [[]]
        line_width = 0.0
        for run in runs:
            for i, segment in enumerate(run.text.split("\n")):
                if i > 0:
                    lines.append([])
                    line_width = 0.0
                font = font_for(run)
                for word in re.findall(r"\S+\s*|\s+", segment):
                    word_width = font.getlength(word)
                    if wrap_width is not None and lines[-1] and line_width + font.getlength(word.rstrip()) > wrap_width:
                        lines.append([])
                        line_width = 0.0
                        word = word.lstrip()
                        word_width = font.getlength(word)
                    if not word:
                        continue
                    lines[-1].append(TextRun(word, run.color, run.bold))
                    line_width += word_width
        return [line for line in lines if line] or [[TextRun(" ")]]


def block_style_for(
    style,
    *,
    caption: bool = False,
    opacity: float = 1.0,
) -> TextBlockStyle:
    """Build a TextBlockStyle from an element's ElementStyle (or None)."""
    if caption:
        # Caption defaults: bold white on translucent black, 4px corners
        defaults = TextBlockStyle(
            font_size=36,
            bold=True,
            background=(0, 0, 0, 204),
            border_radius=4,
            padding_x=16,
            padding_y=8,
        )
    else:
        defaults = TextBlockStyle()

    if style is None:
        return TextBlockStyle(
            **{**defaults.__dict__, "color": with_alpha(defaults.color, opacity), "background": with_alpha(defaults.background, opacity)}
        )

    background = parse_color(style.background_color or style.background, defaults.background)
    padding = style.padding
    return TextBlockStyle(
        font_family=style.font_family,
        font_size=int(style.font_size) if style.font_size else defaults.font_size,
        bold=_is_bold(style.font_weight) or defaults.bold,
        color=with_alpha(parse_color(style.text_color, defaults.color), opacity),
        background=with_alpha(background, opacity),
        border_radius=style.border_radius or defaults.border_radius,
        padding_x=padding if padding is not None else defaults.padding_x,
        padding_y=padding if padding is not None else defaults.padding_y,
        align=style.text_align or defaults.align,
        text_shadow=parse_shadow(style.text_shadow),
        box_shadow=parse_shadow(style.box_shadow),
    )
