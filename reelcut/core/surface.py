"""
2D drawing surface used by the overlay renderer and the compositor.

The renderer only talks to the small Surface interface
(fill_rect / measure_text / draw_text / draw_image), so preview and export
share one drawing path. PillowSurface implements it on an RGBA image with
canvas-like semantics: every draw blends "over" what is already there, and
``global_alpha`` scales the alpha of everything drawn.
"""

import logging
import os
import re
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from PIL import Image, ImageColor, ImageDraw, ImageFilter, ImageFont

logger = logging.getLogger("reelcut")

RGBA = Tuple[int, int, int, int]
TRANSPARENT: RGBA = (0, 0, 0, 0)


# ---------------------------------------------------------------------------
# Colours
# ---------------------------------------------------------------------------
_RGBA_RE = re.compile(
    r"rgba?\(\s*([\d.]+)\s*,\s*([\d.]+)\s*,\s*([\d.]+)\s*(?:,\s*([\d.]+%?)\s*)?\)",
    re.IGNORECASE,
)


@lru_cache(maxsize=512)
def parse_color(value: Optional[str]) -> RGBA:
    """
    Convert a CSS colour string to an RGBA tuple.

    Accepts ``#rgb``, ``#rrggbb``, ``#rrggbbaa``, ``rgb()``/``rgba()`` with a
    0-1 (or percentage) alpha, and named colours. Unparseable values become
    transparent.
    """
    if not value:
        return TRANSPARENT
    value = value.strip()
    if value.lower() == "transparent":
        return TRANSPARENT

    m = _RGBA_RE.fullmatch(value)
    if m:
        r, g, b = (int(round(float(c))) for c in m.group(1, 2, 3))
        a_raw = m.group(4)
        if a_raw is None:
            a = 255
        elif a_raw.endswith("%"):
            a = int(round(float(a_raw[:-1]) / 100.0 * 255))
        else:
            a = int(round(float(a_raw) * 255))
        return (_clamp8(r), _clamp8(g), _clamp8(b), _clamp8(a))

    try:
        rgb = ImageColor.getrgb(value)
    except ValueError:
        logger.warning(f"Unrecognised colour '{value}', drawing transparent")
        return TRANSPARENT
    if len(rgb) == 3:
        return (rgb[0], rgb[1], rgb[2], 255)
    return tuple(rgb)


def _clamp8(v: int) -> int:
    return max(0, min(255, v))


def with_alpha(color: RGBA, alpha: float) -> RGBA:
    """Scale a colour's alpha by ``alpha`` (0-1)."""
    return (color[0], color[1], color[2], _clamp8(int(round(color[3] * alpha))))


# ---------------------------------------------------------------------------
# Font discovery
# ---------------------------------------------------------------------------
_FONT_DIRS: List[str] = []
_font_cache: Dict[str, Optional[str]] = {}

# Known families and their file names: (regular, bold, italic, bold italic)
_FAMILY_FILES = {
    "arial": ("arial.ttf", "arialbd.ttf", "ariali.ttf", "arialbi.ttf"),
    "helvetica": ("arial.ttf", "arialbd.ttf", "ariali.ttf", "arialbi.ttf"),
    "impact": ("impact.ttf", "impact.ttf", "impact.ttf", "impact.ttf"),
    "georgia": ("georgia.ttf", "georgiab.ttf", "georgiai.ttf", "georgiaz.ttf"),
    "verdana": ("verdana.ttf", "verdanab.ttf", "verdanai.ttf", "verdanaz.ttf"),
    "times new roman": ("times.ttf", "timesbd.ttf", "timesi.ttf", "timesbi.ttf"),
    "courier new": ("cour.ttf", "courbd.ttf", "couri.ttf", "courbi.ttf"),
}

_FALLBACKS = (
    ("DejaVuSans.ttf", "DejaVuSans-Bold.ttf", "DejaVuSans-Oblique.ttf", "DejaVuSans-BoldOblique.ttf"),
    ("LiberationSans-Regular.ttf", "LiberationSans-Bold.ttf",
     "LiberationSans-Italic.ttf", "LiberationSans-BoldItalic.ttf"),
)


def _get_font_dirs() -> List[str]:
    """Get platform-specific font directories."""
    global _FONT_DIRS
    if _FONT_DIRS:
        return _FONT_DIRS

    dirs = []
    extra = os.environ.get("REELCUT_FONT_DIR")
    if extra:
        dirs.append(extra)
    if os.name == "nt":
        windir = os.environ.get("WINDIR", r"C:\Windows")
        dirs.append(os.path.join(windir, "Fonts"))
        localappdata = os.environ.get("LOCALAPPDATA", "")
        if localappdata:
            dirs.append(os.path.join(localappdata, "Microsoft", "Windows", "Fonts"))
    else:
        dirs.extend([
            "/usr/share/fonts",
            "/usr/local/share/fonts",
            os.path.expanduser("~/.fonts"),
            os.path.expanduser("~/.local/share/fonts"),
            "/Library/Fonts",
            "/System/Library/Fonts",
        ])

    _FONT_DIRS = [d for d in dirs if os.path.isdir(d)]
    return _FONT_DIRS


def find_font(filename: str) -> Optional[str]:
    """Find a font file by filename across system font directories."""
    if filename in _font_cache:
        return _font_cache[filename]

    if os.path.isfile(filename):
        _font_cache[filename] = filename
        return filename

    fn_lower = filename.lower()
    for d in _get_font_dirs():
        for root, _, files in os.walk(d):
            for f in files:
                if f.lower() == fn_lower:
                    path = os.path.join(root, f)
                    _font_cache[filename] = path
                    return path

    _font_cache[filename] = None
    return None


def is_bold(weight: Optional[str]) -> bool:
    if not weight:
        return False
    weight = str(weight).strip().lower()
    if weight in ("bold", "bolder", "black", "heavy", "extrabold", "semibold"):
        return True
    try:
        return int(weight) >= 600
    except ValueError:
        return False


def _style_index(weight: Optional[str], style: Optional[str]) -> int:
    italic = (style or "").lower() in ("italic", "oblique")
    return (1 if is_bold(weight) else 0) + (2 if italic else 0)


@lru_cache(maxsize=128)
def load_font(family: str, size: int, weight: str = "normal", style: str = "normal"):
    """Load a PIL font for a CSS-like family/size/weight/style."""
    size = max(1, int(round(size)))
    idx = _style_index(weight, style)
    family_key = (family or "").split(",")[0].strip().strip("'\"").lower()

    candidates = []
    if family_key in _FAMILY_FILES:
        candidates.append(_FAMILY_FILES[family_key][idx])
    if family_key:
        compact = family_key.replace(" ", "")
        suffix = ("", "-Bold", "-Italic", "-BoldItalic")[idx]
        candidates.extend([f"{compact}{suffix}.ttf", f"{family}{suffix}.ttf"])
    for names in _FALLBACKS:
        candidates.append(names[idx])
        candidates.append(names[0])

    for name in candidates:
        path = find_font(name)
        if path:
            try:
                return ImageFont.truetype(path, size)
            except OSError:
                continue

    logger.debug(f"No font file found for '{family}', using Pillow default")
    return ImageFont.load_default(size)


# ---------------------------------------------------------------------------
# Surface
# ---------------------------------------------------------------------------
class Surface:
    """Minimal drawing interface the overlay renderer depends on."""

    width: int
    height: int
    global_alpha: float = 1.0

    def clear(self):
        raise NotImplementedError

    def fill_rect(self, x: float, y: float, width: float, height: float, color: str):
        raise NotImplementedError

    def measure_text(self, text: str, font) -> float:
        raise NotImplementedError

    def draw_text(self, text: str, x: float, y: float, font, color: str,
                  stroke_color: Optional[str] = None, stroke_width: float = 0,
                  shadow=None):
        raise NotImplementedError

    def draw_image(self, image, x: float, y: float, width: float, height: float):
        raise NotImplementedError

    # Layers let the renderer pivot animated captions on their anchor
    def new_layer(self) -> "Surface":
        raise NotImplementedError

    def apply_affine(self, data):
        raise NotImplementedError

    def composite(self, other: "Surface"):
        raise NotImplementedError


class PillowSurface(Surface):
    """Surface backed by an RGBA ``PIL.Image``."""

    def __init__(self, width: int, height: int, image: Optional[Image.Image] = None):
        self.width = int(width)
        self.height = int(height)
        self.image = image if image is not None else Image.new("RGBA", (self.width, self.height), TRANSPARENT)
        self.global_alpha = 1.0

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def clear(self):
        self.image = Image.new("RGBA", self.size, TRANSPARENT)
        self.global_alpha = 1.0

    def new_layer(self) -> "PillowSurface":
        """Empty surface with the same size, for transformed painting."""
        return PillowSurface(self.width, self.height)

    # -- compositing helpers ------------------------------------------------

    def _composite_clipped(self, layer: Image.Image, x: int, y: int):
        """Alpha-composite ``layer`` at (x, y), clipping to the canvas."""
        src_left = max(0, -x)
        src_top = max(0, -y)
        dst_x = max(0, x)
        dst_y = max(0, y)
        w = min(layer.width - src_left, self.width - dst_x)
        h = min(layer.height - src_top, self.height - dst_y)
        if w <= 0 or h <= 0:
            return
        self.image.alpha_composite(
            layer, dest=(dst_x, dst_y),
            source=(src_left, src_top, src_left + w, src_top + h),
        )

    def composite(self, other: "PillowSurface"):
        """Blend another full-size surface over this one."""
        self.image.alpha_composite(other.image)

    # -- Surface interface --------------------------------------------------

    def fill_rect(self, x: float, y: float, width: float, height: float, color: str):
        rgba = with_alpha(parse_color(color), self.global_alpha)
        if rgba[3] == 0:
            return
        w = int(round(width))
        h = int(round(height))
        if w <= 0 or h <= 0:
            return
        layer = Image.new("RGBA", (w, h), rgba)
        self._composite_clipped(layer, int(round(x)), int(round(y)))

    def measure_text(self, text: str, font) -> float:
        if not text:
            return 0.0
        return float(font.getlength(text))

    def draw_text(self, text: str, x: float, y: float, font, color: str,
                  stroke_color: Optional[str] = None, stroke_width: float = 0,
                  shadow=None):
        """
        Draw ``text`` with its left edge at ``x`` and vertical middle at ``y``.

        Order: shadow, stroke, fill. The stroke straddles the glyph outline
        like a canvas ``strokeText``, so only half its width shows outside
        the fill.
        """
        if not text:
            return

        fill = with_alpha(parse_color(color), self.global_alpha)
        stroke_px = int(round(stroke_width / 2.0)) if stroke_color and stroke_width else 0
        stroke_rgba = with_alpha(parse_color(stroke_color), self.global_alpha) if stroke_px else TRANSPARENT

        # Layer big enough for the glyphs plus stroke, blur and offsets
        text_w = int(font.getlength(text)) + 1
        ascent, descent = _metrics(font)
        text_h = ascent + descent
        blur = shadow.blur if shadow is not None and shadow.is_active else 0
        margin = stroke_px + int(blur * 2) + 4
        lw = text_w + margin * 2
        lh = text_h + margin * 2
        origin_x = int(round(x)) - margin
        origin_y = int(round(y - text_h / 2.0)) - margin
        anchor_xy = (margin, margin + text_h / 2.0)

        if shadow is not None and shadow.is_active:
            shadow_rgba = with_alpha(parse_color(shadow.color), self.global_alpha)
            if shadow_rgba[3] > 0:
                mask = Image.new("L", (lw, lh), 0)
                ImageDraw.Draw(mask).text(anchor_xy, text, font=font, fill=255,
                                          anchor="lm", stroke_width=stroke_px)
                if blur > 0:
                    # canvas shadowBlur corresponds to a gaussian sigma of blur / 2
                    mask = mask.filter(ImageFilter.GaussianBlur(blur / 2.0))
                shadow_layer = Image.new("RGBA", (lw, lh), shadow_rgba[:3] + (0,))
                alpha = mask.point(lambda v: v * shadow_rgba[3] // 255)
                shadow_layer.putalpha(alpha)
                self._composite_clipped(
                    shadow_layer,
                    origin_x + int(round(shadow.offset_x)),
                    origin_y + int(round(shadow.offset_y)),
                )

        layer = Image.new("RGBA", (lw, lh), TRANSPARENT)
        draw = ImageDraw.Draw(layer)
        if stroke_px and stroke_rgba[3] > 0:
            draw.text(anchor_xy, text, font=font, fill=stroke_rgba, anchor="lm",
                      stroke_width=stroke_px, stroke_fill=stroke_rgba)
            self._composite_clipped(layer, origin_x, origin_y)
            layer = Image.new("RGBA", (lw, lh), TRANSPARENT)
            draw = ImageDraw.Draw(layer)
        if fill[3] > 0:
            draw.text(anchor_xy, text, font=font, fill=fill, anchor="lm")
            self._composite_clipped(layer, origin_x, origin_y)

    def draw_image(self, image, x: float, y: float, width: float, height: float):
        """Scale ``image`` to (width, height) and draw it at (x, y), clipped."""
        w = max(1, int(round(width)))
        h = max(1, int(round(height)))
        src = image if image.mode == "RGBA" else image.convert("RGBA")
        if src.size != (w, h):
            src = src.resize((w, h), Image.Resampling.BILINEAR)
        if self.global_alpha < 1.0:
            alpha = src.getchannel("A").point(lambda v: int(v * self.global_alpha))
            src = src.copy() if src is image else src
            src.putalpha(alpha)
        self._composite_clipped(src, int(round(x)), int(round(y)))

    def apply_affine(self, data: Tuple[float, float, float, float, float, float]):
        """Resample the surface through an inverse affine matrix (output -> input)."""
        self.image = self.image.transform(self.size, Image.Transform.AFFINE, data, resample=Image.Resampling.BICUBIC)

    def to_rgb(self) -> Image.Image:
        return self.image.convert("RGB")


def _metrics(font) -> Tuple[int, int]:
    try:
        return font.getmetrics()
    except AttributeError:
        bbox = font.getbbox("Ag")
        return bbox[3], 0
