"""
ReelCut Overlay Renderer

Paints the captions visible at one instant onto a Surface. The same code
path serves the live preview and every exported frame, so an export matches
the preview frame for frame.

Rules:
- A caption is painted iff ``is_visible`` and ``start_time <= t <= end_time``
  (times already on the same timeline as ``t``).
- Captions are painted in list order; when captions overlap, the one listed
  last ends up on top. This z-order is part of the contract.
- Per caption: background box, then keyword backgrounds, then shadow and
  stroke, then fill, all under ``style.opacity * animation opacity``.
- Animated translate/scale pivots on the caption's own anchor point.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from PIL import Image

from .animation import animation_transform, animation_progress, typewriter_char_count
from .models import Caption, CaptionStyle, KeywordHighlight, Position
from .surface import PillowSurface, Surface, load_font

logger = logging.getLogger("reelcut")


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------
def apply_text_transform(text: str, transform: Optional[str]) -> str:
    """Apply a CSS-like text-transform."""
    if not transform or transform == "none":
        return text
    if transform == "uppercase":
        return text.upper()
    if transform == "lowercase":
        return text.lower()
    if transform == "capitalize":
        return " ".join(w[:1].upper() + w[1:].lower() for w in text.split(" "))
    return text


@dataclass
class TextSegment:
    """A run of caption text, either plain or a highlighted keyword."""
    text: str
    is_keyword: bool = False
    color: Optional[str] = None
    background_color: Optional[str] = None
    font_weight: Optional[str] = None


def _matches_at(text: str, pos: int, keyword: str) -> bool:
    end = pos + len(keyword)
    return end <= len(text) and text[pos:end].lower() == keyword.lower()


def parse_text_segments(text: str, keywords: Sequence[KeywordHighlight]) -> List[TextSegment]:
    """
    Split ``text`` into plain and keyword segments.

    Scans left to right. At each position the first keyword, in declared
    order, that matches case-insensitively wins. Otherwise a plain segment
    runs up to the nearest position where any keyword matches, or to the
    end. Joining the segment texts gives back ``text`` unchanged.
    """
    active = [k for k in keywords if k.text]
    if not active:
        return [TextSegment(text)] if text else []

    segments: List[TextSegment] = []
    pos = 0
    n = len(text)
    while pos < n:
        hit = next((k for k in active if _matches_at(text, pos, k.text)), None)
        if hit is not None:
            end = pos + len(hit.text)
            segments.append(TextSegment(
                text=text[pos:end],
                is_keyword=True,
                color=hit.color,
                background_color=hit.background_color,
                font_weight=hit.font_weight,
            ))
            pos = end
            continue

        nxt = pos + 1
        while nxt < n and not any(_matches_at(text, nxt, k.text) for k in active):
            nxt += 1
        segments.append(TextSegment(text=text[pos:nxt]))
        pos = nxt

    return segments


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------
def eligible_captions(captions: Sequence[Caption], t: float) -> List[Caption]:
    """Captions that take part in rendering at ``t``, in paint order."""
    return [c for c in captions if c.is_eligible(t)]


# ---------------------------------------------------------------------------
# Painting
# ---------------------------------------------------------------------------
def render_captions(surface: Surface, captions: Sequence[Caption], t: float):
    """Clear ``surface`` and paint every caption eligible at ``t``."""
    surface.clear()
    for caption in captions:
        if caption.is_eligible(t):
            _render_caption(surface, caption, t)


def render_overlay(captions: Sequence[Caption], t: float, width: int, height: int) -> Image.Image:
    """Render the caption overlay for instant ``t`` as a transparent RGBA image."""
    surface = PillowSurface(width, height)
    render_captions(surface, captions, t)
    return surface.image


def _render_caption(surface: Surface, caption: Caption, t: float):
    progress = animation_progress(caption, t)
    transform = animation_transform(caption.style.animation, progress)
    if progress <= 0 or not transform.visible:
        return

    text = caption.text
    animation = caption.style.animation
    if animation is not None and animation.type == "typewriter":
        text = text[:typewriter_char_count(text, progress)]
    if not text:
        return

    alpha = transform.opacity * caption.style.opacity
    if alpha <= 0:
        return

    if transform.is_identity:
        surface.global_alpha = alpha
        paint_caption_text(surface, text, caption.style, caption.position)
        surface.global_alpha = 1.0
        return

    # Paint on a private layer, then map it through
    # translate(anchor) . scale(s) . translate(offset) . translate(-anchor)
    layer = surface.new_layer()
    layer.global_alpha = alpha
    paint_caption_text(layer, text, caption.style, caption.position)

    s = transform.scale if transform.scale > 0 else 1e-6
    cx, cy = caption.position.x, caption.position.y
    tx, ty = transform.translate_x, transform.translate_y
    # Pillow wants the inverse mapping (output pixel -> layer pixel)
    inv = 1.0 / s
    layer.apply_affine((
        inv, 0.0, -(s * tx + cx * (1.0 - s)) * inv,
        0.0, inv, -(s * ty + cy * (1.0 - s)) * inv,
    ))
    surface.composite(layer)


def paint_caption_text(surface: Surface, text: str, style: CaptionStyle, position: Position):
    """Lay out and paint one caption's text at its anchor."""
    text = apply_text_transform(text, style.text_transform)
    segments = parse_text_segments(text, style.keyword_highlights)
    if not segments:
        return

    base_font = load_font(style.font_family, style.font_size, style.font_weight, style.font_style)
    fonts = []
    widths = []
    for seg in segments:
        if seg.is_keyword and seg.font_weight:
            font = load_font(style.font_family, style.font_size, seg.font_weight, style.font_style)
        else:
            font = base_font
        fonts.append(font)
        widths.append(surface.measure_text(seg.text, font))
    total_width = sum(widths)

    pad = style.padding
    bg_width = total_width + pad.left + pad.right
    bg_height = style.font_size + pad.top + pad.bottom

    if style.text_align == "left":
        text_x = position.x
        bg_x = position.x - pad.left
    elif style.text_align == "right":
        text_x = position.x - total_width
        bg_x = position.x - bg_width + pad.right
    else:
        text_x = position.x - total_width / 2.0
        bg_x = position.x - bg_width / 2.0

    if style.background_color:
        surface.fill_rect(bg_x, position.y - bg_height / 2.0, bg_width, bg_height,
                          style.background_color)

    shadow = style.shadow if style.shadow is not None and style.shadow.is_active else None
    stroke_color = style.stroke_color if style.has_stroke else None

    x = text_x
    for seg, font, width in zip(segments, fonts, widths):
        if seg.is_keyword and seg.background_color:
            surface.fill_rect(x, position.y - style.font_size / 2.0, width, style.font_size,
                              seg.background_color)
        color = seg.color if seg.is_keyword and seg.color else style.color
        surface.draw_text(seg.text, x, position.y, font, color,
                          stroke_color=stroke_color, stroke_width=style.stroke_width,
                          shadow=shadow)
        x += width
