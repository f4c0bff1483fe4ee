"""
Frame compositor.

Combines one decoded source frame with the rendered caption overlay into a
fixed-size output frame. The orientation profile decides how the source is
fitted into the output canvas:

  landscape      wider source -> fit width, letterbox top/bottom
                 taller source -> fit height, pillarbox left/right
  portrait_zoom  wider source -> fit height, crop left/right (zoom)
                 taller source -> fit width, crop top/bottom

Uncovered margins are opaque black. The overlay, already at output
resolution, is blended on top at the origin without scaling.
"""

import enum
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from ..utils.config import get_output_size
from .surface import PillowSurface


class Orientation(str, enum.Enum):
    PORTRAIT_ZOOM = "portrait_zoom"
    LANDSCAPE = "landscape"

    @classmethod
    def parse(cls, value) -> "Orientation":
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower().replace("-", "_")
        if key in ("portrait", "portrait_zoom", "vertical", ""):
            return cls.PORTRAIT_ZOOM
        if key in ("landscape", "horizontal"):
            return cls.LANDSCAPE
        raise ValueError(f"Unknown orientation '{value}'")

    @property
    def output_size(self) -> Tuple[int, int]:
        return get_output_size(self.value)


@dataclass(frozen=True)
class DrawRect:
    """Where the scaled source frame lands on the output canvas."""
    x: float
    y: float
    width: float
    height: float


def compute_draw_rect(
    source_width: int,
    source_height: int,
    output_width: int,
    output_height: int,
    orientation: Orientation,
) -> DrawRect:
    """Aspect-fit rectangle for a source frame on the output canvas."""
    if source_width <= 0 or source_height <= 0:
        return DrawRect(0.0, 0.0, float(output_width), float(output_height))

    video_aspect = source_width / source_height
    output_aspect = output_width / output_height

    draw_w = float(output_width)
    draw_h = float(output_height)
    draw_x = 0.0
    draw_y = 0.0

    fit_width = video_aspect > output_aspect
    if Orientation.parse(orientation) == Orientation.PORTRAIT_ZOOM:
        fit_width = not fit_width

    if fit_width:
        draw_h = output_width / video_aspect
        draw_y = (output_height - draw_h) / 2.0
    else:
        draw_w = output_height * video_aspect
        draw_x = (output_width - draw_w) / 2.0

    return DrawRect(draw_x, draw_y, draw_w, draw_h)


def frame_to_image(frame) -> Image.Image:
    """OpenCV BGR(A) array or PIL image -> PIL RGB image."""
    if isinstance(frame, Image.Image):
        return frame if frame.mode in ("RGB", "RGBA") else frame.convert("RGB")
    arr = np.asarray(frame)
    if arr.ndim == 2:
        return Image.fromarray(cv2.cvtColor(arr, cv2.COLOR_GRAY2RGB))
    if arr.shape[2] == 4:
        return Image.fromarray(cv2.cvtColor(arr, cv2.COLOR_BGRA2RGBA))
    return Image.fromarray(cv2.cvtColor(arr, cv2.COLOR_BGR2RGB))


def composite_frame(
    frame,
    overlay: Optional[Image.Image],
    orientation: Orientation,
    output_size: Tuple[int, int],
) -> Image.Image:
    """
    Build one output frame.

    Args:
        frame: Decoded source frame (OpenCV BGR array or PIL image).
        overlay: Caption overlay (RGBA, output size) or None.
        orientation: Fit rule for the source frame.
        output_size: (width, height) of the output frame.

    Returns:
        RGB PIL image of exactly ``output_size``.
    """
    out_w, out_h = output_size
    canvas = PillowSurface(out_w, out_h, image=Image.new("RGBA", (out_w, out_h), (0, 0, 0, 255)))

    if frame is not None:
        src = frame_to_image(frame)
        rect = compute_draw_rect(src.width, src.height, out_w, out_h, orientation)
        canvas.draw_image(src, rect.x, rect.y, rect.width, rect.height)

    if overlay is not None:
        if overlay.size != (out_w, out_h):
            raise ValueError(f"Overlay size {overlay.size} does not match output {output_size}")
        canvas.image.alpha_composite(overlay if overlay.mode == "RGBA" else overlay.convert("RGBA"))

    return canvas.to_rgb()
