"""
ReelCut Animation Engine

Computes the entrance-animation state of a caption at a given instant:
- progress p in [0, 1] from the caption's start, delay and duration
- a transform (opacity, translate, scale) derived from p
- the visible character count for the typewriter effect

Easing curves are pluggable through EASINGS. Every registered curve must be
monotonic non-decreasing on [0, 1] with f(0) = 0 and f(1) = 1, so the
transform never moves backwards as time advances.
"""

import math
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .models import AnimationSpec, Caption

# Pixels a slide animation travels before settling
SLIDE_DISTANCE = 40.0
# Starting scale for scale/pop/bounce
SCALE_FROM = 0.5
POP_FROM = 0.8


# ---------------------------------------------------------------------------
# Easing curves
# ---------------------------------------------------------------------------
def linear(p: float) -> float:
    return p


def ease_in(p: float) -> float:
    return p * p


def ease_out(p: float) -> float:
    return 1.0 - (1.0 - p) * (1.0 - p)


def ease_in_out(p: float) -> float:
    if p < 0.5:
        return 2.0 * p * p
    return 1.0 - math.pow(-2.0 * p + 2.0, 2) / 2.0


def ease_out_cubic(p: float) -> float:
    return 1.0 - math.pow(1.0 - p, 3)


EASINGS: Dict[str, Callable[[float], float]] = {
    "linear": linear,
    "ease_in": ease_in,
    "ease_out": ease_out,
    "ease_in_out": ease_in_out,
    "ease_out_cubic": ease_out_cubic,
}


def register_easing(name: str, fn: Callable[[float], float]):
    """Add an easing curve. The curve must be monotonic on [0, 1]."""
    EASINGS[name] = fn


def get_easing(name: Optional[str]) -> Callable[[float], float]:
    return EASINGS.get(name or "ease_out", ease_out)


# ---------------------------------------------------------------------------
# Progress / transform
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class AnimationTransform:
    opacity: float = 1.0
    translate_x: float = 0.0
    translate_y: float = 0.0
    scale: float = 1.0
    visible: bool = True

    @property
    def is_identity(self) -> bool:
        return self.translate_x == 0 and self.translate_y == 0 and self.scale == 1


IDENTITY = AnimationTransform()
HIDDEN = AnimationTransform(opacity=0.0, visible=False)


def _has_animation(animation: Optional[AnimationSpec]) -> bool:
    return animation is not None and animation.type not in ("", "none")


def animation_progress(caption: Caption, t: float) -> float:
    """
    Progress of the caption's entrance animation at time ``t``.

    ``t`` and the caption's times must be on the same timeline. A caption
    without an animation is fully settled immediately.
    """
    animation = caption.style.animation
    if not _has_animation(animation):
        return 1.0

    elapsed = t - caption.start_time - animation.delay
    if animation.duration <= 0:
        return 1.0 if elapsed >= 0 else 0.0
    return max(0.0, min(1.0, elapsed / animation.duration))


def animation_transform(animation: Optional[AnimationSpec], p: float) -> AnimationTransform:
    """Transform for progress ``p``. ``p <= 0`` means not yet visible."""
    if not _has_animation(animation):
        return IDENTITY
    if p <= 0:
        return HIDDEN
    if p >= 1:
        return IDENTITY

    e = get_easing(animation.easing)(p)
    kind = animation.type
    remaining = 1.0 - e

    if kind == "typewriter":
        return IDENTITY
    if kind in ("slide", "slide_up"):
        return AnimationTransform(opacity=e, translate_y=SLIDE_DISTANCE * remaining)
    if kind == "slide_down":
        return AnimationTransform(opacity=e, translate_y=-SLIDE_DISTANCE * remaining)
    if kind == "slide_left":
        return AnimationTransform(opacity=e, translate_x=SLIDE_DISTANCE * remaining)
    if kind == "slide_right":
        return AnimationTransform(opacity=e, translate_x=-SLIDE_DISTANCE * remaining)
    if kind == "scale":
        return AnimationTransform(opacity=e, scale=SCALE_FROM + (1.0 - SCALE_FROM) * e)
    if kind == "pop":
        return AnimationTransform(opacity=min(1.0, e * 2.0), scale=POP_FROM + (1.0 - POP_FROM) * e)
    if kind == "bounce":
        return AnimationTransform(
            opacity=e,
            translate_y=SLIDE_DISTANCE * remaining,
            scale=POP_FROM + (1.0 - POP_FROM) * e,
        )
    # fade, and anything unrecognised
    return AnimationTransform(opacity=e)


def typewriter_char_count(text: str, p: float) -> int:
    """Characters revealed by the typewriter effect at progress ``p``."""
    if p <= 0:
        return 0
    if p >= 1:
        return len(text)
    return int(math.floor(p * len(text)))


def caption_transform(caption: Caption, t: float):
    """Convenience: ``(progress, transform)`` for a caption at time ``t``."""
    p = animation_progress(caption, t)
    return p, animation_transform(caption.style.animation, p)
