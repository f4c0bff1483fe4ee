"""
Caption and style data model.

Pure data shared by the preview renderer and the export pipeline. Records
are parsed from the editing layer's JSON, which uses camelCase keys
(``startTime``, ``keywordHighlights``); snake_case keys are accepted too.

The pipeline treats every record here as immutable input: timeline shifts
and visibility updates return copies via ``dataclasses.replace``.
"""

import json
import logging
import math
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional

from .errors import ValidationError

logger = logging.getLogger("reelcut")

TEXT_ALIGNS = ("left", "center", "right")
TEXT_TRANSFORMS = ("none", "uppercase", "lowercase", "capitalize")


def _get(data: Dict[str, Any], key: str, camel: Optional[str] = None, default=None):
    """Read ``key`` or its camelCase alias from a dict."""
    if key in data:
        return data[key]
    if camel and camel in data:
        return data[camel]
    return default


def _float(value, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{name}' must be a number, got {value!r}")


def _color(value) -> Optional[str]:
    """Normalize a colour: empty strings and 'transparent' mean no colour."""
    if value is None:
        return None
    value = str(value).strip()
    if not value or value.lower() == "transparent":
        return None
    return value


# ---------------------------------------------------------------------------
# Style components
# ---------------------------------------------------------------------------
@dataclass
class Position:
    """Caption anchor in output pixel space."""
    x: float = 540.0
    y: float = 1500.0

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "Position":
        if not data:
            return cls()
        return cls(x=_float(data.get("x", 540.0), "position.x"),
                   y=_float(data.get("y", 1500.0), "position.y"))


@dataclass
class Padding:
    top: float = 0.0
    right: float = 0.0
    bottom: float = 0.0
    left: float = 0.0

    @classmethod
    def from_value(cls, value) -> "Padding":
        """Accept a dict, a single number, or a (vertical, horizontal) pair."""
        if value is None:
            return cls()
        if isinstance(value, (int, float)):
            v = float(value)
            return cls(v, v, v, v)
        if isinstance(value, (list, tuple)) and len(value) == 2:
            v, h = float(value[0]), float(value[1])
            return cls(v, h, v, h)
        if isinstance(value, dict):
            return cls(
                top=_float(value.get("top", 0), "padding.top"),
                right=_float(value.get("right", 0), "padding.right"),
                bottom=_float(value.get("bottom", 0), "padding.bottom"),
                left=_float(value.get("left", 0), "padding.left"),
            )
        raise ValidationError(f"Unsupported padding value: {value!r}")


@dataclass
class Shadow:
    color: str = "rgba(0,0,0,0.5)"
    offset_x: float = 0.0
    offset_y: float = 0.0
    blur: float = 0.0

    @property
    def is_active(self) -> bool:
        return self.blur > 0 or self.offset_x != 0 or self.offset_y != 0

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional["Shadow"]:
        if not data:
            return None
        return cls(
            color=_color(data.get("color")) or "rgba(0,0,0,0.5)",
            offset_x=_float(_get(data, "offset_x", "offsetX", 0), "shadow.offsetX"),
            offset_y=_float(_get(data, "offset_y", "offsetY", 0), "shadow.offsetY"),
            blur=_float(data.get("blur", 0), "shadow.blur"),
        )


@dataclass
class AnimationSpec:
    """Entrance animation. ``duration`` and ``delay`` are in seconds."""
    type: str = "none"
    duration: float = 0.5
    delay: float = 0.0
    easing: str = "ease_out"

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional["AnimationSpec"]:
        if not data:
            return None
        easing = str(data.get("easing", "ease_out")).replace("-", "_")
        # Editors often send CSS-style names ("easeOut")
        easing = {"easeIn": "ease_in", "easeOut": "ease_out",
                  "easeInOut": "ease_in_out"}.get(easing, easing)
        return cls(
            type=str(data.get("type", "none")).lower().replace("-", "_"),
            duration=_float(data.get("duration", 0.5), "animation.duration"),
            delay=_float(data.get("delay", 0.0), "animation.delay"),
            easing=easing,
        )


@dataclass
class KeywordHighlight:
    """A literal substring painted with overriding colour/weight/background."""
    text: str
    color: Optional[str] = None
    background_color: Optional[str] = None
    font_weight: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "KeywordHighlight":
        if "text" not in data:
            raise ValidationError("Keyword highlight is missing 'text'")
        weight = _get(data, "font_weight", "fontWeight")
        return cls(
            text=str(data["text"]),
            color=_color(data.get("color")),
            background_color=_color(_get(data, "background_color", "backgroundColor")),
            font_weight=str(weight) if weight is not None else None,
        )


@dataclass
class CaptionStyle:
    """Visual style of one caption."""
    font_family: str = "Arial"
    font_size: float = 48.0
    font_weight: str = "normal"
    font_style: str = "normal"
    color: str = "#ffffff"
    background_color: Optional[str] = None
    stroke_color: Optional[str] = None
    stroke_width: float = 0.0
    shadow: Optional[Shadow] = None
    opacity: float = 1.0
    text_align: str = "center"
    padding: Padding = field(default_factory=Padding)
    text_transform: str = "none"
    animation: Optional[AnimationSpec] = None
    keyword_highlights: List[KeywordHighlight] = field(default_factory=list)

    @property
    def has_stroke(self) -> bool:
        return bool(self.stroke_color) and self.stroke_width > 0

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "CaptionStyle":
        if not data:
            return cls()

        align = str(_get(data, "text_align", "textAlign", "center")).lower()
        if align not in TEXT_ALIGNS:
            align = "center"
        transform = str(_get(data, "text_transform", "textTransform", "none")).lower()
        if transform not in TEXT_TRANSFORMS:
            transform = "none"

        opacity = _float(data.get("opacity", 1.0), "opacity")
        opacity = max(0.0, min(1.0, opacity))

        keywords = _get(data, "keyword_highlights", "keywordHighlights", None) or []

        return cls(
            font_family=str(_get(data, "font_family", "fontFamily", "Arial")),
            font_size=_float(_get(data, "font_size", "fontSize", 48), "fontSize"),
            font_weight=str(_get(data, "font_weight", "fontWeight", "normal")),
            font_style=str(_get(data, "font_style", "fontStyle", "normal")),
            color=_color(data.get("color")) or "#ffffff",
            background_color=_color(_get(data, "background_color", "backgroundColor")),
            stroke_color=_color(_get(data, "stroke_color", "strokeColor")),
            stroke_width=_float(_get(data, "stroke_width", "strokeWidth", 0) or 0, "strokeWidth"),
            shadow=Shadow.from_dict(data.get("shadow")),
            opacity=opacity,
            text_align=align,
            padding=Padding.from_value(data.get("padding")),
            text_transform=transform,
            animation=AnimationSpec.from_dict(data.get("animation")),
            keyword_highlights=[KeywordHighlight.from_dict(k) for k in keywords],
        )

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot used in export settings."""
        return asdict(self)


# ---------------------------------------------------------------------------
# Caption
# ---------------------------------------------------------------------------
@dataclass
class Caption:
    """One timed overlay. Times are absolute seconds on the source timeline."""
    id: str
    text: str
    start_time: float
    end_time: float
    position: Position = field(default_factory=Position)
    style: CaptionStyle = field(default_factory=CaptionStyle)
    is_visible: bool = True
    language: str = "en"

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def is_eligible(self, t: float) -> bool:
        """Whether this caption takes part in rendering at time ``t``."""
        return self.is_visible and self.start_time <= t <= self.end_time

    def shifted(self, offset: float) -> "Caption":
        """Copy moved by ``-offset`` seconds (absolute -> trim-relative)."""
        return replace(self, start_time=self.start_time - offset,
                       end_time=self.end_time - offset)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> "Caption":
        if not isinstance(data, dict):
            raise ValidationError(f"Caption #{index} is not an object")
        start = _get(data, "start_time", "startTime")
        end = _get(data, "end_time", "endTime")
        if start is None or end is None:
            raise ValidationError(f"Caption #{index} is missing startTime/endTime")
        return cls(
            id=str(data.get("id", f"caption-{index}")),
            text=str(data.get("text", "")),
            start_time=_float(start, "startTime"),
            end_time=_float(end, "endTime"),
            position=Position.from_dict(data.get("position")),
            style=CaptionStyle.from_dict(data.get("style")),
            is_visible=bool(_get(data, "is_visible", "isVisible", True)),
            language=str(data.get("language", "en")),
        )


def captions_from_list(items: List[Dict[str, Any]]) -> List[Caption]:
    """Parse an ordered caption list. Order is paint order and is preserved."""
    return [Caption.from_dict(item, i) for i, item in enumerate(items)]


def load_captions(path: str) -> List[Caption]:
    """Read captions from a JSON file (a list, or ``{"captions": [...]}``)."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ValidationError(f"Could not read captions from '{path}': {e}")

    if isinstance(data, dict):
        data = data.get("captions", [])
    if not isinstance(data, list):
        raise ValidationError(f"Captions file '{path}' must contain a list")

    captions = captions_from_list(data)
    logger.debug(f"Loaded {len(captions)} captions from {path}")
    return captions


def update_caption_visibility(
    captions: List[Caption],
    trim_start: float,
    trim_end: float,
) -> List[Caption]:
    """
    Return copies whose ``is_visible`` reflects the trim window.

    A caption stays visible only when it lies entirely inside
    ``[trim_start, trim_end]`` and has a positive duration.
    """
    return [
        replace(
            c,
            is_visible=(c.start_time >= trim_start
                        and c.end_time <= trim_end
                        and c.start_time < c.end_time),
        )
        for c in captions
    ]


# ---------------------------------------------------------------------------
# Trim window / result
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class TrimWindow:
    """The ``[start_time, end_time]`` slice of the source being exported."""
    start_time: float
    end_time: float

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def validate(self):
        if not (math.isfinite(self.start_time) and math.isfinite(self.end_time)):
            raise ValidationError(
                f"Invalid time range: start ({self.start_time}) and end ({self.end_time}) "
                f"must be finite"
            )
        if self.end_time <= self.start_time:
            raise ValidationError(
                f"Invalid time range: end time ({self.end_time}) must be greater "
                f"than start time ({self.start_time})"
            )
        if self.start_time < 0:
            raise ValidationError(f"Invalid start time: {self.start_time} (must be >= 0)")


@dataclass(frozen=True)
class ExportResult:
    """Outcome of one successful export. Owned by the caller."""
    clip_id: str
    data: bytes
    duration: float
    file_size: int
    settings: Dict[str, Any]

    @property
    def has_audio(self) -> bool:
        return bool(self.settings.get("has_audio"))

    def save(self, path: str) -> str:
        with open(path, "wb") as f:
            f.write(self.data)
        return path
