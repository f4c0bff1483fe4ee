"""
Configuration management for ReelCut.

Quality tiers, output orientations, and export runtime settings.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class QualitySettings:
    """Immutable encode bundle selected once per export."""
    name: str
    video_codec: str
    audio_codec: str
    video_bitrate: str
    audio_bitrate: str
    resolution: str          # "WxH", informational; output size comes from orientation
    fps: int
    preset: str              # x264 speed preset
    crf: int

    @property
    def size(self) -> Tuple[int, int]:
        w, h = self.resolution.lower().split("x")
        return int(w), int(h)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "video_codec": self.video_codec,
            "audio_codec": self.audio_codec,
            "video_bitrate": self.video_bitrate,
            "audio_bitrate": self.audio_bitrate,
            "resolution": self.resolution,
            "fps": self.fps,
            "preset": self.preset,
            "crf": self.crf,
        }


QUALITY_TIERS: Dict[str, QualitySettings] = {
    "low": QualitySettings(
        name="low",
        video_codec="libx264",
        audio_codec="aac",
        video_bitrate="1M",
        audio_bitrate="96k",
        resolution="720x1280",
        fps=24,
        preset="ultrafast",
        crf=28,
    ),
    "medium": QualitySettings(
        name="medium",
        video_codec="libx264",
        audio_codec="aac",
        video_bitrate="2M",
        audio_bitrate="128k",
        resolution="1080x1920",
        fps=30,
        preset="medium",
        crf=23,
    ),
    "high": QualitySettings(
        name="high",
        video_codec="libx264",
        audio_codec="aac",
        video_bitrate="4M",
        audio_bitrate="192k",
        resolution="1080x1920",
        fps=30,
        preset="slow",
        crf=18,
    ),
}

DEFAULT_QUALITY = "medium"


# Output canvas per orientation profile (width, height)
ORIENTATIONS: Dict[str, Tuple[int, int]] = {
    "portrait_zoom": (1080, 1920),
    "landscape": (1920, 1080),
}

DEFAULT_ORIENTATION = "portrait_zoom"


@dataclass
class ExportConfig:
    """Runtime settings for the frame loop and encoder invocation."""
    # Seconds to wait for a seek before the export is aborted
    seek_timeout: float = 5.0
    # Pause after a seek completes, before the frame is sampled
    settle_delay: float = 0.05
    # Rendering owns 0..85 of the progress bar, encoding 85..95
    render_progress_cap: int = 85
    encode_progress_cap: int = 95
    # Bitrate used when re-extracting the trimmed audio track
    audio_bitrate: str = "128k"
    # Still-image format for spooled frames
    image_format: str = "PNG"
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    # Keep the spool directory after the run (debugging)
    keep_temp: bool = False
    # Overrides the tier frame rate when set
    fps_override: Optional[float] = None
    # Encoder subprocess timeout in seconds
    encode_timeout: int = 3600


# ----- Presets -----

PRESETS: Dict[str, ExportConfig] = {
    "default": ExportConfig(),

    "fast_preview": ExportConfig(
        settle_delay=0.0,
        fps_override=12,
        image_format="JPEG",
    ),

    "patient": ExportConfig(
        seek_timeout=15.0,
        settle_delay=0.1,
        encode_timeout=4 * 3600,
    ),
}


def get_preset(name: str) -> ExportConfig:
    """Get a preset configuration by name."""
    if name not in PRESETS:
        available = ", ".join(PRESETS.keys())
        raise ValueError(f"Unknown preset '{name}'. Available: {available}")
    return PRESETS[name]


def get_quality(name: str) -> QualitySettings:
    """Get a quality tier bundle by name."""
    if name not in QUALITY_TIERS:
        available = ", ".join(QUALITY_TIERS.keys())
        raise ValueError(f"Unknown quality tier '{name}'. Available: {available}")
    return QUALITY_TIERS[name]


def get_output_size(orientation: str) -> Tuple[int, int]:
    """Output canvas size for an orientation profile name."""
    if orientation not in ORIENTATIONS:
        available = ", ".join(ORIENTATIONS.keys())
        raise ValueError(f"Unknown orientation '{orientation}'. Available: {available}")
    return ORIENTATIONS[orientation]
