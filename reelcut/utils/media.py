"""
Media file probing utilities using ffprobe.

Extracts the source metadata the export pipeline needs before rendering:
frame size, natural duration, frame rate, and whether an audio track exists.
"""

import json
import os
import subprocess
from dataclasses import dataclass
from fractions import Fraction
from typing import Optional


@dataclass
class VideoStream:
    """Video stream metadata."""
    width: int = 1920
    height: int = 1080
    fps: float = 30.0
    codec: str = "h264"
    duration: float = 0.0
    rotation: int = 0

    @property
    def aspect(self) -> float:
        return self.width / self.height if self.height else 0.0

    @property
    def display_size(self):
        """Frame size after applying rotation metadata."""
        if self.rotation in (90, 270, -90, -270):
            return self.height, self.width
        return self.width, self.height


@dataclass
class AudioStream:
    """Audio stream metadata."""
    sample_rate: int = 48000
    channels: int = 2
    codec: str = "aac"
    duration: float = 0.0


@dataclass
class MediaInfo:
    """Complete media file information."""
    path: str = ""
    filename: str = ""
    duration: float = 0.0
    format_name: str = ""
    video: Optional[VideoStream] = None
    audio: Optional[AudioStream] = None

    @property
    def has_video(self) -> bool:
        return self.video is not None

    @property
    def has_audio(self) -> bool:
        return self.audio is not None


def is_remote(path: str) -> bool:
    """True for http(s)/rtmp style locators that ffmpeg opens directly."""
    return "://" in path and not path.startswith("file://")


def probe(filepath: str, ffprobe_path: str = "ffprobe", timeout: int = 30) -> MediaInfo:
    """
    Probe a media file and extract metadata using ffprobe.

    Args:
        filepath: Path or URL of the media file.
        ffprobe_path: ffprobe executable.

    Returns:
        MediaInfo with video/audio stream details.

    Raises:
        FileNotFoundError: If a local file doesn't exist.
        RuntimeError: If ffprobe fails.
    """
    filepath = str(filepath)
    if not is_remote(filepath) and not os.path.isfile(filepath):
        raise FileNotFoundError(f"Media file not found: {filepath}")

    cmd = [
        ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        filepath,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=timeout)
    except FileNotFoundError:
        raise RuntimeError("ffprobe not found. Install FFmpeg: https://ffmpeg.org/download.html")
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"ffprobe failed on '{filepath}': {e.stderr}")
    except subprocess.TimeoutExpired:
        raise RuntimeError(f"ffprobe timed out on '{filepath}'")

    try:
        data = json.loads(result.stdout)
    except ValueError:
        raise RuntimeError(f"ffprobe returned unreadable output for '{filepath}'")
    return parse_probe_data(data, filepath)


def parse_probe_data(data: dict, filepath: str = "") -> MediaInfo:
    """Build a MediaInfo from ffprobe's JSON document."""
    streams = data.get("streams", [])
    fmt = data.get("format", {})

    info = MediaInfo(
        path=filepath,
        filename=os.path.basename(filepath),
        duration=float(fmt.get("duration", 0) or 0),
        format_name=fmt.get("format_name", ""),
    )

    for stream in streams:
        if stream.get("codec_type") == "video":
            fps_str = stream.get("avg_frame_rate") or stream.get("r_frame_rate", "30/1")
            try:
                fps = float(Fraction(fps_str))
            except (ValueError, ZeroDivisionError):
                fps = 30.0
            if fps <= 0:
                fps = 30.0

            rotation = 0
            tags = stream.get("tags", {}) or {}
            if "rotate" in tags:
                try:
                    rotation = int(tags["rotate"])
                except ValueError:
                    rotation = 0
            for side in stream.get("side_data_list", []) or []:
                if "rotation" in side:
                    try:
                        rotation = int(side["rotation"])
                    except (TypeError, ValueError):
                        pass

            info.video = VideoStream(
                width=int(stream.get("width", 1920)),
                height=int(stream.get("height", 1080)),
                fps=fps,
                codec=stream.get("codec_name", "h264"),
                duration=float(stream.get("duration", fmt.get("duration", 0)) or 0),
                rotation=rotation,
            )
            break

    for stream in streams:
        if stream.get("codec_type") == "audio":
            info.audio = AudioStream(
                sample_rate=int(stream.get("sample_rate", 48000)),
                channels=int(stream.get("channels", 2)),
                codec=stream.get("codec_name", "aac"),
                duration=float(stream.get("duration", fmt.get("duration", 0)) or 0),
            )
            break

    return info
