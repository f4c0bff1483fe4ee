"""
ReelCut Encoder Backend

Wraps the FFmpeg executable for the two jobs the export pipeline needs:
- cutting the trimmed audio track out of the source
- encoding the spooled frame sequence, with or without that audio

The encoder is an explicitly owned resource. Its lock admits one export at
a time; callers hold it for the whole run through ``session()``.

Frames are spooled to disk as numbered stills instead of being held in
memory, so peak memory does not grow with duration x fps. The same spool
feeds the video-only fallback when a with-audio encode fails.
"""

import logging
import os
import re
import shutil
import subprocess
import tempfile
import threading
from collections import deque
from contextlib import contextmanager
from typing import Callable, List, Optional

from PIL import Image

from ..utils.config import QualitySettings
from .errors import AudioExtractionError, EncodeError

logger = logging.getLogger("reelcut")

_FRAME_RE = re.compile(rb"frame=\s*(\d+)")
_RATE_RE = re.compile(r"^(\d+(?:\.\d+)?)([kKmM]?)$")

_IMAGE_EXT = {"PNG": ".png", "JPEG": ".jpg", "BMP": ".bmp"}


# ---------------------------------------------------------------------------
# Frame spool
# ---------------------------------------------------------------------------
class FrameSpool:
    """
    Ordered, index-addressed frame store backed by a temp directory.

    Frames must be written in index order (0, 1, 2, ...); the numbered file
    pattern is what the encoder reads back.
    """

    def __init__(self, image_format: str = "PNG", prefix: str = "reelcut_frames_"):
        fmt = image_format.upper()
        if fmt not in _IMAGE_EXT:
            raise ValueError(f"Unsupported frame format '{image_format}'")
        self.image_format = fmt
        self.ext = _IMAGE_EXT[fmt]
        self.directory = tempfile.mkdtemp(prefix=prefix)
        self.count = 0
        self.bytes_written = 0

    @property
    def pattern(self) -> str:
        return os.path.join(self.directory, f"frame_%06d{self.ext}")

    def path_for(self, index: int) -> str:
        return os.path.join(self.directory, f"frame_{index:06d}{self.ext}")

    def write(self, index: int, image: Image.Image) -> str:
        if index != self.count:
            raise ValueError(f"Frame {index} written out of order (expected {self.count})")
        path = self.path_for(index)
        if self.image_format == "PNG":
            image.save(path, "PNG", compress_level=1)
        elif self.image_format == "JPEG":
            image.convert("RGB").save(path, "JPEG", quality=95)
        else:
            image.save(path, self.image_format)
        self.count += 1
        self.bytes_written += os.path.getsize(path)
        return path

    def cleanup(self):
        if self.directory and os.path.isdir(self.directory):
            shutil.rmtree(self.directory, ignore_errors=True)
        self.count = 0


# ---------------------------------------------------------------------------
# Argument profiles
# ---------------------------------------------------------------------------
def _double_rate(rate: str) -> str:
    """'2M' -> '4M', used for the VBV buffer size."""
    m = _RATE_RE.match(rate.strip())
    if not m:
        return rate
    value = float(m.group(1)) * 2
    number = str(int(value)) if value.is_integer() else f"{value:g}"
    return f"{number}{m.group(2)}"


def _fmt_fps(fps: float) -> str:
    return str(int(fps)) if float(fps).is_integer() else f"{fps:.6g}"


def _video_output_args(settings: QualitySettings, fps: float) -> List[str]:
    return [
        "-c:v", settings.video_codec,
        "-preset", settings.preset,
        "-crf", str(settings.crf),
        "-b:v", settings.video_bitrate,
        "-maxrate", settings.video_bitrate,
        "-bufsize", _double_rate(settings.video_bitrate),
        "-r", _fmt_fps(fps),
        "-pix_fmt", "yuv420p",
        "-movflags", "+faststart",
    ]


def build_video_only_args(
    settings: QualitySettings,
    fps: float,
    frame_pattern: str,
    output_path: str,
    ffmpeg_path: str = "ffmpeg",
) -> List[str]:
    """Frames only, no audio track."""
    return [
        ffmpeg_path, "-hide_banner", "-y",
        "-framerate", _fmt_fps(fps),
        "-i", frame_pattern,
        "-map", "0:v:0",
        *_video_output_args(settings, fps),
        "-an",
        output_path,
    ]


def build_with_audio_args(
    settings: QualitySettings,
    fps: float,
    frame_pattern: str,
    audio_path: str,
    output_path: str,
    ffmpeg_path: str = "ffmpeg",
) -> List[str]:
    """Frames plus the extracted audio, muxed; ends with the shorter stream."""
    return [
        ffmpeg_path, "-hide_banner", "-y",
        "-framerate", _fmt_fps(fps),
        "-i", frame_pattern,
        "-i", audio_path,
        "-map", "0:v:0", "-map", "1:a:0",
        *_video_output_args(settings, fps),
        "-c:a", settings.audio_codec,
        "-b:a", settings.audio_bitrate,
        "-shortest",
        output_path,
    ]


def build_audio_extract_args(
    source: str,
    start: float,
    duration: float,
    output_path: str,
    bitrate: str = "128k",
    ffmpeg_path: str = "ffmpeg",
) -> List[str]:
    """Cut ``[start, start + duration]`` of the source audio to AAC."""
    return [
        ffmpeg_path, "-hide_banner", "-loglevel", "error", "-y",
        "-ss", f"{start:.3f}",
        "-i", source,
        "-t", f"{duration:.3f}",
        "-vn",
        "-acodec", "aac",
        "-b:a", bitrate,
        output_path,
    ]


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------
class EncoderBackend:
    """FFmpeg runner shared across exports, one export at a time."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: int = 3600):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout
        self._lock = threading.Lock()
        self._available: Optional[bool] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def session(self):
        """Hold the encoder for one export. Concurrent callers wait their turn."""
        if self.busy:
            logger.info("Encoder busy, waiting for the running export to finish")
        with self._lock:
            yield self

    def ensure_available(self):
        """Check the ffmpeg binary once, on first use."""
        if self._available:
            return
        resolved = shutil.which(self.ffmpeg_path) or (
            self.ffmpeg_path if os.path.isfile(self.ffmpeg_path) else None
        )
        if not resolved:
            raise EncodeError(
                f"FFmpeg not found ('{self.ffmpeg_path}'). "
                "Install FFmpeg: https://ffmpeg.org/download.html"
            )
        self._available = True

    def extract_audio(
        self,
        source: str,
        start: float,
        duration: float,
        output_path: str,
        bitrate: str = "128k",
    ) -> str:
        """
        Extract the trimmed audio track.

        Raises:
            AudioExtractionError: ffmpeg failed or the source has no audio.
        """
        cmd = build_audio_extract_args(source, start, duration, output_path,
                                       bitrate=bitrate, ffmpeg_path=self.ffmpeg_path)
        logger.debug(f"FFmpeg: {' '.join(cmd)}")
        try:
            r = subprocess.run(cmd, capture_output=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise AudioExtractionError(f"Audio extraction failed: {e}")
        if r.returncode != 0:
            stderr = r.stderr.decode(errors="replace")
            raise AudioExtractionError(f"Audio extraction failed: {stderr[-500:]}")
        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            raise AudioExtractionError("Audio extraction produced no data (source has no audio?)")
        return output_path

    def encode(
        self,
        cmd: List[str],
        total_frames: int = 0,
        on_frame: Optional[Callable[[int], None]] = None,
    ):
        """
        Run one encoder invocation, reporting encoded frame numbers.

        Raises:
            EncodeError: non-zero exit, timeout, or ffmpeg missing.
        """
        logger.debug(f"FFmpeg: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL,
                                    stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except OSError as e:
            raise EncodeError(f"Could not start FFmpeg: {e}")

        timed_out = threading.Event()

        def _kill():
            timed_out.set()
            proc.kill()

        timer = threading.Timer(self.timeout, _kill)
        timer.daemon = True
        timer.start()

        tail = deque(maxlen=40)
        buf = b""
        try:
            while True:
                chunk = proc.stderr.read1(4096)
                if not chunk:
                    break
                buf += chunk
                # ffmpeg rewrites its stats line with '\r'
                lines = re.split(rb"[\r\n]", buf)
                buf = lines.pop()
                for line in lines:
                    if not line.strip():
                        continue
                    tail.append(line)
                    if on_frame is not None:
                        m = _FRAME_RE.search(line)
                        if m:
                            on_frame(int(m.group(1)))
            proc.wait()
        finally:
            timer.cancel()
            if proc.stderr is not None:
                proc.stderr.close()
            if proc.poll() is None:
                proc.kill()
                proc.wait()

        if buf.strip():
            tail.append(buf)
        stderr = b"\n".join(tail).decode(errors="replace")
        if timed_out.is_set():
            raise EncodeError(f"FFmpeg timed out after {self.timeout}s", stderr=stderr)
        if proc.returncode != 0:
            raise EncodeError(f"FFmpeg failed (exit {proc.returncode}): {stderr[-500:]}", stderr=stderr)
