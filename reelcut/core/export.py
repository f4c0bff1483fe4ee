"""
ReelCut Export Orchestrator

Turns (source video, ordered captions, trim window, quality tier,
orientation) into a finished MP4 held in memory.

One export runs through a fixed sequence of states:

    IDLE -> PREPARING -> RENDERING -> ENCODING -> CLEANING_UP -> SUCCEEDED
                                                             \\-> FAILED

No state is entered twice. Cleanup runs on success, failure and
cancellation alike.

Progress is an integer 0-100 that never goes backwards: rendering covers
0-85, encoding 85-95, and 100 is reported only on success.
"""

import logging
import math
import os
import shutil
import tempfile
import threading
import uuid
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Union

from PIL import Image

from ..utils.config import (
    DEFAULT_ORIENTATION,
    DEFAULT_QUALITY,
    ExportConfig,
    QualitySettings,
    get_quality,
)
from ..utils.media import MediaInfo, probe
from .compositor import Orientation, composite_frame
from .encoder import (
    EncoderBackend,
    FrameSpool,
    build_video_only_args,
    build_with_audio_args,
)
from .errors import (
    AudioExtractionError,
    EmptyOutputError,
    EncodeError,
    ExportCancelled,
    ExportError,
    ResourceLoadError,
    ValidationError,
)
from .frame_source import VideoFrameSource
from .models import Caption, ExportResult, TrimWindow
from .renderer import render_overlay

logger = logging.getLogger("reelcut")

CaptionInput = Union[Caption, Dict]


# ---------------------------------------------------------------------------
# State, progress, cancellation
# ---------------------------------------------------------------------------
class ExportState(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    RENDERING = "rendering"
    ENCODING = "encoding"
    CLEANING_UP = "cleaning_up"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ProgressReporter:
    """Forwards integer progress to a callback, dropping any regression."""

    def __init__(self, callback: Optional[Callable[[int], None]] = None):
        self.callback = callback
        self.value = -1

    def report(self, pct) -> int:
        pct = int(max(0, min(100, math.floor(pct + 0.5))))
        if pct <= self.value:
            return self.value
        self.value = pct
        if self.callback:
            self.callback(pct)
        return pct


class CancelToken:
    """Cooperative cancellation flag, checked once per frame."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise ExportCancelled("Export cancelled")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def coerce_captions(captions: Optional[Sequence[CaptionInput]]) -> List[Caption]:
    """Accept Caption objects or editor dicts, preserving order."""
    out = []
    for i, c in enumerate(captions or []):
        out.append(c if isinstance(c, Caption) else Caption.from_dict(c, i))
    return out


def clip_captions(captions: Sequence[Caption], trim: TrimWindow) -> List[Caption]:
    """
    Captions moved onto the trimmed timeline.

    Each caption is shifted by ``-trim.start_time``; only those overlapping
    ``[0, duration)`` are kept. Order is preserved.
    """
    duration = trim.duration
    shifted = [c.shifted(trim.start_time) for c in captions]
    return [c for c in shifted if c.end_time > 0 and c.start_time < duration]


def frame_count(duration: float, fps: float) -> int:
    # Guard against 5.0 * 10 landing on 50.0000001
    return int(math.ceil(round(duration * fps, 6)))


def _validate_request(video: str, trim: TrimWindow):
    if not video or not str(video).strip():
        raise ValidationError("No video source provided")
    trim.validate()


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------
class ExportOrchestrator:
    """
    Runs exports against one encoder.

    Args:
        encoder: Shared EncoderBackend; its lock admits one export at a time.
        config: Runtime settings (timeouts, spool format, progress bands).
        source_factory: Builds a frame source for a video path.
        prober: ffprobe-style metadata loader returning MediaInfo.

    An orchestrator instance tracks the state of the run it is executing, so
    use one instance per concurrent caller; they may share the encoder.
    """

    def __init__(
        self,
        encoder: Optional[EncoderBackend] = None,
        config: Optional[ExportConfig] = None,
        source_factory: Callable = VideoFrameSource,
        prober: Callable = probe,
    ):
        self.config = config or ExportConfig()
        self.encoder = encoder or EncoderBackend(self.config.ffmpeg_path,
                                                 timeout=self.config.encode_timeout)
        self.source_factory = source_factory
        self.prober = prober
        self.state = ExportState.IDLE
        self.history: List[ExportState] = [ExportState.IDLE]

    # -- state ---------------------------------------------------------------
    def _transition(self, state: ExportState):
        if state in self.history:
            raise RuntimeError(f"Export state {state.value} entered twice")
        logger.info(f"Export: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _reset(self):
        self.state = ExportState.IDLE
        self.history = [ExportState.IDLE]

    # -- stages --------------------------------------------------------------
    def _load_media(self, video: str) -> MediaInfo:
        try:
            info = self.prober(video, ffprobe_path=self.config.ffprobe_path)
        except (OSError, RuntimeError, ValueError) as e:
            raise ResourceLoadError(f"Failed to load video metadata: {e}")
        if not info.has_video:
            raise ResourceLoadError(f"Failed to load video metadata: '{video}' has no video stream")
        return info

    def _render(
        self,
        source,
        captions: Sequence[Caption],
        trim: TrimWindow,
        fps: float,
        total: int,
        orientation: Orientation,
        spool: FrameSpool,
        progress: ProgressReporter,
        cancel: Optional[CancelToken],
    ):
        cfg = self.config
        size = orientation.output_size
        for i in range(total):
            if cancel is not None:
                cancel.raise_if_cancelled()

            relative_time = i / fps
            source_time = trim.start_time + relative_time

            frame = source.seek(source_time, timeout=cfg.seek_timeout, settle=cfg.settle_delay)
            overlay = render_overlay(captions, relative_time, size[0], size[1])
            spool.write(i, composite_frame(frame, overlay, orientation, size))

            progress.report(i / total * cfg.render_progress_cap)

        progress.report(cfg.render_progress_cap)
        logger.info(f"Rendered {total} frames at {size[0]}x{size[1]} "
                    f"({spool.bytes_written / 1024 / 1024:.1f} MB spooled)")

    def _extract_audio(self, video: str, info: MediaInfo, trim: TrimWindow, work_dir: str) -> Optional[str]:
        if not info.has_audio:
            logger.info("Source has no audio stream, exporting video only")
            return None
        audio_path = os.path.join(work_dir, "audio.aac")
        try:
            return self.encoder.extract_audio(video, trim.start_time, trim.duration,
                                              audio_path, bitrate=self.config.audio_bitrate)
        except AudioExtractionError as e:
            logger.warning(f"Audio extraction failed, continuing without audio: {e.message}")
            return None

    def _encode(
        self,
        quality: QualitySettings,
        fps: float,
        spool: FrameSpool,
        audio_path: Optional[str],
        output_path: str,
        total: int,
        progress: ProgressReporter,
    ) -> bool:
        """Encode the spool. Returns whether the output carries audio."""
        cfg = self.config
        band = cfg.encode_progress_cap - cfg.render_progress_cap

        def on_frame(n: int):
            pct = cfg.render_progress_cap + math.floor(n / max(total, 1) * band + 0.5)
            progress.report(min(pct, cfg.encode_progress_cap))

        ffmpeg = self.encoder.ffmpeg_path
        if audio_path:
            cmd = build_with_audio_args(quality, fps, spool.pattern, audio_path,
                                        output_path, ffmpeg_path=ffmpeg)
            try:
                self.encoder.encode(cmd, total, on_frame)
                return True
            except EncodeError as e:
                logger.warning(f"Encode with audio failed, retrying video only: {e.message}")
                if os.path.exists(output_path):
                    os.remove(output_path)

        cmd = build_video_only_args(quality, fps, spool.pattern, output_path, ffmpeg_path=ffmpeg)
        self.encoder.encode(cmd, total, on_frame)
        return False

    # -- public --------------------------------------------------------------
    def export(
        self,
        video: str,
        captions: Optional[Sequence[CaptionInput]],
        start_time: float,
        end_time: float,
        quality: str = DEFAULT_QUALITY,
        orientation: str = DEFAULT_ORIENTATION,
        clip_id: Optional[str] = None,
        on_progress: Optional[Callable[[int], None]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ExportResult:
        """
        Render and encode one trimmed clip with captions burned in.

        Args:
            video: Path or URL of the source video.
            captions: Ordered captions (absolute source times). List order is
                paint order: later captions draw on top.
            start_time / end_time: Trim window in source seconds.
            quality: Quality tier name (low, medium, high).
            orientation: portrait_zoom or landscape.
            clip_id: Identifier echoed in the result.
            on_progress: Called with integer progress 0-100.
            cancel: Token checked at every frame boundary.

        Returns:
            ExportResult holding the encoded MP4 bytes.

        Raises:
            ValidationError, ResourceLoadError, EncodeError,
            EmptyOutputError, ExportCancelled.
        """
        progress = ProgressReporter(on_progress)
        clip_id = clip_id or uuid.uuid4().hex[:12]

        source = None
        spool: Optional[FrameSpool] = None
        work_dir: Optional[str] = None
        result: Optional[ExportResult] = None

        with self.encoder.session():
            self._reset()
            try:
                self._transition(ExportState.PREPARING)
                progress.report(0)

                try:
                    trim = TrimWindow(float(start_time), float(end_time))
                except (TypeError, ValueError):
                    raise ValidationError(f"Invalid time range: {start_time!r} to {end_time!r}")
                _validate_request(video, trim)
                try:
                    tier = get_quality(quality)
                    profile = Orientation.parse(orientation)
                except ValueError as e:
                    raise ValidationError(str(e))
                items = coerce_captions(captions)
                self.encoder.ensure_available()

                info = self._load_media(video)
                source = self.source_factory(video)
                meta = source.open()
                if info.duration and trim.end_time > info.duration + 0.5:
                    logger.warning(f"Trim end {trim.end_time:.2f}s is past the source "
                                   f"duration ({info.duration:.2f}s)")

                fps = float(self.config.fps_override or tier.fps)
                total = frame_count(trim.duration, fps)
                clipped = clip_captions(items, trim)
                logger.info(
                    f"Exporting {clip_id}: {trim.start_time:.2f}-{trim.end_time:.2f}s, "
                    f"{total} frames @ {fps:g}fps, {tier.name}/{profile.value}, "
                    f"source {meta.width}x{meta.height}, {len(clipped)} captions"
                )

                self._transition(ExportState.RENDERING)
                spool = FrameSpool(self.config.image_format)
                self._render(source, clipped, trim, fps, total, profile, spool, progress, cancel)
                source.close()
                source = None
                if spool.count == 0:
                    raise EncodeError("No frames to encode")

                self._transition(ExportState.ENCODING)
                if cancel is not None:
                    cancel.raise_if_cancelled()
                work_dir = tempfile.mkdtemp(prefix="reelcut_export_")
                audio_path = self._extract_audio(video, info, trim, work_dir)
                output_path = os.path.join(work_dir, "output.mp4")
                has_audio = self._encode(tier, fps, spool, audio_path, output_path, total, progress)

                if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
                    raise EmptyOutputError("Exported video file is empty")
                with open(output_path, "rb") as f:
                    data = f.read()

                result = ExportResult(
                    clip_id=clip_id,
                    data=data,
                    duration=trim.duration,
                    file_size=len(data),
                    settings={
                        "start_time": trim.start_time,
                        "end_time": trim.end_time,
                        "quality": tier.name,
                        "orientation": profile.value,
                        "width": profile.output_size[0],
                        "height": profile.output_size[1],
                        "fps": fps,
                        "frame_count": total,
                        "has_audio": has_audio,
                        "encoder": tier.to_dict(),
                        "caption_styles": [c.style.to_dict() for c in clipped],
                    },
                )
            except ExportError as e:
                logger.error(f"Export {clip_id} failed: {e.message}")
                raise
            except (OSError, OverflowError, ValueError) as e:
                stage = self.state.value
                logger.error(f"Export {clip_id} failed while {stage}: {e}")
                if self.state == ExportState.ENCODING:
                    raise EncodeError(f"Encoding failed: {e}")
                raise ResourceLoadError(f"Export failed while {stage}: {e}")
            finally:
                self._transition(ExportState.CLEANING_UP)
                if source is not None:
                    source.close()
                if spool is not None and not self.config.keep_temp:
                    spool.cleanup()
                elif spool is not None:
                    logger.info(f"Keeping frame spool at {spool.directory}")
                if work_dir is not None:
                    shutil.rmtree(work_dir, ignore_errors=True)
                self._transition(ExportState.SUCCEEDED if result is not None else ExportState.FAILED)

        progress.report(100)
        logger.info(f"Export {clip_id} complete: {result.file_size / 1024 / 1024:.2f} MB, "
                    f"audio={'yes' if result.has_audio else 'no'}")
        return result


# ---------------------------------------------------------------------------
# Convenience entry points
# ---------------------------------------------------------------------------
_default_encoders: Dict[str, EncoderBackend] = {}
_default_lock = threading.Lock()


def get_default_encoder(config: Optional[ExportConfig] = None) -> EncoderBackend:
    """Process-wide encoder per ffmpeg binary."""
    config = config or ExportConfig()
    with _default_lock:
        encoder = _default_encoders.get(config.ffmpeg_path)
        if encoder is None:
            encoder = EncoderBackend(config.ffmpeg_path, timeout=config.encode_timeout)
            _default_encoders[config.ffmpeg_path] = encoder
        return encoder


def export_video(
    video: str,
    captions: Optional[Sequence[CaptionInput]],
    start_time: float,
    end_time: float,
    quality: str = DEFAULT_QUALITY,
    orientation: str = DEFAULT_ORIENTATION,
    clip_id: Optional[str] = None,
    on_progress: Optional[Callable[[int], None]] = None,
    cancel: Optional[CancelToken] = None,
    config: Optional[ExportConfig] = None,
    encoder: Optional[EncoderBackend] = None,
) -> ExportResult:
    """Export one clip using the shared default encoder."""
    config = config or ExportConfig()
    orchestrator = ExportOrchestrator(encoder or get_default_encoder(config), config)
    return orchestrator.export(video, captions, start_time, end_time,
                               quality=quality, orientation=orientation, clip_id=clip_id,
                               on_progress=on_progress, cancel=cancel)


def render_preview_frame(
    video: str,
    captions: Optional[Sequence[CaptionInput]],
    start_time: float,
    end_time: float,
    at: float = 0.0,
    orientation: str = DEFAULT_ORIENTATION,
    config: Optional[ExportConfig] = None,
    source_factory: Callable = VideoFrameSource,
) -> Image.Image:
    """
    Composite a single output frame at trim-relative time ``at``.

    Uses the same caption shift, renderer and compositor as the export, so
    the result matches the corresponding exported frame.
    """
    config = config or ExportConfig()
    trim = TrimWindow(float(start_time), float(end_time))
    _validate_request(video, trim)
    if not math.isfinite(at) or at < 0 or at > trim.duration:
        raise ValidationError(f"Preview time {at} is outside the clip (0-{trim.duration:g}s)")
    try:
        profile = Orientation.parse(orientation)
    except ValueError as e:
        raise ValidationError(str(e))

    clipped = clip_captions(coerce_captions(captions), trim)
    size = profile.output_size
    with source_factory(video) as source:
        frame = source.seek(trim.start_time + at, timeout=config.seek_timeout)
    overlay = render_overlay(clipped, at, size[0], size[1])
    return composite_frame(frame, overlay, profile, size)
