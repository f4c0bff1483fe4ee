"""
Frame source adapter.

Decodes the source video at arbitrary timestamps with OpenCV. One
VideoFrameSource owns exactly one decoder; seeking is stateful, so a source
must only ever be driven by one caller, one seek at a time.

Each seek runs on a single worker thread and is bounded by a timeout; a
stalled decoder surfaces as ResourceLoadError instead of hanging the export.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from .errors import ResourceLoadError

logger = logging.getLogger("reelcut")


@dataclass
class SourceMetadata:
    width: int
    height: int
    fps: float
    duration: float
    frame_count: int = 0


class VideoFrameSource:
    """Seekable decoder over a single video file or URL."""

    def __init__(self, path: str):
        self.path = path
        self.metadata: Optional[SourceMetadata] = None
        self._cap = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Optional[Future] = None
        self._last_frame: Optional[np.ndarray] = None
        self._lock = threading.Lock()

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def open(self) -> SourceMetadata:
        """Open the decoder and read metadata."""
        if self._cap is not None:
            return self.metadata

        cap = cv2.VideoCapture(self.path)
        if not cap.isOpened():
            cap.release()
            raise ResourceLoadError(f"Failed to load video: could not open '{self.path}'")

        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
        fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0)
        frame_count = int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        if width <= 0 or height <= 0:
            cap.release()
            raise ResourceLoadError(f"Failed to load video: '{self.path}' has no decodable video stream")

        duration = frame_count / fps if fps > 0 and frame_count > 0 else 0.0
        self._cap = cap
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="reelcut-seek")
        self.metadata = SourceMetadata(width=width, height=height, fps=fps,
                                       duration=duration, frame_count=frame_count)
        logger.debug(f"Opened {self.path}: {width}x{height} @ {fps:.3f}fps, {duration:.2f}s")
        return self.metadata

    def _seek_and_read(self, t: float) -> np.ndarray:
        with self._lock:
            if self._cap is None:
                raise ResourceLoadError("Frame source is closed")
            self._cap.set(cv2.CAP_PROP_POS_MSEC, max(0.0, t) * 1000.0)
            ok, frame = self._cap.read()
            if ok and frame is not None:
                self._last_frame = frame
                return frame
            if t >= self._last_frame_time():
                frame = self._tail_frame()
                if frame is not None:
                    logger.debug(f"Seek past last frame at {t:.3f}s, holding final frame")
                    return frame
        raise ResourceLoadError(f"Failed to decode frame at {t:.3f}s")

    def _last_frame_time(self) -> float:
        meta = self.metadata
        if meta is None or meta.fps <= 0 or meta.frame_count <= 0:
            return 0.0
        return (meta.frame_count - 1) / meta.fps

    def _tail_frame(self) -> Optional[np.ndarray]:
        """The final decodable frame. Caller holds the lock."""
        count = self.metadata.frame_count if self.metadata else 0
        # Container frame counts can overshoot; walk back a few frames
        for index in range(count - 1, max(count - 5, 0) - 1, -1):
            self._cap.set(cv2.CAP_PROP_POS_FRAMES, index)
            ok, frame = self._cap.read()
            if ok and frame is not None:
                self._last_frame = frame
                return frame
        return self._last_frame

    def seek(self, t: float, timeout: float = 5.0, settle: float = 0.0) -> np.ndarray:
        """
        Decode the frame shown at source time ``t`` (seconds).

        Times at or past the last frame hold the final decodable frame.

        Args:
            timeout: Seconds to wait for the seek before failing.
            settle: Pause after the seek completes, before returning.

        Raises:
            ResourceLoadError: on timeout or decode failure.
        """
        if self._executor is None:
            self.open()
        if self._pending is not None and not self._pending.done():
            raise ResourceLoadError("Previous seek is still in flight")

        self._pending = self._executor.submit(self._seek_and_read, t)
        try:
            frame = self._pending.result(timeout=timeout)
        except FutureTimeout:
            raise ResourceLoadError(f"Seek timeout at {t:.3f}s (>{timeout:g}s)")

        if settle > 0:
            time.sleep(settle)
        return frame

    def close(self):
        """Release the decoder. Waits for nothing: an in-flight read releases on exit."""
        executor, self._executor = self._executor, None
        pending, self._pending = self._pending, None

        def _release(_=None):
            with self._lock:
                if self._cap is not None:
                    self._cap.release()
                    self._cap = None

        if pending is not None and not pending.done():
            pending.add_done_callback(_release)
        else:
            _release()
        if executor is not None:
            executor.shutdown(wait=False)
