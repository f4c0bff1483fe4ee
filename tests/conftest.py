"""
Shared fixtures: generated test media and in-process fakes for the frame
source and encoder, so the orchestrator can be exercised without ffmpeg.
"""

import os
import shutil
import subprocess
import tempfile
import threading
from contextlib import contextmanager

import numpy as np
import pytest

requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg/ffprobe not installed",
)


# ---- Test media ----

def generate_test_video(output_path: str, duration: float = 6.0, with_audio: bool = True):
    """320x240 colour-bar video at 30fps, optionally with a sine tone."""
    cmd = [
        "ffmpeg", "-y", "-hide_banner", "-loglevel", "error",
        "-f", "lavfi", "-i", f"testsrc=size=320x240:rate=30:duration={duration}",
    ]
    if with_audio:
        cmd += ["-f", "lavfi", "-i", f"sine=frequency=440:duration={duration}"]
    cmd += ["-c:v", "libx264", "-preset", "ultrafast", "-crf", "28", "-pix_fmt", "yuv420p"]
    if with_audio:
        cmd += ["-c:a", "aac", "-b:a", "128k", "-shortest"]
    cmd.append(output_path)
    subprocess.run(cmd, check=True, timeout=60)


@pytest.fixture(scope="session")
def test_video():
    """A temporary test video with an audio track."""
    with tempfile.NamedTemporaryFile(suffix=".mp4", delete=False) as f:
        path = f.name
    generate_test_video(path)
    yield path
    os.unlink(path)


@pytest.fixture(scope="session")
def silent_video():
    """A temporary test video without any audio stream."""
    with tempfile.NamedTemporaryFile(suffix=".mp4", delete=False) as f:
        path = f.name
    generate_test_video(path, with_audio=False)
    yield path
    os.unlink(path)


@pytest.fixture(scope="session")
def low_fps_video():
    """2s at 10fps, written with OpenCV. Frame i is a flat grey of value i * 10."""
    import cv2

    with tempfile.NamedTemporaryFile(suffix=".avi", delete=False) as f:
        path = f.name
    writer = cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*"MJPG"), 10.0, (160, 120))
    if not writer.isOpened():
        os.unlink(path)
        pytest.skip("OpenCV cannot write MJPG video")
    for i in range(20):
        writer.write(np.full((120, 160, 3), i * 10, dtype=np.uint8))
    writer.release()
    yield path
    os.unlink(path)


# ---- Fakes ----

class FakeFrameSource:
    """Solid-colour frames; records every seek."""

    def __init__(self, path, width=320, height=180, color=(0, 0, 255), fail_at=None, on_seek=None):
        self.path = path
        self.width = width
        self.height = height
        self.color = color
        self.fail_at = fail_at
        self.on_seek = on_seek
        self.seeks = []
        self.opened = False
        self.closed = False

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def open(self):
        from reelcut.core.frame_source import SourceMetadata
        self.opened = True
        return SourceMetadata(width=self.width, height=self.height, fps=30.0,
                              duration=60.0, frame_count=1800)

    def seek(self, t, timeout=5.0, settle=0.0):
        from reelcut.core.errors import ResourceLoadError
        self.seeks.append(t)
        if self.on_seek is not None:
            self.on_seek(len(self.seeks))
        if self.fail_at is not None and len(self.seeks) > self.fail_at:
            raise ResourceLoadError(f"Seek timeout at {t:.3f}s")
        frame = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        frame[:, :] = self.color
        return frame

    def close(self):
        self.closed = True


class FakeEncoder:
    """Stands in for EncoderBackend; writes placeholder output bytes."""

    ffmpeg_path = "ffmpeg"

    def __init__(self, audio_fails=False, with_audio_fails=False, video_fails=False, empty_output=False,
                 missing=False):
        self.audio_fails = audio_fails
        self.with_audio_fails = with_audio_fails
        self.video_fails = video_fails
        self.empty_output = empty_output
        self.missing = missing
        self.audio_calls = []
        self.calls = []
        self.spool_dirs = []
        self.spool_sizes = []
        self._lock = threading.Lock()

    @property
    def busy(self):
        return self._lock.locked()

    @contextmanager
    def session(self):
        with self._lock:
            yield self

    def ensure_available(self):
        from reelcut.core.errors import EncodeError
        if self.missing:
            raise EncodeError("FFmpeg not found. Install it and make sure it is on PATH.")

    def extract_audio(self, source, start, duration, output_path, bitrate="128k"):
        from reelcut.core.errors import AudioExtractionError
        self.audio_calls.append((source, start, duration, bitrate))
        if self.audio_fails:
            raise AudioExtractionError("Audio extraction failed: no audio stream")
        with open(output_path, "wb") as f:
            f.write(b"AAC")
        return output_path

    def encode(self, cmd, total_frames=0, on_frame=None):
        from reelcut.core.errors import EncodeError
        self.calls.append(list(cmd))
        spool_dir = os.path.dirname(cmd[cmd.index("-i") + 1])
        self.spool_dirs.append(spool_dir)
        self.spool_sizes.append(len(os.listdir(spool_dir)))

        with_audio = "-shortest" in cmd
        if with_audio and self.with_audio_fails:
            raise EncodeError("FFmpeg failed (exit 1): audio mux error")
        if not with_audio and self.video_fails:
            raise EncodeError("FFmpeg failed (exit 1): encoder error")

        if on_frame is not None:
            for n in (total_frames // 2, total_frames):
                on_frame(n)
        with open(cmd[-1], "wb") as f:
            f.write(b"" if self.empty_output else b"\x00\x00\x00\x18ftypmp42FAKE")


def fake_prober(has_audio=True, fails=False):
    from reelcut.utils.media import AudioStream, MediaInfo, VideoStream

    def _probe(path, ffprobe_path="ffprobe", timeout=30):
        if fails:
            raise RuntimeError(f"ffprobe failed on '{path}'")
        return MediaInfo(
            path=path,
            filename=os.path.basename(path),
            duration=60.0,
            format_name="mov,mp4",
            video=VideoStream(width=320, height=180, fps=30.0, duration=60.0),
            audio=AudioStream() if has_audio else None,
        )

    return _probe


class SourceRecorder:
    """Frame source factory that remembers every source it built."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.sources = []

    def __call__(self, path):
        source = FakeFrameSource(path, **self.kwargs)
        self.sources.append(source)
        return source


@pytest.fixture
def make_orchestrator():
    """Build an orchestrator wired to fakes. Returns (orchestrator, encoder, sources)."""
    from reelcut.core.export import ExportOrchestrator
    from reelcut.utils.config import ExportConfig

    def _make(encoder=None, has_audio=True, probe_fails=False, fps=5, config=None, **source_kwargs):
        encoder = encoder or FakeEncoder()
        sources = SourceRecorder(**source_kwargs)
        cfg = config or ExportConfig(settle_delay=0.0, fps_override=fps, image_format="JPEG")
        orch = ExportOrchestrator(encoder, cfg, source_factory=sources,
                                  prober=fake_prober(has_audio=has_audio, fails=probe_fails))
        return orch, encoder, sources

    return _make


@pytest.fixture
def sample_captions():
    return [
        {
            "id": "c1",
            "text": "the quick fox",
            "startTime": 10.5,
            "endTime": 12.0,
            "position": {"x": 540, "y": 1500},
            "style": {"fontSize": 48, "color": "#ffffff", "backgroundColor": "rgba(0,0,0,0.6)",
                      "padding": {"top": 8, "right": 16, "bottom": 8, "left": 16},
                      "keywordHighlights": [{"text": "quick", "color": "#ffcc00"}]},
        },
        {
            "id": "c2",
            "text": "jumps over",
            "startTime": 12.0,
            "endTime": 14.0,
            "style": {"fontSize": 56, "animation": {"type": "fade", "duration": 0.5}},
        },
        {
            "id": "c3",
            "text": "hidden",
            "startTime": 11.0,
            "endTime": 13.0,
            "isVisible": False,
        },
        {
            "id": "c4",
            "text": "before the clip",
            "startTime": 2.0,
            "endTime": 4.0,
        },
    ]
