"""
Tests for the encoder backend and the export orchestrator.

The orchestrator runs against in-process fakes (see conftest.py) so the
state machine, progress, audio recovery and fallback paths are covered
without ffmpeg.
"""

import os
import shutil
import threading
import time

import pytest

from conftest import FakeEncoder


# ---- Encoder argument profiles ----

class TestEncoderArgs:
    def _tier(self, name="medium"):
        from reelcut.utils.config import get_quality
        return get_quality(name)

    def test_with_audio_profile(self):
        from reelcut.core.encoder import build_with_audio_args
        cmd = build_with_audio_args(self._tier(), 30, "/tmp/f/frame_%06d.png", "/tmp/a.aac", "/tmp/out.mp4")
        assert cmd[0] == "ffmpeg"
        assert cmd[-1] == "/tmp/out.mp4"
        assert cmd[cmd.index("-framerate") + 1] == "30"
        inputs = [cmd[i + 1] for i, a in enumerate(cmd) if a == "-i"]
        assert inputs == ["/tmp/f/frame_%06d.png", "/tmp/a.aac"]
        assert cmd[cmd.index("-c:v") + 1] == "libx264"
        assert cmd[cmd.index("-c:a") + 1] == "aac"
        assert cmd[cmd.index("-b:v") + 1] == "2M"
        assert cmd[cmd.index("-b:a") + 1] == "128k"
        assert cmd[cmd.index("-r") + 1] == "30"
        assert cmd[cmd.index("-pix_fmt") + 1] == "yuv420p"
        assert "-shortest" in cmd
        assert "-y" in cmd

    def test_video_only_profile(self):
        from reelcut.core.encoder import build_video_only_args
        cmd = build_video_only_args(self._tier("high"), 24, "/tmp/f/frame_%06d.png", "/tmp/out.mp4")
        inputs = [cmd[i + 1] for i, a in enumerate(cmd) if a == "-i"]
        assert inputs == ["/tmp/f/frame_%06d.png"]
        assert "-shortest" not in cmd
        assert "-c:a" not in cmd
        assert "-an" in cmd
        assert cmd[cmd.index("-b:v") + 1] == "4M"
        assert cmd[cmd.index("-crf") + 1] == "18"
        assert cmd[cmd.index("-preset") + 1] == "slow"

    def test_profiles_are_deterministic(self):
        from reelcut.core.encoder import build_with_audio_args
        a = build_with_audio_args(self._tier(), 30, "p", "a", "o")
        b = build_with_audio_args(self._tier(), 30, "p", "a", "o")
        assert a == b

    def test_fractional_fps(self):
        from reelcut.core.encoder import build_video_only_args
        cmd = build_video_only_args(self._tier(), 29.97, "p", "o")
        assert cmd[cmd.index("-framerate") + 1] == "29.97"

    def test_double_rate(self):
        from reelcut.core.encoder import _double_rate
        assert _double_rate("2M") == "4M"
        assert _double_rate("1.5M") == "3M"
        assert _double_rate("128k") == "256k"
        assert _double_rate("weird") == "weird"

    def test_audio_extract_args(self):
        from reelcut.core.encoder import build_audio_extract_args
        cmd = build_audio_extract_args("in.mp4", 10.0, 5.0, "audio.aac")
        assert cmd[cmd.index("-ss") + 1] == "10.000"
        assert cmd[cmd.index("-t") + 1] == "5.000"
        assert "-vn" in cmd
        assert cmd[cmd.index("-acodec") + 1] == "aac"
        assert cmd[cmd.index("-b:a") + 1] == "128k"
        assert cmd[-1] == "audio.aac"


# ---- Frame spool ----

class TestFrameSpool:
    def test_write_in_order(self):
        from PIL import Image
        from reelcut.core.encoder import FrameSpool
        spool = FrameSpool()
        try:
            img = Image.new("RGB", (8, 8), (255, 0, 0))
            spool.write(0, img)
            spool.write(1, img)
            assert spool.count == 2
            assert os.path.isfile(spool.path_for(0))
            assert os.path.isfile(spool.pattern % 1)
            assert spool.bytes_written > 0
        finally:
            spool.cleanup()
        assert not os.path.isdir(spool.directory)

    def test_out_of_order_rejected(self):
        from PIL import Image
        from reelcut.core.encoder import FrameSpool
        spool = FrameSpool()
        try:
            with pytest.raises(ValueError):
                spool.write(1, Image.new("RGB", (4, 4)))
        finally:
            spool.cleanup()

    def test_jpeg_pattern(self):
        from reelcut.core.encoder import FrameSpool
        spool = FrameSpool("jpeg")
        try:
            assert spool.pattern.endswith("frame_%06d.jpg")
        finally:
            spool.cleanup()

    def test_unknown_format(self):
        from reelcut.core.encoder import FrameSpool
        with pytest.raises(ValueError):
            FrameSpool("TIFF")


# ---- Encoder lock ----

class TestEncoderSession:
    def test_session_marks_busy(self):
        from reelcut.core.encoder import EncoderBackend
        enc = EncoderBackend()
        assert not enc.busy
        with enc.session():
            assert enc.busy
        assert not enc.busy

    def test_second_session_waits(self):
        from reelcut.core.encoder import EncoderBackend
        enc = EncoderBackend()
        order = []
        entered = threading.Event()

        def first():
            with enc.session():
                entered.set()
                time.sleep(0.2)
                order.append("first-done")

        def second():
            entered.wait(2)
            with enc.session():
                order.append("second-in")

        t1 = threading.Thread(target=first)
        t2 = threading.Thread(target=second)
        t1.start()
        t2.start()
        t1.join(5)
        t2.join(5)
        assert order == ["first-done", "second-in"]

    def test_missing_binary(self):
        from reelcut.core.encoder import EncoderBackend
        from reelcut.core.errors import EncodeError
        enc = EncoderBackend(ffmpeg_path="/nonexistent/ffmpeg-binary")
        with pytest.raises(EncodeError, match="FFmpeg not found"):
            enc.ensure_available()

    def test_encode_start_failure(self):
        from reelcut.core.encoder import EncoderBackend
        from reelcut.core.errors import EncodeError
        enc = EncoderBackend(ffmpeg_path="/nonexistent/ffmpeg-binary")
        with pytest.raises(EncodeError):
            enc.encode(["/nonexistent/ffmpeg-binary", "-version"])

    @pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")
    def test_frame_progress_streams(self):
        from reelcut.core.encoder import EncoderBackend
        # Stats lines arrive well before the process exits
        script = "printf 'frame=    5 fps=0.0\\r' >&2; sleep 1; printf 'frame=   10 fps=0.0\\r' >&2"
        start = time.monotonic()
        seen = []
        EncoderBackend().encode(["sh", "-c", script], total_frames=10,
                                on_frame=lambda n: seen.append((n, time.monotonic() - start)))
        assert [n for n, _ in seen] == [5, 10]
        assert seen[0][1] < 0.8


# ---- Progress / cancellation primitives ----

class TestProgressReporter:
    def test_drops_regressions(self):
        from reelcut.core.export import ProgressReporter
        seen = []
        p = ProgressReporter(seen.append)
        for v in (0, 10, 5, 10, 40.4, 120):
            p.report(v)
        assert seen == [0, 10, 40, 100]

    def test_rounds_half_up(self):
        from reelcut.core.export import ProgressReporter
        seen = []
        p = ProgressReporter(seen.append)
        for v in (0.5, 8.5, 9.4, 10.5):
            p.report(v)
        assert seen == [1, 9, 11]

    def test_cancel_token(self):
        from reelcut.core.errors import ExportCancelled
        from reelcut.core.export import CancelToken
        token = CancelToken()
        token.raise_if_cancelled()
        token.cancel()
        assert token.cancelled
        with pytest.raises(ExportCancelled):
            token.raise_if_cancelled()


class TestHelpers:
    def test_frame_count(self):
        from reelcut.core.export import frame_count
        assert frame_count(5.0, 10) == 50
        assert frame_count(5.0, 30) == 150
        assert frame_count(0.05, 30) == 2
        assert frame_count(1.0 / 3.0, 3) == 1

    def test_clip_captions_shift_and_filter(self, sample_captions):
        from reelcut.core.export import clip_captions, coerce_captions
        from reelcut.core.models import TrimWindow
        clipped = clip_captions(coerce_captions(sample_captions), TrimWindow(10.0, 15.0))
        # c4 ends before the clip starts; hidden c3 is kept (filtered at render time)
        assert [c.id for c in clipped] == ["c1", "c2", "c3"]
        assert clipped[0].start_time == pytest.approx(0.5)
        assert clipped[0].end_time == pytest.approx(2.0)

    def test_caption_ending_at_clip_start_dropped(self):
        from reelcut.core.export import clip_captions
        from reelcut.core.models import Caption, TrimWindow
        c = Caption(id="x", text="x", start_time=5.0, end_time=10.0)
        assert clip_captions([c], TrimWindow(10.0, 12.0)) == []

    def test_caption_starting_at_clip_end_dropped(self):
        from reelcut.core.export import clip_captions
        from reelcut.core.models import Caption, TrimWindow
        c = Caption(id="x", text="x", start_time=12.0, end_time=13.0)
        assert clip_captions([c], TrimWindow(10.0, 12.0)) == []


# ---- Orchestrator ----

class TestOrchestrator:
    def test_frame_schedule(self, make_orchestrator, sample_captions):
        orch, enc, sources = make_orchestrator(fps=10)
        result = orch.export("clip.mp4", sample_captions, 10.0, 15.0)
        seeks = sources.sources[0].seeks
        assert len(seeks) == 50
        assert seeks[0] == pytest.approx(10.0)
        assert seeks[49] == pytest.approx(14.9)
        assert result.settings["frame_count"] == 50
        assert enc.spool_sizes == [50]

    def test_success_result(self, make_orchestrator, sample_captions):
        orch, enc, sources = make_orchestrator()
        result = orch.export("clip.mp4", sample_captions, 10.0, 12.0, quality="high",
                             orientation="landscape", clip_id="clip-1")
        assert result.clip_id == "clip-1"
        assert result.duration == pytest.approx(2.0)
        assert result.file_size == len(result.data) > 0
        assert result.has_audio
        s = result.settings
        assert s["start_time"] == 10.0 and s["end_time"] == 12.0
        assert s["quality"] == "high"
        assert (s["width"], s["height"]) == (1920, 1080)
        assert len(s["caption_styles"]) == 3
        assert len(enc.calls) == 1
        assert "-shortest" in enc.calls[0]
        assert enc.audio_calls[0][1:3] == (10.0, 2.0)

    def test_state_history(self, make_orchestrator):
        from reelcut.core.export import ExportState
        orch, _, _ = make_orchestrator()
        orch.export("clip.mp4", [], 0.0, 1.0)
        assert orch.history == [
            ExportState.IDLE, ExportState.PREPARING, ExportState.RENDERING,
            ExportState.ENCODING, ExportState.CLEANING_UP, ExportState.SUCCEEDED,
        ]
        assert orch.state == ExportState.SUCCEEDED

    def test_orchestrator_reusable(self, make_orchestrator):
        from reelcut.core.export import ExportState
        orch, enc, _ = make_orchestrator()
        orch.export("clip.mp4", [], 0.0, 1.0)
        orch.export("clip.mp4", [], 1.0, 2.0)
        assert orch.state == ExportState.SUCCEEDED
        assert len(enc.calls) == 2

    def test_progress_monotonic(self, make_orchestrator):
        orch, _, _ = make_orchestrator()
        seen = []
        orch.export("clip.mp4", [], 0.0, 2.0, on_progress=seen.append)
        assert seen == sorted(seen)
        assert all(isinstance(v, int) for v in seen)
        assert seen[0] == 0
        assert seen[-1] == 100
        assert 85 in seen
        assert max(v for v in seen if v < 100) <= 95

    def test_audio_failure_yields_video_only(self, make_orchestrator):
        orch, enc, _ = make_orchestrator(encoder=FakeEncoder(audio_fails=True))
        result = orch.export("clip.mp4", [], 0.0, 1.0)
        assert result.file_size > 0
        assert not result.has_audio
        assert len(enc.calls) == 1
        assert "-shortest" not in enc.calls[0]
        assert "-an" in enc.calls[0]

    def test_source_without_audio_skips_extraction(self, make_orchestrator):
        orch, enc, _ = make_orchestrator(has_audio=False)
        result = orch.export("clip.mp4", [], 0.0, 1.0)
        assert enc.audio_calls == []
        assert not result.has_audio

    def test_with_audio_failure_falls_back_once(self, make_orchestrator):
        orch, enc, _ = make_orchestrator(encoder=FakeEncoder(with_audio_fails=True))
        result = orch.export("clip.mp4", [], 0.0, 1.0)
        assert len(enc.calls) == 2
        assert "-shortest" in enc.calls[0]
        assert "-shortest" not in enc.calls[1]
        # Fallback reuses the same spooled frames
        assert enc.spool_dirs[0] == enc.spool_dirs[1]
        assert enc.spool_sizes == [5, 5]
        assert not result.has_audio

    def test_video_only_failure_is_fatal(self, make_orchestrator):
        from reelcut.core.errors import EncodeError
        from reelcut.core.export import ExportState
        orch, enc, _ = make_orchestrator(encoder=FakeEncoder(with_audio_fails=True, video_fails=True))
        with pytest.raises(EncodeError):
            orch.export("clip.mp4", [], 0.0, 1.0)
        assert len(enc.calls) == 2
        assert orch.state == ExportState.FAILED

    def test_empty_output(self, make_orchestrator):
        from reelcut.core.errors import EmptyOutputError
        from reelcut.core.export import ExportState
        orch, _, _ = make_orchestrator(encoder=FakeEncoder(empty_output=True))
        with pytest.raises(EmptyOutputError, match="empty"):
            orch.export("clip.mp4", [], 0.0, 1.0)
        assert orch.state == ExportState.FAILED

    def test_cleanup_after_success(self, make_orchestrator):
        orch, enc, sources = make_orchestrator()
        orch.export("clip.mp4", [], 0.0, 1.0)
        assert not os.path.isdir(enc.spool_dirs[0])
        assert sources.sources[0].closed

    def test_seek_failure(self, make_orchestrator):
        from reelcut.core.errors import ResourceLoadError
        from reelcut.core.export import ExportState
        orch, enc, sources = make_orchestrator(fail_at=2)
        with pytest.raises(ResourceLoadError, match="Seek timeout"):
            orch.export("clip.mp4", [], 0.0, 1.0)
        assert enc.calls == []
        assert sources.sources[0].closed
        assert orch.state == ExportState.FAILED

    def test_metadata_failure(self, make_orchestrator):
        from reelcut.core.errors import ResourceLoadError
        orch, enc, sources = make_orchestrator(probe_fails=True)
        with pytest.raises(ResourceLoadError, match="metadata"):
            orch.export("clip.mp4", [], 0.0, 1.0)
        assert sources.sources == []
        assert enc.calls == []

    def test_cancellation(self, make_orchestrator):
        from reelcut.core.errors import ExportCancelled
        from reelcut.core.export import CancelToken, ExportState
        token = CancelToken()

        def on_seek(n):
            if n == 3:
                token.cancel()

        orch, enc, sources = make_orchestrator(on_seek=on_seek)
        with pytest.raises(ExportCancelled):
            orch.export("clip.mp4", [], 0.0, 2.0, cancel=token)
        assert len(sources.sources[0].seeks) == 3
        assert sources.sources[0].closed
        assert enc.calls == []
        assert orch.state == ExportState.FAILED
        assert ExportState.ENCODING not in orch.history

    def test_deterministic(self, make_orchestrator, sample_captions):
        from reelcut.core.export import clip_captions, coerce_captions
        from reelcut.core.models import TrimWindow
        from reelcut.core.renderer import eligible_captions

        runs = []
        for _ in range(2):
            orch, enc, sources = make_orchestrator(fps=4)
            result = orch.export("clip.mp4", sample_captions, 10.0, 15.0)
            runs.append((result.settings["frame_count"], sources.sources[0].seeks))
        assert runs[0] == runs[1]

        clipped = clip_captions(coerce_captions(sample_captions), TrimWindow(10.0, 15.0))
        visible = [[c.id for c in eligible_captions(clipped, i / 4)] for i in range(20)]
        again = [[c.id for c in eligible_captions(clipped, i / 4)] for i in range(20)]
        assert visible == again
        assert visible[0] == []           # t=0.0, c1 starts at 0.5
        assert visible[2] == ["c1"]       # t=0.5
        assert visible[8] == ["c1", "c2"]  # t=2.0, both inclusive endpoints

    @pytest.mark.parametrize("start,end,match", [
        (15.0, 10.0, "Invalid time range"),
        (10.0, 10.0, "Invalid time range"),
        (-1.0, 5.0, "Invalid start time"),
        (float("nan"), 5.0, "must be finite"),
        (0.0, float("inf"), "must be finite"),
        (float("-inf"), 1.0, "must be finite"),
        ("soon", 5.0, "Invalid time range"),
    ])
    def test_invalid_trim(self, make_orchestrator, start, end, match):
        from reelcut.core.errors import ValidationError
        orch, enc, sources = make_orchestrator()
        with pytest.raises(ValidationError, match=match):
            orch.export("clip.mp4", [], start, end)
        assert sources.sources == []
        assert enc.calls == []

    def test_missing_video(self, make_orchestrator):
        from reelcut.core.errors import ValidationError
        orch, _, _ = make_orchestrator()
        with pytest.raises(ValidationError):
            orch.export("", [], 0.0, 1.0)

    def test_unknown_quality(self, make_orchestrator):
        from reelcut.core.errors import ValidationError
        orch, _, _ = make_orchestrator()
        with pytest.raises(ValidationError, match="quality"):
            orch.export("clip.mp4", [], 0.0, 1.0, quality="ultra")

    def test_encoder_released_after_failure(self, make_orchestrator):
        from reelcut.core.errors import ValidationError
        orch, enc, _ = make_orchestrator()
        with pytest.raises(ValidationError):
            orch.export("clip.mp4", [], 5.0, 1.0)
        assert not enc.busy

    def test_missing_ffmpeg_fails_before_rendering(self, make_orchestrator):
        from reelcut.core.errors import EncodeError
        from reelcut.core.export import ExportState
        orch, enc, sources = make_orchestrator(encoder=FakeEncoder(missing=True))
        with pytest.raises(EncodeError, match="FFmpeg not found"):
            orch.export("clip.mp4", [], 0.0, 1.0)
        assert sources.sources == []
        assert ExportState.RENDERING not in orch.history
        assert orch.state == ExportState.FAILED

    def test_spool_write_error_is_typed(self, make_orchestrator, monkeypatch):
        from reelcut.core.encoder import FrameSpool
        from reelcut.core.errors import ResourceLoadError
        from reelcut.core.export import ExportState

        def full_disk(self, index, image):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(FrameSpool, "write", full_disk)
        orch, enc, sources = make_orchestrator()
        with pytest.raises(ResourceLoadError, match="No space left"):
            orch.export("clip.mp4", [], 0.0, 1.0)
        assert enc.calls == []
        assert sources.sources[0].closed
        assert orch.state == ExportState.FAILED

    def test_encoder_os_error_is_typed(self, make_orchestrator, monkeypatch):
        from reelcut.core.errors import EncodeError
        orch, enc, _ = make_orchestrator(has_audio=False)

        def broken_pipe(cmd, total_frames=0, on_frame=None):
            raise OSError(32, "Broken pipe")

        monkeypatch.setattr(enc, "encode", broken_pipe)
        with pytest.raises(EncodeError, match="Broken pipe"):
            orch.export("clip.mp4", [], 0.0, 1.0)

    def test_state_reentry_raises(self, make_orchestrator):
        from reelcut.core.export import ExportState
        orch, _, _ = make_orchestrator()
        orch._transition(ExportState.PREPARING)
        with pytest.raises(RuntimeError, match="entered twice"):
            orch._transition(ExportState.PREPARING)

    def test_waiting_export_keeps_running_history(self, make_orchestrator):
        from reelcut.core.export import ExportState
        orch, enc, _ = make_orchestrator()
        orch.export("clip.mp4", [], 0.0, 1.0)
        finished = list(orch.history)

        with enc.session():
            waiter = threading.Thread(target=orch.export, args=("clip.mp4", [], 1.0, 2.0))
            waiter.start()
            time.sleep(0.2)
            # Blocked on the encoder: the previous run's record is untouched
            assert orch.history == finished
            assert orch.state == ExportState.SUCCEEDED
        waiter.join(10)
        assert not waiter.is_alive()
        assert orch.state == ExportState.SUCCEEDED
        assert len(enc.calls) == 2


class TestPreviewFrame:
    def test_preview_size_and_source_time(self, sample_captions):
        from conftest import SourceRecorder
        from reelcut.core.export import render_preview_frame
        sources = SourceRecorder()
        image = render_preview_frame("clip.mp4", sample_captions, 10.0, 15.0, at=1.0,
                                     source_factory=sources)
        assert image.size == (1080, 1920)
        assert image.mode == "RGB"
        assert sources.sources[0].seeks == [pytest.approx(11.0)]
        assert sources.sources[0].closed

    def test_preview_outside_clip(self):
        from conftest import SourceRecorder
        from reelcut.core.errors import ValidationError
        from reelcut.core.export import render_preview_frame
        with pytest.raises(ValidationError):
            render_preview_frame("clip.mp4", [], 10.0, 15.0, at=6.0, source_factory=SourceRecorder())
