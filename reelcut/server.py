"""
ReelCut Export Server

Local HTTP service in front of the export pipeline. Runs on localhost:5680.

All exports share one EncoderBackend, whose lock serialises them: a second
export request waits until the running one has finished encoding.
"""

import io
import logging
import logging.handlers
import os
import shutil
import sys
import threading
import time
import uuid

from flask import Flask, Response, jsonify, request, send_file
from flask_cors import CORS

from . import __version__
from .core.encoder import EncoderBackend
from .core.errors import ExportCancelled, ExportError, ValidationError
from .core.export import CancelToken, ExportOrchestrator, render_preview_frame
from .utils.config import (
    DEFAULT_ORIENTATION,
    DEFAULT_QUALITY,
    ORIENTATIONS,
    QUALITY_TIERS,
    ExportConfig,
    get_preset,
)
from .utils.media import probe

logger = logging.getLogger("reelcut")

LOG_DIR = os.path.join(os.path.expanduser("~"), ".reelcut")
LOG_FILE = os.path.join(LOG_DIR, "server.log")

DEFAULT_PORT = 5680


# ---------------------------------------------------------------------------
# Logging Setup
# ---------------------------------------------------------------------------
def setup_logging():
    """Attach the rotating file log and console output (once)."""
    if getattr(logger, "_reelcut_configured", False):
        return
    os.makedirs(LOG_DIR, exist_ok=True)
    logger.setLevel(logging.DEBUG)

    file_handler = logging.handlers.RotatingFileHandler(
        LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    ))
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter("  %(message)s"))
    logger.addHandler(console_handler)
    logger._reelcut_configured = True


app = Flask(__name__)
CORS(app, origins=["*"])

encoder = EncoderBackend()


def make_orchestrator(config: ExportConfig) -> ExportOrchestrator:
    """One orchestrator per request; all of them share the encoder."""
    return ExportOrchestrator(encoder, config)


# ---------------------------------------------------------------------------
# Job tracking
# ---------------------------------------------------------------------------
jobs = {}
job_lock = threading.Lock()
JOB_MAX_AGE = 3600  # Auto-clean jobs older than 1 hour


def _new_job(job_type: str, video: str) -> str:
    job_id = str(uuid.uuid4())[:8]
    with job_lock:
        jobs[job_id] = {
            "id": job_id,
            "type": job_type,
            "video": video,
            "status": "running",
            "progress": 0,
            "message": "Starting...",
            "result": None,
            "error": None,
            "created": time.time(),
            "_thread": None,
            "_cancel": CancelToken(),
            "_data": None,
        }
    _cleanup_old_jobs()
    return job_id


def _update_job(job_id: str, **kwargs):
    with job_lock:
        if job_id in jobs:
            jobs[job_id].update(kwargs)


def _cleanup_old_jobs():
    """Remove finished jobs older than JOB_MAX_AGE."""
    now = time.time()
    with job_lock:
        expired = [
            jid for jid, j in jobs.items()
            if j["status"] in ("complete", "error", "cancelled")
            and (now - j["created"]) > JOB_MAX_AGE
        ]
        for jid in expired:
            del jobs[jid]


def _public(job: dict) -> dict:
    return {k: v for k, v in job.items() if not k.startswith("_")}


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------
def _field(data: dict, key: str, camel: str = None, default=None):
    if key in data:
        return data[key]
    if camel and camel in data:
        return data[camel]
    return default


def _number(data: dict, key: str, camel: str, required: bool = True, default=None):
    value = _field(data, key, camel, default)
    if value is None:
        if required:
            raise ValidationError(f"Missing '{camel}'")
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{camel}' must be a number, got {value!r}")


def _parse_export_request(data: dict) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    video = str(_field(data, "video", "filepath", "") or "").strip()
    captions = data.get("captions") or []
    if not isinstance(captions, list):
        raise ValidationError("'captions' must be a list")
    return {
        "video": video,
        "captions": captions,
        "start_time": _number(data, "start_time", "startTime"),
        "end_time": _number(data, "end_time", "endTime"),
        "quality": str(data.get("quality", DEFAULT_QUALITY)),
        "orientation": str(data.get("orientation", DEFAULT_ORIENTATION)),
        "clip_id": _field(data, "clip_id", "clipId"),
    }


def _config_for(data: dict) -> ExportConfig:
    name = data.get("preset") if isinstance(data, dict) else None
    if not name:
        return ExportConfig()
    try:
        return get_preset(str(name))
    except ValueError as e:
        raise ValidationError(str(e))


def _error_response(e: ExportError):
    status = 400 if isinstance(e, ValidationError) else 500
    return jsonify({"error": e.message, "type": type(e).__name__}), status


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.route("/health", methods=["GET"])
def health():
    return jsonify({
        "status": "ok",
        "version": __version__,
        "ffmpeg": shutil.which(encoder.ffmpeg_path) is not None,
        "encoder_busy": encoder.busy,
    })


@app.route("/tiers", methods=["GET"])
def list_tiers():
    return jsonify({
        "default": DEFAULT_QUALITY,
        "tiers": [t.to_dict() for t in QUALITY_TIERS.values()],
        "orientations": {k: {"width": w, "height": h} for k, (w, h) in ORIENTATIONS.items()},
    })


@app.route("/info", methods=["POST"])
def media_info():
    """Get media file metadata."""
    data = request.get_json(force=True, silent=True) or {}
    filepath = str(_field(data, "video", "filepath", "") or "").strip()
    if not filepath:
        return jsonify({"error": "No file path provided"}), 400

    try:
        info = probe(filepath)
    except FileNotFoundError as e:
        return jsonify({"error": str(e)}), 400
    except RuntimeError as e:
        return jsonify({"error": str(e)}), 500

    result = {
        "filename": info.filename,
        "duration": info.duration,
        "format": info.format_name,
    }
    if info.has_video:
        result["video"] = {
            "width": info.video.width,
            "height": info.video.height,
            "fps": info.video.fps,
            "codec": info.video.codec,
        }
    if info.has_audio:
        result["audio"] = {
            "sample_rate": info.audio.sample_rate,
            "channels": info.audio.channels,
            "codec": info.audio.codec,
        }
    return jsonify(result)


@app.route("/preview", methods=["POST"])
def preview_frame():
    """Composite one frame; body adds ``at`` (clip-relative seconds)."""
    data = request.get_json(force=True, silent=True)
    try:
        params = _parse_export_request(data)
        at = _number(data, "at", "at", required=False, default=0.0)
        image = render_preview_frame(
            params["video"], params["captions"], params["start_time"], params["end_time"],
            at=at, orientation=params["orientation"], config=_config_for(data),
        )
    except ExportError as e:
        return _error_response(e)

    buf = io.BytesIO()
    image.save(buf, "PNG")
    buf.seek(0)
    return send_file(buf, mimetype="image/png")


def _result_headers(result) -> dict:
    return {
        "X-Clip-Id": result.clip_id,
        "X-Duration": f"{result.duration:.3f}",
        "X-File-Size": str(result.file_size),
        "X-Has-Audio": "true" if result.has_audio else "false",
        "Content-Disposition": f'attachment; filename="{result.clip_id}.mp4"',
    }


@app.route("/export", methods=["POST"])
def export_clip():
    """Run an export and return the MP4 bytes in the response."""
    data = request.get_json(force=True, silent=True)
    try:
        params = _parse_export_request(data)
        result = make_orchestrator(_config_for(data)).export(**params)
    except ExportError as e:
        return _error_response(e)
    return Response(result.data, mimetype="video/mp4", headers=_result_headers(result))


@app.route("/export/start", methods=["POST"])
def start_export():
    """Start an export in the background; poll /status, fetch /download."""
    data = request.get_json(force=True, silent=True)
    try:
        params = _parse_export_request(data)
        config = _config_for(data)
    except ExportError as e:
        return _error_response(e)

    job_id = _new_job("export", params["video"])
    with job_lock:
        cancel = jobs[job_id]["_cancel"]

    def _on_progress(pct: int):
        _update_job(job_id, progress=pct, message=f"Exporting... {pct}%")

    def _process():
        try:
            result = make_orchestrator(config).export(**params, on_progress=_on_progress, cancel=cancel)
            _update_job(
                job_id,
                status="complete",
                progress=100,
                message="Done!",
                result={
                    "clip_id": result.clip_id,
                    "duration": result.duration,
                    "file_size": result.file_size,
                    "has_audio": result.has_audio,
                },
                _data=result.data,
            )
        except ExportCancelled:
            _update_job(job_id, status="cancelled", message="Cancelled by user")
        except ExportError as e:
            _update_job(job_id, status="error", error=e.message, message=f"Error: {e.message}")
        except Exception as e:
            logger.exception(f"Export job {job_id} crashed")
            _update_job(job_id, status="error", error=str(e), message=f"Error: {e}")

    thread = threading.Thread(target=_process, daemon=True)
    with job_lock:
        jobs[job_id]["_thread"] = thread
    thread.start()

    return jsonify({"job_id": job_id, "status": "running"})


@app.route("/status/<job_id>", methods=["GET"])
def job_status(job_id):
    """Check the status of an export job."""
    with job_lock:
        job = jobs.get(job_id)
        if not job:
            return jsonify({"error": "Job not found"}), 404
        return jsonify(_public(job))


@app.route("/cancel/<job_id>", methods=["POST"])
def cancel_job(job_id):
    """Cancel a running job at its next frame boundary."""
    with job_lock:
        job = jobs.get(job_id)
        if not job:
            return jsonify({"error": "Job not found"}), 404
        if job["status"] != "running":
            return jsonify({"error": "Job is not running"}), 400
        job["_cancel"].cancel()
        job["message"] = "Cancelling..."
    return jsonify({"status": "cancelling", "job_id": job_id})


@app.route("/download/<job_id>", methods=["GET"])
def download_job(job_id):
    with job_lock:
        job = jobs.get(job_id)
        if not job:
            return jsonify({"error": "Job not found"}), 404
        if job["status"] != "complete" or job["_data"] is None:
            return jsonify({"error": "Job has no output yet"}), 409
        data = job["_data"]
        clip_id = job["result"]["clip_id"]
    return Response(data, mimetype="video/mp4",
                    headers={"Content-Disposition": f'attachment; filename="{clip_id}.mp4"'})


@app.route("/jobs", methods=["GET"])
def list_jobs():
    """List all jobs."""
    with job_lock:
        return jsonify([_public(j) for j in jobs.values()])


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def run_server(host="127.0.0.1", port=DEFAULT_PORT, debug=False):
    """Start the ReelCut export server."""
    setup_logging()
    print("")
    print(f"  ReelCut Export Server v{__version__}")
    print(f"  Listening on http://{host}:{port}")
    print(f"  Log file: {LOG_FILE}")
    print("  Press Ctrl+C to stop")
    print("")
    logger.info(f"Server starting on http://{host}:{port} (pid={os.getpid()})")
    app.run(host=host, port=port, debug=debug, threaded=True)


def main():
    import argparse
    parser = argparse.ArgumentParser(description="ReelCut Export Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Port to listen on")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    args = parser.parse_args()
    run_server(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
