"""
SRT and VTT subtitle sidecars.

Writes the captions of an exported clip as a subtitle file on the clip's
own timeline, so the sidecar lines up with the MP4 the export produced.
"""

from dataclasses import dataclass
from typing import List, Sequence

from ..core.models import Caption, TrimWindow
from ..core.renderer import apply_text_transform


@dataclass
class SubtitleEntry:
    text: str
    start: float
    end: float


def caption_entries(captions: Sequence[Caption], trim: TrimWindow) -> List[SubtitleEntry]:
    """
    Visible captions shifted onto the trimmed timeline.

    Times are clamped to ``[0, duration]``; captions entirely outside the
    clip, hidden, or with blank text are dropped. Sorted by start time,
    ties keep list order.
    """
    duration = trim.duration
    entries = []
    for c in captions:
        if not c.is_visible or not c.text.strip():
            continue
        start = max(0.0, c.start_time - trim.start_time)
        end = min(duration, c.end_time - trim.start_time)
        if end <= start:
            continue
        text = apply_text_transform(c.text.strip(), c.style.text_transform)
        entries.append(SubtitleEntry(text=text, start=start, end=end))
    entries.sort(key=lambda e: e.start)
    return entries


def export_srt(
    captions: Sequence[Caption],
    trim: TrimWindow,
    output_path: str,
    max_line_length: int = 42,
    max_lines: int = 2,
) -> str:
    """
    Export clip captions as an SRT (SubRip) file.

    Args:
        captions: Captions with absolute source times.
        trim: The exported slice of the source.
        output_path: Output file path.
        max_line_length: Maximum characters per line.
        max_lines: Maximum lines per subtitle entry.

    Returns:
        Path to the generated SRT file.
    """
    lines = []
    for i, entry in enumerate(caption_entries(captions, trim), 1):
        lines.append(f"{i}")
        lines.append(f"{_format_srt_time(entry.start)} --> {_format_srt_time(entry.end)}")
        lines.append(_wrap_text(entry.text, max_line_length, max_lines))
        lines.append("")  # Blank line separator

    with open(output_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines))

    return output_path


def export_vtt(
    captions: Sequence[Caption],
    trim: TrimWindow,
    output_path: str,
    max_line_length: int = 42,
    max_lines: int = 2,
) -> str:
    """Export clip captions as a WebVTT file."""
    lines = ["WEBVTT", ""]
    for i, entry in enumerate(caption_entries(captions, trim), 1):
        lines.append(f"{i}")
        lines.append(f"{_format_vtt_time(entry.start)} --> {_format_vtt_time(entry.end)}")
        lines.append(_wrap_text(entry.text, max_line_length, max_lines))
        lines.append("")

    with open(output_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines))

    return output_path


def _split_time(seconds: float):
    total_ms = int(round(max(0.0, seconds) * 1000))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, millis = divmod(rem, 1000)
    return hours, minutes, secs, millis


def _format_srt_time(seconds: float) -> str:
    """Format seconds as SRT timecode: HH:MM:SS,mmm."""
    h, m, s, ms = _split_time(seconds)
    return f"{h:02d}:{m:02d}:{s:02d},{ms:03d}"


def _format_vtt_time(seconds: float) -> str:
    """Format seconds as VTT timecode: HH:MM:SS.mmm."""
    h, m, s, ms = _split_time(seconds)
    return f"{h:02d}:{m:02d}:{s:02d}.{ms:03d}"


def _wrap_text(text: str, max_line_length: int, max_lines: int) -> str:
    """Wrap text to fit within line length constraints."""
    if len(text) <= max_line_length:
        return text

    words = text.split()
    lines = []
    current_line = ""

    for word in words:
        test = (current_line + " " + word).strip()
        if len(test) > max_line_length and current_line:
            lines.append(current_line)
            current_line = word
            if len(lines) >= max_lines:
                break
        else:
            current_line = test

    if current_line and len(lines) < max_lines:
        lines.append(current_line)

    return "\n".join(lines)
