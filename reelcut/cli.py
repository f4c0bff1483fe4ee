"""
ReelCut CLI - Burn captions into trimmed clips from the command line.

Usage:
    reelcut export  input.mp4 captions.json --start 10 --end 25 -o clip.mp4
    reelcut preview input.mp4 captions.json --start 10 --end 25 --at 2.5
    reelcut info    input.mp4
    reelcut tiers
    reelcut server
"""

import os
import sys
import time

import click
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from . import __version__

console = Console()

BANNER = r"""
 ____           _  ____      _
|  _ \ ___  ___| |/ ___|   _| |_
| |_) / _ \/ _ \ | |  | | | | __|
|  _ <  __/  __/ | |__| |_| | |_
|_| \_\___|\___|_|\____\__,_|\__|
"""


def print_banner():
    console.print(Panel(
        BANNER + "  Caption compositing & export for short-form clips",
        style="bold cyan",
        box=box.ROUNDED,
        padding=(0, 2),
    ))


def _fail(message: str):
    console.print(f"\n[red bold]Error:[/red bold] [red]{message}[/red]\n")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="reelcut")
def cli():
    """ReelCut - Burn styled, animated captions into trimmed video clips."""
    pass


@cli.command()
@click.argument("input_file", type=str)
@click.argument("captions_file", type=click.Path(exists=True, dir_okay=False))
@click.option("-s", "--start", "start_time", type=float, required=True, help="Trim start in seconds")
@click.option("-e", "--end", "end_time", type=float, required=True, help="Trim end in seconds")
@click.option("-q", "--quality", type=click.Choice(["low", "medium", "high"]), default="medium", help="Quality tier (default: medium)")
@click.option("--orientation", type=click.Choice(["portrait_zoom", "landscape"]), default="portrait_zoom", help="Output orientation (default: portrait_zoom)")
@click.option("--clip-id", type=str, default=None, help="Identifier stored with the result")
@click.option("-o", "--output", type=click.Path(), default=None, help="Output MP4 path")
@click.option("--preset", type=click.Choice(["default", "fast_preview", "patient"]), default="default", help="Runtime preset")
@click.option("--srt", "write_srt", is_flag=True, help="Also write an SRT sidecar next to the MP4")
def export(input_file, captions_file, start_time, end_time, quality, orientation, clip_id, output, preset, write_srt):
    """Export a trimmed clip with captions burned in.

    CAPTIONS_FILE is a JSON list of captions (or {"captions": [...]}) with
    times on the source timeline. List order is paint order.
    """
    print_banner()

    from .core.errors import ExportError
    from .core.export import export_video
    from .core.models import TrimWindow, load_captions
    from .export.srt import export_srt
    from .utils.config import get_preset

    cfg = get_preset(preset)

    if output is None:
        base = os.path.splitext(os.path.basename(input_file))[0] or "clip"
        output = f"{base}_reelcut.mp4"

    console.print(f"\n[bold]Exporting:[/bold] {input_file}")
    console.print(f"[dim]Trim: {start_time:.2f}s - {end_time:.2f}s | Quality: {quality} | Orientation: {orientation} | Preset: {preset}[/dim]\n")

    try:
        captions = load_captions(captions_file)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed:>3.0f}%"),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Rendering frames...", total=100)

            def on_progress(pct: int):
                desc = "Rendering frames..." if pct < cfg.render_progress_cap else "Encoding..."
                progress.update(task, completed=pct, description=desc)

            started = time.time()
            result = export_video(
                input_file, captions, start_time, end_time,
                quality=quality, orientation=orientation, clip_id=clip_id,
                on_progress=on_progress, config=cfg,
            )
            elapsed = time.time() - started
            progress.update(task, completed=100, description=f"[green]Export complete ({elapsed:.1f}s)")
    except ExportError as e:
        _fail(e.message)

    result.save(output)
    _print_result(result, output)

    if write_srt:
        srt_path = os.path.splitext(output)[0] + ".srt"
        export_srt(captions, TrimWindow(start_time, end_time), srt_path)
        console.print(f"[bold]Captions saved:[/bold] {srt_path}")

    console.print(f"\n[green bold]Done![/green bold] {output}\n")


@cli.command()
@click.argument("input_file", type=str)
@click.argument("captions_file", type=click.Path(exists=True, dir_okay=False))
@click.option("-s", "--start", "start_time", type=float, required=True, help="Trim start in seconds")
@click.option("-e", "--end", "end_time", type=float, required=True, help="Trim end in seconds")
@click.option("--at", "at", type=float, default=0.0, help="Clip-relative time of the frame (default: 0)")
@click.option("--orientation", type=click.Choice(["portrait_zoom", "landscape"]), default="portrait_zoom", help="Output orientation")
@click.option("-o", "--output", type=click.Path(), default=None, help="Output PNG path")
def preview(input_file, captions_file, start_time, end_time, at, orientation, output):
    """Composite a single output frame to PNG."""
    from .core.errors import ExportError
    from .core.export import render_preview_frame
    from .core.models import load_captions

    if output is None:
        base = os.path.splitext(os.path.basename(input_file))[0] or "clip"
        output = f"{base}_preview_{at:.2f}.png"

    try:
        captions = load_captions(captions_file)
        image = render_preview_frame(input_file, captions, start_time, end_time,
                                     at=at, orientation=orientation)
    except ExportError as e:
        _fail(e.message)

    image.save(output, "PNG")
    console.print(f"[bold]Preview saved:[/bold] {output} ({image.width}x{image.height})")


@cli.command()
@click.argument("input_file", type=str)
def info(input_file):
    """Display media file information."""
    from .utils.media import probe

    try:
        media = probe(input_file)
    except (FileNotFoundError, RuntimeError) as e:
        _fail(str(e))

    table = Table(title=media.filename, box=box.ROUNDED, show_header=False, padding=(0, 2))
    table.add_column("Property", style="bold")
    table.add_column("Value", style="cyan")

    table.add_row("Duration", f"{media.duration:.3f}s")
    table.add_row("Format", media.format_name)
    if media.has_video:
        v = media.video
        w, h = v.display_size
        table.add_row("Resolution", f"{w}x{h}" + (f" (rotated {v.rotation})" if v.rotation else ""))
        table.add_row("Frame rate", f"{v.fps:.3f} fps")
        table.add_row("Video codec", v.codec)
    else:
        table.add_row("Video", "[red]none[/red]")
    if media.has_audio:
        a = media.audio
        table.add_row("Audio", f"{a.codec}, {a.sample_rate} Hz, {a.channels} ch")
    else:
        table.add_row("Audio", "[yellow]none (exports will be video-only)[/yellow]")

    console.print(table)


@cli.command()
def tiers():
    """List quality tiers."""
    from .utils.config import DEFAULT_QUALITY, QUALITY_TIERS

    table = Table(title="Quality Tiers", box=box.ROUNDED)
    table.add_column("Tier", style="bold")
    table.add_column("Video")
    table.add_column("Audio")
    table.add_column("Resolution", justify="right")
    table.add_column("FPS", justify="right")
    table.add_column("Preset / CRF")

    for name, t in QUALITY_TIERS.items():
        label = f"{name} (default)" if name == DEFAULT_QUALITY else name
        table.add_row(label, f"{t.video_codec} {t.video_bitrate}", f"{t.audio_codec} {t.audio_bitrate}",
                      t.resolution, str(t.fps), f"{t.preset} / {t.crf}")

    console.print(table)


def _print_result(result, output: str):
    """Print export summary table."""
    s = result.settings
    table = Table(title="Export Summary", box=box.ROUNDED, show_header=False, padding=(0, 2))
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right", style="cyan")

    table.add_row("Clip", result.clip_id)
    table.add_row("Duration", f"{result.duration:.2f}s")
    table.add_row("Frames", f"{s['frame_count']} @ {s['fps']:g} fps")
    table.add_row("Output", f"{s['width']}x{s['height']} ({s['orientation']})")
    table.add_row("Quality", s["quality"])
    table.add_row("Audio", "[green]yes[/green]" if result.has_audio else "[yellow]no[/yellow]")
    table.add_row("Size", f"{result.file_size / 1024 / 1024:.2f} MB")
    table.add_row("File", output)

    console.print(table)


@cli.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
@click.option("--port", type=int, default=5680, help="Port to listen on (default: 5680)")
@click.option("--debug", is_flag=True, help="Enable debug mode")
def server(host, port, debug):
    """Start the ReelCut export server."""
    from .server import run_server
    run_server(host=host, port=port, debug=debug)


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
