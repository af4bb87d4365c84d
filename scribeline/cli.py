"""
scribeline.cli - Typer CLI entry point.

Provides the init, transcribe and doctor subcommands.
"""

from __future__ import annotations

import signal
import tempfile
import threading
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from scribeline import __version__
from scribeline.config import CONFIG_FILENAME, create_default_config, load_config, write_config
from scribeline.logging import configure_logging
from scribeline.models import JobState
from scribeline.utils import format_duration

app = typer.Typer(
    name="scribeline",
    help="Batch transcription of audio and video files.\n\n"
    "Extracts audio from damaged or unusual video containers, runs a local "
    "Whisper CLI under supervision, and attributes segments to speakers.",
    add_completion=False,
)
console = Console()

STATE_STYLES = {
    JobState.COMPLETED: "[green]✓ Completed[/green]",
    JobState.PARTIAL: "[yellow]✓ Partial[/yellow]",
    JobState.FAILED: "[red]✗ Failed[/red]",
    JobState.TIMED_OUT: "[red]✗ Timed out[/red]",
    JobState.CANCELLED: "[dim]Cancelled[/dim]",
}


def version_callback(value: bool) -> None:
    if value:
        console.print(f"scribeline {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """Scribeline - batch transcription with Whisper."""
    pass


@app.command("init")
def init_config(
    path: str = typer.Option(".", "--path", "-d", help="Directory to write scribeline.yaml in"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing config"),
) -> None:
    """Write a default scribeline.yaml."""
    config_path = Path(path) / CONFIG_FILENAME

    if config_path.exists() and not force:
        console.print(f"[red]Error: '{config_path}' already exists (use --force to overwrite)[/red]")
        raise typer.Exit(1)

    try:
        write_config(create_default_config(), config_path)
    except OSError as e:
        console.print(f"[red]Error writing config: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Created {config_path}")
    console.print("\nNext step: [cyan]scribeline transcribe <files or folders>[/cyan]")


@app.command("transcribe")
def transcribe(
    paths: list[Path] = typer.Argument(..., help="Audio/video files or directories"),
    language: str | None = typer.Option(None, "--language", "-l", help="Language code or 'auto'"),
    model: str | None = typer.Option(
        None, "--model", "-m", help="Model: auto, tiny, base, small, medium, large-v3, custom"
    ),
    model_path: Path | None = typer.Option(None, "--model-path", help="Local model folder"),
    diarize: bool | None = typer.Option(
        None, "--diarize/--no-diarize", help="Attribute segments to speakers"
    ),
    timeout: float | None = typer.Option(None, "--timeout", "-t", help="Per-file timeout in seconds"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write results as JSON"),
    config_file: Path | None = typer.Option(None, "--config", "-c", help="Path to scribeline.yaml"),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
) -> None:
    """Transcribe files one after another. Ctrl-C cancels the batch."""
    from scribeline.batch import BatchOrchestrator
    from scribeline.exceptions import ConfigError
    from scribeline.io import write_batch_results
    from scribeline.media import expand_sources

    configure_logging(verbose)

    overrides = {
        "language": language,
        "model": model,
        "model_path": model_path,
        "job_timeout_seconds": timeout,
        "diarization": {"enabled": diarize},
    }
    if model_path is not None and model is None:
        overrides["model"] = "custom"

    try:
        config = load_config(config_file, overrides)
    except ConfigError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    missing = [p for p in paths if not p.exists()]
    if missing:
        for p in missing:
            console.print(f"[red]Error: File not found: {p}[/red]")
        raise typer.Exit(1)

    sources = expand_sources(paths)
    if not sources:
        console.print("[yellow]No audio or video files found.[/yellow]")
        raise typer.Exit(0)

    total = len(sources)

    def show_state(handle) -> None:
        position = orchestrator.handles.index(handle) + 1
        name = handle.source.path.name
        if handle.state is JobState.EXTRACTING:
            console.print(f"[dim]  Extracting audio from {name}...[/dim]")
        elif handle.state is JobState.RUNNING:
            console.print(f"\n[cyan]Transcribing {name} ({position}/{total})...[/cyan]")
        elif handle.state.is_terminal and handle.result is not None:
            detail = escape(handle.result.error_message or "")
            console.print(f"  {STATE_STYLES[handle.state]} {name} [dim]{detail}[/dim]")

    orchestrator = BatchOrchestrator(config, on_job_state=show_state)
    orchestrator.submit_many(sources)

    model_label = config.model_identifier
    console.print(f"[cyan]Transcribing {total} file(s) with {config.tool_name} ({model_label})...[/cyan]")

    previous_handler = None

    def handle_interrupt(signum, frame) -> None:
        console.print("\n[yellow]Cancelling batch...[/yellow]")
        # A second Ctrl-C falls through to the default handler
        signal.signal(signal.SIGINT, previous_handler or signal.default_int_handler)
        orchestrator.cancel_batch(terminate_current=True)

    in_main_thread = threading.current_thread() is threading.main_thread()
    if in_main_thread:
        previous_handler = signal.signal(signal.SIGINT, handle_interrupt)
    try:
        results = orchestrator.run()
    finally:
        if in_main_thread:
            signal.signal(signal.SIGINT, previous_handler or signal.default_int_handler)

    table = Table(title="Transcription")
    table.add_column("File", style="cyan")
    table.add_column("State")
    table.add_column("Segments", style="green")
    table.add_column("Speakers", style="green")
    table.add_column("Duration", style="green")
    table.add_column("Audio via", style="dim")

    for result in results:
        transcript = result.transcript
        duration = (
            format_duration(transcript.source_duration)
            if transcript is not None and transcript.source_duration is not None
            else "-"
        )
        table.add_row(
            result.source.path.name,
            STATE_STYLES.get(result.state, result.state.value),
            str(len(transcript.segments)) if transcript else "-",
            str(len(transcript.speakers)) if transcript and transcript.speakers else "-",
            duration,
            result.extraction_method or "-",
        )

    console.print()
    console.print(table)

    summary = orchestrator.summary()
    if output is not None:
        write_batch_results(output, summary, results)
        console.print(f"[dim]  Results written to {output}[/dim]")

    console.print(
        f"\n[green]✓[/green] Transcribed {summary.succeeded} of {summary.total} "
        f"(partial {summary.partial}), failed {summary.failed}, cancelled {summary.cancelled}"
    )

    if summary.all_failed:
        console.print(f"[red]All {summary.attempted} attempted file(s) failed.[/red]")
        raise typer.Exit(2)
    if summary.failed > 0:
        raise typer.Exit(1)
    if summary.cancelled > 0:
        raise typer.Exit(130)


@app.command("doctor")
def run_doctor(
    config_file: Path | None = typer.Option(None, "--config", "-c", help="Path to scribeline.yaml"),
) -> None:
    """Check dependencies and environment setup."""
    console.print("[cyan]Running preflight checks...[/cyan]\n")

    from scribeline.diarize.client import DiarizationClient
    from scribeline.exceptions import ConfigError, DependencyError
    from scribeline.validation import (
        check_diarization_server,
        check_disk_space,
        check_ffmpeg,
        check_transcriber,
    )

    try:
        config = load_config(config_file)
    except ConfigError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    table = Table(title="Dependency Status")
    table.add_column("Component", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Version/Details")

    all_passed = True

    try:
        info = check_transcriber(config)
        table.add_row(config.tool_name, "✓ Installed", f"{info['version']} ({info['path']})")
    except DependencyError as e:
        table.add_row(config.tool_name, "✗ Missing", e.install_hint or "")
        all_passed = False

    try:
        versions = check_ffmpeg(config)
        table.add_row("FFmpeg", "✓ Installed", versions["ffmpeg"]["version"])
        table.add_row("FFprobe", "✓ Installed", versions["ffprobe"]["version"])
    except DependencyError as e:
        table.add_row(e.dependency, "✗ Missing", e.install_hint or "")
        all_passed = False

    scratch = config.scratch_dir or Path(tempfile.gettempdir())
    disk = check_disk_space(scratch, 500)
    disk_status = "✓ OK" if disk["sufficient"] else "✗ Low"
    table.add_row("Scratch space", disk_status, f"{disk['available_mb']} MB free in {scratch}")
    if not disk["sufficient"]:
        all_passed = False

    if config.diarization.enabled:
        client = DiarizationClient.from_config(config)
        if client.supports_native():
            table.add_row("Diarization", "✓ Native", f"{config.tool_name} --diarize")
        else:
            server = check_diarization_server(config.diarization.server_url)
            if server["reachable"]:
                table.add_row("Diarization", "✓ Server", config.diarization.server_url)
            else:
                table.add_row("Diarization", "✗ Unreachable", server.get("error", ""))
                all_passed = False
    else:
        table.add_row("Diarization", "-", "Disabled")

    console.print(table)

    if all_passed:
        console.print("\n[green]✓ All checks passed[/green]")
    else:
        console.print("\n[yellow]⚠ Some checks failed[/yellow]")
        console.print("[dim]Fix the issues above before transcribing[/dim]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
