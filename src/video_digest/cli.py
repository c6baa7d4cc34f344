"""Typer CLI entry point for video-digest."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated, Any

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from video_digest import __version__
from video_digest.cache import build_cache
from video_digest.config import Settings, format_validation_error
from video_digest.exceptions import VideoDigestError
from video_digest.logging import configure_from_settings, generate_session_id
from video_digest.models import SubtitleLine, SummaryResult, VideoIdentity
from video_digest.orchestrator import RequestOrchestrator
from video_digest.service import SummarizationService, validate_request_config
from video_digest.tasks import TaskCoordinator

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="video-digest",
    help="AI summaries, highlights and ad spans from video subtitles.",
    no_args_is_help=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings(
    config_path: Path | None = None,
    **overrides: Any,
) -> Settings:
    """Load settings with error handling and user-friendly messages."""
    from pydantic import ValidationError

    try:
        return Settings.load(config_path=config_path, **overrides)
    except ValidationError as exc:
        err_console.print(
            Panel(
                format_validation_error(exc),
                title="Configuration Error",
                border_style="red",
            )
        )
        raise typer.Exit(code=1) from exc


def _read_subtitles(path: Path) -> list[SubtitleLine]:
    """Read subtitle JSON: a list of lines or a ``{"body": [...]}`` document."""
    from pydantic import ValidationError

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        err_console.print(f"[red]Cannot read subtitles:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    lines = data.get("body") if isinstance(data, dict) else data
    if not isinstance(lines, list) or not lines:
        err_console.print(f"[red]No subtitle lines found in[/red] {path}")
        raise typer.Exit(code=1)

    try:
        return [SubtitleLine.model_validate(line) for line in lines]
    except ValidationError as exc:
        err_console.print(f"[red]Invalid subtitle line:[/red] {exc}")
        raise typer.Exit(code=1) from exc


def _display_result(result: SummaryResult) -> None:
    console.print(Panel(result.narrative_markdown, title="Summary", border_style="blue"))

    if result.segments:
        table = Table(title="Highlights")
        table.add_column("Time", style="cyan", no_wrap=True)
        table.add_column("Title", style="bold")
        table.add_column("Summary")
        for segment in result.segments:
            table.add_row(segment.timestamp, segment.title, segment.summary)
        console.print(table)
    else:
        console.print("[dim]No highlights were extracted.[/dim]")

    if result.ads:
        table = Table(title="Advertisements")
        table.add_column("Start", style="cyan", no_wrap=True)
        table.add_column("End", style="cyan", no_wrap=True)
        table.add_column("Product", style="yellow")
        table.add_column("Description")
        for ad in result.ads:
            table.add_row(
                str(ad.start_seconds),
                str(ad.end_seconds),
                ad.product,
                ad.description,
            )
        console.print(table)


async def _summarize(
    settings: Settings,
    provider: str | None,
    identity: VideoIdentity,
    lines: list[SubtitleLine],
    *,
    force: bool,
    show_progress: bool,
) -> SummaryResult | None:
    received = 0

    def on_progress(text: str) -> None:
        nonlocal received
        if show_progress:
            console.print(text[received:], end="", markup=False, highlight=False)
        received = len(text)

    coordinator = TaskCoordinator(settings.summary.processed_retention_days)
    async with RequestOrchestrator(
        summary_settings=settings.summary,
        http_settings=settings.http,
    ) as orchestrator:
        service = SummarizationService(
            config_provider=lambda: settings.request_config(provider),
            cache=build_cache(settings.summary),
            coordinator=coordinator,
            orchestrator=orchestrator,
        )
        try:
            return await service.summarize(
                identity,
                lines,
                force_regenerate=force,
                on_progress=on_progress,
            )
        finally:
            if show_progress and received:
                console.print()
            await coordinator.shutdown()


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]video-digest[/bold] {__version__}")
        raise typer.Exit


@app.callback()
def common(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """video-digest global options."""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def summarize(
    subtitle_file: Annotated[
        Path, typer.Argument(help="Subtitle JSON file ({content, from} lines).")
    ],
    video: Annotated[str, typer.Option("--video", "-v", help="Video ID (e.g. BV id).")],
    media: Annotated[str, typer.Option("--media", "-m", help="Media/part ID (cid).")],
    part: Annotated[int, typer.Option("--part", "-p", help="1-based part number.")] = 1,
    provider: Annotated[
        str | None,
        typer.Option("--provider", help="Provider ID (defaults to the selected one)."),
    ] = None,
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to config YAML file."),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Regenerate even if a summary is cached."),
    ] = False,
    as_json: Annotated[
        bool, typer.Option("--json", help="Print the result as JSON.")
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Enable verbose logging."),
    ] = False,
) -> None:
    """Summarize a video's subtitles with the configured AI provider."""
    settings = _load_settings(config)
    configure_from_settings(
        settings.logging, verbose=verbose, session_id=generate_session_id()
    )

    lines = _read_subtitles(subtitle_file)
    try:
        identity = VideoIdentity(external_id=video, media_id=media, part_index=part)
    except ValueError as exc:
        err_console.print(f"[red]Invalid video identity:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    try:
        result = asyncio.run(
            _summarize(
                settings,
                provider,
                identity,
                lines,
                force=force,
                show_progress=not as_json,
            )
        )
    except VideoDigestError as exc:
        logger.debug("summarize_command_failed", error_type=type(exc).__name__)
        err_console.print(f"[red]Summary failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    if result is None:
        err_console.print("[yellow]No summary was produced.[/yellow]")
        raise typer.Exit(code=1)

    if as_json:
        console.print_json(result.model_dump_json())
    else:
        _display_result(result)


@app.command()
def providers(
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to config YAML file."),
    ] = None,
) -> None:
    """List configured AI providers."""
    settings = _load_settings(config)

    table = Table(title="AI Providers")
    table.add_column("", no_wrap=True)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Model")
    table.add_column("Key", justify="center")

    for item in settings.providers:
        is_selected = item.id == settings.selected_provider
        has_key = bool(item.api_key or (is_selected and settings.api_key))
        table.add_row(
            "*" if is_selected else "",
            item.id,
            item.name,
            item.model,
            "[green]set[/green]" if has_key else "[dim]-[/dim]",
        )
    console.print(table)


@app.command()
def models(
    provider: Annotated[
        str | None,
        typer.Option("--provider", help="Provider ID (defaults to the selected one)."),
    ] = None,
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to config YAML file."),
    ] = None,
) -> None:
    """List the models offered by a provider."""
    settings = _load_settings(config)

    async def _list() -> list[dict[str, Any]]:
        request_config = validate_request_config(settings.request_config(provider))
        async with RequestOrchestrator(
            summary_settings=settings.summary,
            http_settings=settings.http,
        ) as orchestrator:
            return await orchestrator.list_models(request_config)

    try:
        available = asyncio.run(_list())
    except VideoDigestError as exc:
        err_console.print(f"[red]Cannot list models:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    available = [entry for entry in available if isinstance(entry, dict)]
    if not available:
        console.print("[yellow]The provider returned no models.[/yellow]")
        return

    table = Table(title=f"Models ({len(available)})")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    for entry in available:
        table.add_row(str(entry.get("id", "")), str(entry.get("name", "")))
    console.print(table)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
