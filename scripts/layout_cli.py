#!/usr/bin/env python3
"""Operator CLI for building and uploading layout tile pyramids."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import httpx
import typer
from decouple import Config as DecoupleConfig, RepositoryEnv
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from layout_uploader.errors import LayoutUploaderError
from layout_uploader.jobs import RunManager, RunOutcome
from layout_uploader.progress import RunPhase
from layout_uploader.run_log import read_run_log
from layout_uploader.schemas import ProgressUpdate, RunConfig
from layout_uploader.settings import Settings, get_settings
from layout_uploader.tiler import SUPPORTED_EXTENSIONS, read_image_size
from layout_uploader.zoom import plan_levels, total_tile_count

console = Console()
cli = typer.Typer(help="Build deep zoom tile pyramids and upload them to a layout service")
api_cli = typer.Typer(help="Drive a running layout uploader API (submit/progress/cancel/watch).")
cli.add_typer(api_cli, name="api")

EXIT_FAILED = 1
EXIT_CANCELLED = 130
TERMINAL_STATUSES = {RunPhase.COMPLETED.value, RunPhase.CANCELLED.value, RunPhase.FAILED.value}


@dataclass
class APISettings:
    base_url: str


def _load_env_settings() -> APISettings:
    env_path = Path(".env")
    if env_path.exists():
        config = DecoupleConfig(RepositoryEnv(str(env_path)))
        return APISettings(base_url=config("API_BASE_URL", default="http://localhost:8000"))
    return APISettings(base_url="http://localhost:8000")


def _resolve_settings(override_base: Optional[str]) -> APISettings:
    settings = _load_env_settings()
    if override_base:
        settings.base_url = override_base
    return settings


def _client(settings: APISettings) -> httpx.Client:
    timeout = httpx.Timeout(connect=10.0, read=30.0, write=30.0, pool=10.0)
    return httpx.Client(base_url=settings.base_url, timeout=timeout)


def _configure_logging(level: Optional[str]) -> None:
    resolved = (level or get_settings().logging.level).upper()
    logging.basicConfig(
        level=getattr(logging, resolved, logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _parse_background(value: str) -> tuple[int, int, int]:
    parts = [part.strip() for part in value.split(",")]
    if len(parts) != 3:
        raise typer.BadParameter("Expected three comma-separated values, e.g. 255,255,255", param_hint="--background")
    try:
        return int(parts[0]), int(parts[1]), int(parts[2])
    except ValueError as exc:
        raise typer.BadParameter(f"Background channels must be integers: {value}", param_hint="--background") from exc


def _build_run_config(
    *,
    image: Path,
    server: Optional[str],
    layout_key: Optional[str],
    secret: Optional[str],
    tile_size: Optional[int],
    background: Optional[str],
    settings: Settings,
) -> RunConfig:
    defaults = settings.upload
    resolved_secret = secret if secret is not None else defaults.secret
    if resolved_secret is None:
        raise typer.BadParameter("Provide --secret or set LAYOUT_SECRET.", param_hint="--secret")
    try:
        return RunConfig(
            image_path=str(image),
            server_address=server or defaults.server_url,
            layout_key=layout_key or defaults.layout_key,
            secret=resolved_secret,
            background_color=_parse_background(background) if background else defaults.background_color,
            tile_size=tile_size if tile_size is not None else defaults.tile_size,
        )
    except ValidationError as exc:
        messages = "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in exc.errors())
        raise typer.BadParameter(messages) from exc


def _build_manager() -> RunManager:
    return RunManager()


def _render_progress(progress: Progress, task_id: Any, update: ProgressUpdate | None) -> None:
    if update is None:
        return
    progress.update(
        task_id,
        description=update.status,
        total=update.total or None,
        completed=update.current,
    )


async def _run_with_progress(config: RunConfig, manager: RunManager) -> RunOutcome:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, manager.cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError, ValueError):  # pragma: no cover - platform dependent
        handler_installed = False
    columns = (
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
    )
    try:
        with Progress(*columns, console=console, transient=True) as progress:
            task_id = progress.add_task("Starting...", total=None)
            run_task = asyncio.create_task(manager.execute(config))
            while not run_task.done():
                _render_progress(progress, task_id, manager.get_progress())
                await asyncio.wait({run_task}, timeout=0.2)
            _render_progress(progress, task_id, manager.get_progress())
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
    return run_task.result()


def _exit_code_for(status: str) -> int:
    if status == RunPhase.COMPLETED.value:
        return 0
    if status == RunPhase.CANCELLED.value:
        return EXIT_CANCELLED
    return EXIT_FAILED


def _print_outcome(outcome: RunOutcome) -> None:
    table = Table("Field", "Value", title=f"Run {outcome.status.value}")
    table.add_row("message", outcome.message)
    table.add_row("layout_path", str(outcome.layout_path or "-"))
    table.add_row("tiles_uploaded", str(outcome.tiles_uploaded))
    table.add_row("max_zoom", "-" if outcome.max_zoom is None else str(outcome.max_zoom))
    console.print(table)


def _print_run(snapshot: dict[str, Any]) -> None:
    table = Table("Field", "Value", title=f"Run {snapshot.get('run_id') or '-'}")
    for key in ("status", "layout_key", "layout_path", "max_zoom", "tiles_uploaded", "message"):
        value = snapshot.get(key)
        table.add_row(key, "-" if value is None else str(value))
    progress = snapshot.get("progress")
    if isinstance(progress, dict):
        table.add_row("progress", _format_progress(progress))
    console.print(table)


def _format_progress(progress: dict[str, Any]) -> str:
    current = progress.get("current", 0)
    total = progress.get("total", 0)
    percentage = progress.get("percentage", 0)
    return f"{progress.get('status', '')} [{current}/{total}, {percentage}%]"


def _extract_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict) and data.get("detail"):
        return str(data["detail"])
    return response.text


@cli.command()
def plan(
    image: Path = typer.Argument(..., help="Source image"),
    tile_size: Optional[int] = typer.Option(None, "--tile-size", help="Tile edge in pixels (default TILE_SIZE)"),
) -> None:
    """Print the zoom levels and tile counts an image would produce."""

    size = tile_size if tile_size is not None else get_settings().upload.tile_size
    if size <= 0:
        raise typer.BadParameter("Tile size must be positive.", param_hint="--tile-size")
    try:
        width, height = read_image_size(image)
    except LayoutUploaderError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=EXIT_FAILED) from exc
    if image.suffix.lower() not in SUPPORTED_EXTENSIONS:
        console.print(f"[yellow]warning[/]: unusual extension {image.suffix or '<none>'}")

    plans = plan_levels(width, height, size)
    table = Table("Level", "Scale", "Resampled", "Canvas", "Tiles", title=f"{image.name} ({width}x{height})")
    for entry in plans:
        table.add_row(
            str(entry.level),
            f"{entry.scale:.4f}",
            f"{entry.resampled_width}x{entry.resampled_height}",
            f"{entry.canvas_size}x{entry.canvas_size}",
            str(entry.tile_count),
        )
    console.print(table)
    console.print(f"levels={len(plans)} total_tiles={total_tile_count(len(plans))} max_zoom={len(plans) - 1}")


@cli.command()
def run(
    image: Path = typer.Argument(..., help="Source image"),
    server: Optional[str] = typer.Option(None, "--server", help="Layout service URL (default LAYOUT_SERVER_URL)"),
    layout_key: Optional[str] = typer.Option(None, "--layout-key", help="Layout key (default LAYOUT_KEY)"),
    secret: Optional[str] = typer.Option(None, "--secret", help="Access secret (default LAYOUT_SECRET)"),
    tile_size: Optional[int] = typer.Option(None, "--tile-size", help="Tile edge in pixels"),
    background: Optional[str] = typer.Option(None, "--background", help="Padding colour as r,g,b"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
) -> None:
    """Build and upload a pyramid in this process; Ctrl-C requests cancellation."""

    _configure_logging(log_level)
    settings = get_settings()
    config = _build_run_config(
        image=image,
        server=server,
        layout_key=layout_key,
        secret=secret,
        tile_size=tile_size,
        background=background,
        settings=settings,
    )
    outcome = asyncio.run(_run_with_progress(config, _build_manager()))
    _print_outcome(outcome)
    raise typer.Exit(code=_exit_code_for(outcome.status.value))


@cli.command()
def history(
    limit: int = typer.Option(10, "--limit", help="Number of recent runs to show"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Override RUN_LOG_PATH"),
) -> None:
    """Show recently finished runs from the JSONL run log."""

    path = log_path or get_settings().logging.run_log_path
    if path is None:
        console.print("[dim]Run log disabled (RUN_LOG_PATH is empty).[/]")
        return
    records = read_run_log(path, limit=limit)
    if not records:
        console.print(f"[dim]No runs recorded in {path}.[/]")
        return
    table = Table("Finished", "Status", "Layout", "Path", "Tiles", "Max zoom", title="Runs")
    for record in records:
        table.add_row(
            str(record.get("timestamp", "-")),
            str(record.get("status", "-")),
            str(record.get("layout_key", "-")),
            str(record.get("layout_path") or "-"),
            f"{record.get('tiles_uploaded', 0)}/{record.get('total_tiles', 0)}",
            str(record.get("max_zoom", "-")),
        )
    console.print(table)


@cli.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default API_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (default API_PORT)"),
) -> None:
    """Serve the run API with uvicorn."""

    import uvicorn

    settings = get_settings()
    _configure_logging(None)
    uvicorn.run(
        "layout_uploader.main:app",
        host=host or settings.api.host,
        port=port or settings.api.port,
        log_level=settings.logging.level.lower(),
    )


@api_cli.command("submit")
def api_submit(
    image: Path = typer.Argument(..., help="Source image path as seen by the API server"),
    server: Optional[str] = typer.Option(None, "--server"),
    layout_key: Optional[str] = typer.Option(None, "--layout-key"),
    secret: Optional[str] = typer.Option(None, "--secret"),
    tile_size: Optional[int] = typer.Option(None, "--tile-size"),
    background: Optional[str] = typer.Option(None, "--background"),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
) -> None:
    """Start a run on the API server."""

    config = _build_run_config(
        image=image,
        server=server,
        layout_key=layout_key,
        secret=secret,
        tile_size=tile_size,
        background=background,
        settings=get_settings(),
    )
    client = _client(_resolve_settings(api_base))
    try:
        response = client.post("/runs", json=config.model_dump(mode="json"))
    finally:
        client.close()
    if response.status_code == 409:
        console.print(f"[red]{_extract_detail(response)}[/]")
        raise typer.Exit(code=EXIT_FAILED)
    response.raise_for_status()
    console.print("[green]Run started[/]")
    _print_run(response.json())


@api_cli.command("progress")
def api_progress(api_base: Optional[str] = typer.Option(None, help="Override API base URL")) -> None:
    """Print the latest progress snapshot."""

    client = _client(_resolve_settings(api_base))
    try:
        response = client.get("/progress")
    finally:
        client.close()
    response.raise_for_status()
    payload = response.json()
    if payload is None:
        console.print("[dim]No progress yet.[/]")
        return
    console.print(_format_progress(payload))


@api_cli.command("cancel")
def api_cancel(api_base: Optional[str] = typer.Option(None, help="Override API base URL")) -> None:
    """Request cancellation of the active run."""

    client = _client(_resolve_settings(api_base))
    try:
        response = client.post("/cancel")
    finally:
        client.close()
    response.raise_for_status()
    if response.json().get("cancelled"):
        console.print("[yellow]Cancelling...[/]")
    else:
        console.print("[dim]No active run.[/]")


@api_cli.command("watch")
def api_watch(
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    interval: float = typer.Option(1.0, "--interval", help="Polling interval in seconds"),
) -> None:
    """Poll the current run until it reaches a terminal status."""

    client = _client(_resolve_settings(api_base))
    last_line: str | None = None
    try:
        while True:
            response = client.get("/runs/current")
            response.raise_for_status()
            snapshot = response.json()
            progress = snapshot.get("progress")
            line = f"{snapshot.get('status')}: {_format_progress(progress) if progress else '-'}"
            if line != last_line:
                console.print(line)
                last_line = line
            status = str(snapshot.get("status"))
            if status in TERMINAL_STATUSES or status == RunPhase.IDLE.value:
                break
            time.sleep(interval)
    finally:
        client.close()
    _print_run(snapshot)
    raise typer.Exit(code=_exit_code_for(status) if status != RunPhase.IDLE.value else 0)


if __name__ == "__main__":
    cli()
