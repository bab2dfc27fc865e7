from __future__ import annotations

import json
import logging
import time
from typing import Optional

import typer
import uvicorn

from autolot.config import settings

cli = typer.Typer(help="AutoLot inventory import CLI")


def _configure_logging() -> None:
    logging.basicConfig(level=getattr(logging, settings.logging.level.upper(), logging.INFO))


def _echo_json(payload) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


@cli.command()
def version() -> None:
    """Print runtime version."""
    typer.echo(f"{settings.app.name} {settings.app.version}")


@cli.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host to bind"),
    port: int = typer.Option(8000, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable autoreload for local development"),
) -> None:
    """Run the AutoLot API server (scheduler included when enabled)."""
    uvicorn.run(
        "autolot.api.main:app",
        host=host,
        port=port,
        reload=reload,
        app_dir="src",
    )


@cli.command()
def run(
    config_id: int = typer.Argument(..., help="Import config id"),
    source_ref: Optional[str] = typer.Option(None, help="Uploaded file name or remote file; default picks the next pending file"),
) -> None:
    """Execute one import run and wait for its summary."""
    from autolot.api.deps import get_run_manager

    _configure_logging()
    manager = get_run_manager()
    try:
        run_id = manager.execute(config_id, source_ref, trigger="manual")
        result = manager.wait(run_id)
    finally:
        manager.shutdown()
    _echo_json(result.model_dump(mode="json") if result else {"run_id": run_id})
    if result is None or result.status != "completed":
        raise typer.Exit(code=1)


@cli.command()
def preview(
    config_id: int = typer.Argument(..., help="Import config id"),
    source_ref: Optional[str] = typer.Option(None, help="Uploaded file name or remote file"),
    sample_size: int = typer.Option(settings.imports.preview_sample_size, help="Rows to map"),
) -> None:
    """Dry-run the mapping over the first rows of a source."""
    from autolot.api.deps import get_run_manager

    _configure_logging()
    manager = get_run_manager()
    try:
        result = manager.preview(config_id, source_ref, sample_size)
    finally:
        manager.shutdown()
    _echo_json(result.model_dump(mode="json"))


@cli.command()
def tick() -> None:
    """Evaluate every schedule once and wait for the runs it starts."""
    from autolot.api.deps import get_registry, get_run_manager, get_scheduler

    _configure_logging()
    get_registry().reset_stale_runs()
    manager = get_run_manager()
    try:
        started = get_scheduler().tick()
        results = [manager.wait(run_id) for run_id in started]
    finally:
        manager.shutdown()
    _echo_json([r.model_dump(mode="json") for r in results if r is not None])


@cli.command()
def scheduler() -> None:
    """Run the import scheduler in the foreground until interrupted."""
    from autolot.api.deps import get_registry, get_run_manager, get_scheduler

    _configure_logging()
    get_registry().reset_stale_runs()
    sched = get_scheduler()
    sched.start()
    typer.echo(f"Scheduler running, tick every {settings.scheduler.tick_seconds}s. Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        sched.shutdown()
        get_run_manager().shutdown()


if __name__ == "__main__":
    cli()
