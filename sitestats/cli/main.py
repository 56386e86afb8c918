import asyncio
import signal
from contextlib import suppress
from enum import Enum
from typing import Optional

import typer
import uvicorn

from ..infrastructure.backends import open_backends
from ..infrastructure.db import ensure_migrations, open_pool
from ..services.aggregator import AggregationWorker
from ..shared.logging import setup_logging
from ..shared.settings import Settings, settings

app = typer.Typer(add_completion=False)
setup_logging(service=f"{settings.app_name}-cli")


class Target(str, Enum):
    ingest = "ingest"
    reporting = "reporting"
    all = "all"


FACTORIES = {
    Target.ingest: "sitestats.main:create_ingest_app",
    Target.reporting: "sitestats.main:create_reporting_app",
    Target.all: "sitestats.main:create_app",
}


def _require_postgres(cfg: Settings, command: str) -> None:
    if cfg.backend != "postgres":
        typer.secho(
            f"[ERR] '{command}' needs SITESTATS_BACKEND=postgres; the memory backend lives inside one process.",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=2)


@app.command("migrate")
def migrate():
    """Create tables & indexes (idempotent)."""
    _require_postgres(settings, "migrate")
    asyncio.run(_run_migrate(settings))
    typer.secho("[OK] migrations applied", fg=typer.colors.GREEN)


async def _run_migrate(cfg: Settings) -> None:
    pool = await open_pool(cfg)
    try:
        await ensure_migrations(pool)
    finally:
        await pool.close()


@app.command("worker")
def worker():
    """
    Run the aggregation loop until SIGINT/SIGTERM. The event being written
    when the signal arrives is finished first.
    """
    _require_postgres(settings, "worker")
    asyncio.run(_run_worker(settings))


async def _run_worker(cfg: Settings) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):  # no signal handlers on Windows loops
            loop.add_signal_handler(sig, stop.set)

    async with open_backends(cfg) as backends:
        worker = AggregationWorker(backends.queue, backends.store, cfg.worker_error_pause)
        await worker.run(stop)


@app.command("serve")
def serve(
    target: Target = typer.Argument(Target.all, help="ingest | reporting | all"),
    host: str = typer.Option("0.0.0.0", "--host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="defaults to INGEST_PORT / REPORTING_PORT"),
):
    """Serve one of the HTTP apps with uvicorn."""
    if target is not Target.all:
        _require_postgres(settings, f"serve {target.value}")
    default_port = settings.reporting_port if target is Target.reporting else settings.ingest_port
    uvicorn.run(
        FACTORIES[target],
        factory=True,
        host=host,
        port=port or default_port,
        log_config=None,
    )


@app.command("queue-depth")
def queue_depth():
    """Print how many events are waiting in the queue."""
    _require_postgres(settings, "queue-depth")
    depth = asyncio.run(_read_depth(settings))
    typer.echo(f"[INFO] queue={settings.queue_name} pending={depth}")


async def _read_depth(cfg: Settings) -> int:
    async with open_backends(cfg) as backends:
        return await backends.queue.depth()


if __name__ == "__main__":
    app()
