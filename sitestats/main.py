import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
import structlog

from .shared.logging import setup_logging
from .shared.middleware import RequestIDMiddleware
from .shared.settings import Settings, settings
from .api.errors import install_error_handlers
from .api.routes_health import router as health_router
from .api.routes_events import router as events_router
from .api.routes_stats import router as stats_router
from .infrastructure.backends import Backends, open_backends
from .services.aggregator import AggregationWorker
from .services.ingest import IngestionGateway
from .services.reporting import ReportingService

setup_logging()
log = structlog.get_logger()


def _wire(app: FastAPI, backends: Backends, cfg: Settings) -> None:
    app.state.backends = backends
    app.state.gateway = IngestionGateway(backends.queue)
    app.state.reporting = ReportingService(backends.store, cfg.top_paths_limit)


async def _stop_worker(stop: asyncio.Event, task: asyncio.Task) -> None:
    stop.set()
    await task


def _build_app(
    title: str,
    routers: list[tuple[APIRouter, str]],
    cfg: Settings,
    backends: Optional[Backends],
    with_worker: bool = False,
) -> FastAPI:
    """
    With `backends` given the app uses them as-is and never closes them.
    Otherwise the lifespan opens the configured backend and releases it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with AsyncExitStack() as stack:
            if backends is None:
                opened = await stack.enter_async_context(open_backends(cfg))
                _wire(app, opened, cfg)
            if with_worker:
                b: Backends = app.state.backends
                stop = asyncio.Event()
                worker = AggregationWorker(b.queue, b.store, cfg.worker_error_pause)
                task = asyncio.create_task(worker.run(stop))
                stack.push_async_callback(_stop_worker, stop, task)
            log.info("app_started", app=title, env=cfg.env, embedded_worker=with_worker)
            yield
        log.info("app_stopped", app=title)

    app = FastAPI(title=title, lifespan=lifespan)
    app.state.max_body_bytes = cfg.max_body_bytes
    app.add_middleware(RequestIDMiddleware)
    # browsers on the tracked sites post events cross-origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    install_error_handlers(app)

    # Routers
    for router, tag in routers:
        app.include_router(router, tags=[tag])

    # Metrics
    if cfg.enable_metrics:
        Instrumentator().instrument(app).expose(app)

    if backends is not None:
        _wire(app, backends, cfg)
    return app


def create_ingest_app(backends: Optional[Backends] = None, cfg: Settings = settings) -> FastAPI:
    return _build_app(
        f"{cfg.app_name}-ingest",
        [(health_router, "system"), (events_router, "ingest")],
        cfg,
        backends,
    )


def create_reporting_app(backends: Optional[Backends] = None, cfg: Settings = settings) -> FastAPI:
    return _build_app(
        f"{cfg.app_name}-reporting",
        [(health_router, "system"), (stats_router, "stats")],
        cfg,
        backends,
    )


def create_app(backends: Optional[Backends] = None, cfg: Settings = settings) -> FastAPI:
    """Gateway and reporting in one process, optionally with an in-process worker."""
    return _build_app(
        cfg.app_name,
        [(health_router, "system"), (events_router, "ingest"), (stats_router, "stats")],
        cfg,
        backends,
        with_worker=cfg.embedded_worker,
    )


app = create_app()
