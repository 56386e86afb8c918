from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import structlog

from ..shared.settings import Settings
from .db import ensure_migrations, open_pool
from .queue import EventQueue, MemoryEventQueue, PostgresEventQueue
from .store import DocumentStore, MemoryDocumentStore, PostgresDocumentStore

log = structlog.get_logger()


@dataclass
class Backends:
    queue: EventQueue
    store: DocumentStore


@asynccontextmanager
async def open_backends(cfg: Settings) -> AsyncIterator[Backends]:
    """Acquire the queue and store clients; release them on every exit path."""
    if cfg.backend == "memory":
        log.info("backends_opened", backend="memory")
        yield Backends(queue=MemoryEventQueue(), store=MemoryDocumentStore())
        log.info("backends_closed", backend="memory")
        return

    pool = await open_pool(cfg)
    queue = PostgresEventQueue(pool, cfg.conninfo, cfg.queue_name, cfg.queue_poll_seconds)
    try:
        await ensure_migrations(pool)
        log.info("backends_opened", backend="postgres", queue=cfg.queue_name)
        yield Backends(queue=queue, store=PostgresDocumentStore(pool))
    finally:
        await queue.close()
        await pool.close()
        log.info("backends_closed", backend="postgres")
