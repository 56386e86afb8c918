
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from sitestats.infrastructure.backends import Backends
from sitestats.infrastructure.queue import MemoryEventQueue
from sitestats.infrastructure.store import MemoryDocumentStore
from sitestats.main import create_ingest_app, create_reporting_app
from sitestats.services.aggregator import AggregationWorker
from sitestats.shared.settings import Settings


@pytest.fixture
def cfg():
    return Settings(backend="memory", enable_metrics=False)


@pytest.fixture
def backends():
    """Fresh in-memory queue and store per test."""
    return Backends(queue=MemoryEventQueue(), store=MemoryDocumentStore())


@pytest.fixture
def worker(backends):
    return AggregationWorker(backends.queue, backends.store, error_pause=0.01)


@pytest.fixture
def drain(backends, worker):
    """Process everything currently queued, in order, and return how many items were handled."""

    async def _drain() -> int:
        handled = 0
        while await backends.queue.depth():
            await worker.handle(await backends.queue.pop())
            handled += 1
        return handled

    return _drain


@pytest_asyncio.fixture
async def ingest_client(backends, cfg):
    """
    HTTP client bound to the gateway app through ASGITransport
    (no real network port).
    """
    transport = ASGITransport(app=create_ingest_app(backends, cfg))
    async with AsyncClient(transport=transport, base_url="http://ingest") as ac:
        yield ac


@pytest_asyncio.fixture
async def stats_client(backends, cfg):
    transport = ASGITransport(app=create_reporting_app(backends, cfg))
    async with AsyncClient(transport=transport, base_url="http://reporting") as ac:
        yield ac
