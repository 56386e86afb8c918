
import asyncio
import os
from datetime import date, datetime, timezone

import pytest
import pytest_asyncio
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from sitestats.infrastructure.db import ensure_migrations
from sitestats.infrastructure.queue import PostgresEventQueue
from sitestats.infrastructure.store import InsertOutcome, PostgresDocumentStore
from sitestats.shared.events import Event

DSN = os.getenv("SITESTATS_TEST_DSN")
DAY = date(2025, 8, 1)
SEEN = datetime(2025, 8, 1, 12, 0, tzinfo=timezone.utc)

pytestmark = pytest.mark.skipif(not DSN, reason="SITESTATS_TEST_DSN not set")


@pytest_asyncio.fixture
async def pool():
    """
    Real PostgreSQL pool; tables are truncated before each test
    so the tests stay deterministic.
    """
    pool = AsyncConnectionPool(DSN, min_size=1, max_size=8, open=False,
                               kwargs={"autocommit": True, "row_factory": dict_row})
    await pool.open(wait=True)
    await ensure_migrations(pool)
    async with pool.connection() as conn:
        await conn.execute("TRUNCATE TABLE events, stats, unique_users, event_queue;")
    yield pool
    await pool.close()


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost(pool):
    store = PostgresDocumentStore(pool)
    await asyncio.gather(*(store.increment_stats("s1", DAY, "/a" if i % 3 else "/b") for i in range(30)))

    stat = await store.get_daily_stat("s1", DAY)
    assert stat.total_views == 30
    assert stat.paths == {"/a": 20, "/b": 10}


@pytest.mark.asyncio
async def test_insert_once_outcomes(pool):
    store = PostgresDocumentStore(pool)
    event = Event(id="e1", site_id="s1", event_type="pageview", timestamp="2025-08-01T12:00:00.000Z")

    assert await store.insert_event(event, SEEN, DAY) is InsertOutcome.INSERTED
    assert await store.insert_event(event, SEEN, DAY) is InsertOutcome.ALREADY_EXISTS

    outcomes = await asyncio.gather(*(store.mark_unique_user("s1", DAY, "u1", SEEN) for _ in range(5)))
    assert outcomes.count(InsertOutcome.INSERTED) == 1
    assert await store.count_unique_users("s1", DAY) == 1


@pytest.mark.asyncio
async def test_missing_stat_is_none(pool):
    assert await PostgresDocumentStore(pool).get_daily_stat("nobody", DAY) is None


@pytest.mark.asyncio
async def test_queue_is_fifo_and_hands_each_item_out_once(pool):
    producer = PostgresEventQueue(pool, DSN, "test_queue", poll_seconds=0.2)
    consumers = [PostgresEventQueue(pool, DSN, "test_queue", poll_seconds=0.2) for _ in range(5)]
    try:
        for i in range(6):
            await producer.push(f"item-{i}")
        assert await producer.depth() == 6

        first = await producer.pop()
        assert first == "item-0"

        rest = await asyncio.gather(*(c.pop() for c in consumers))
        assert sorted(rest) == [f"item-{i}" for i in range(1, 6)]
        assert await producer.depth() == 0
    finally:
        for q in [producer, *consumers]:
            await q.close()


@pytest.mark.asyncio
async def test_pop_wakes_on_push(pool):
    queue = PostgresEventQueue(pool, DSN, "wake_queue", poll_seconds=30)
    try:
        waiter = asyncio.create_task(queue.pop())
        await asyncio.sleep(0.2)
        assert not waiter.done()
        await queue.push("hello")
        assert await asyncio.wait_for(waiter, timeout=5) == "hello"
    finally:
        await queue.close()


class SlowClaimQueue(PostgresEventQueue):
    """Claims the row, then lingers before handing it back."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.claimed = asyncio.Event()

    async def _claim(self):
        payload = await super()._claim()
        self.claimed.set()
        await asyncio.sleep(0.2)
        return payload


@pytest.mark.asyncio
async def test_cancelled_pop_returns_the_row_it_already_claimed(pool):
    queue = SlowClaimQueue(pool, DSN, "cancel_queue", poll_seconds=0.2)
    try:
        await queue.push("kept")
        waiter = asyncio.create_task(queue.pop())
        await asyncio.wait_for(queue.claimed.wait(), timeout=5)
        waiter.cancel()

        assert await asyncio.wait_for(waiter, timeout=5) == "kept"
        assert await queue.depth() == 0
    finally:
        await queue.close()
