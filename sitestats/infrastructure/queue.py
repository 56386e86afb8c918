"""
Event queue: a named FIFO of JSON payloads.

`push` returns as soon as the item is stored. `pop` removes the oldest
item and blocks while the queue is empty; it has no timeout and is stopped
by cancelling the awaiting task. An item is handed to exactly one caller
and is gone from the queue once `pop` returns it.
"""
import asyncio
from typing import Optional, Protocol

import psycopg
from psycopg import sql
from psycopg_pool import AsyncConnectionPool
import structlog

from ..shared.errors import QueueUnavailableError

log = structlog.get_logger()


class EventQueue(Protocol):
    async def push(self, payload: str) -> None: ...

    async def pop(self) -> str: ...

    async def depth(self) -> int: ...

    async def close(self) -> None: ...


class MemoryEventQueue:
    """asyncio.Queue wrapper; only usable when producer and worker share a process."""

    def __init__(self) -> None:
        self._q: asyncio.Queue = asyncio.Queue()

    async def push(self, payload: str) -> None:
        self._q.put_nowait(payload)

    async def pop(self) -> str:
        return await self._q.get()

    async def depth(self) -> int:
        return self._q.qsize()

    async def close(self) -> None:
        return None


class PostgresEventQueue:
    """
    Table-backed queue.

    Consumers claim the lowest id with FOR UPDATE SKIP LOCKED, so concurrent
    workers never receive the same row. An idle consumer waits on
    LISTEN/NOTIFY; `poll_seconds` only bounds how long a missed notification
    can delay it.
    """

    CLAIM = """
        DELETE FROM event_queue
        WHERE id = (
            SELECT id FROM event_queue
            WHERE queue = %(queue)s
            ORDER BY id
            FOR UPDATE SKIP LOCKED
            LIMIT 1
        )
        RETURNING payload;
    """

    def __init__(
        self,
        pool: AsyncConnectionPool,
        conninfo: str,
        name: str = "events_queue",
        poll_seconds: float = 5.0,
    ) -> None:
        self.pool = pool
        self.conninfo = conninfo
        self.name = name
        self.channel = f"{name}_ready"
        self.poll_seconds = poll_seconds
        self._listener: Optional[psycopg.AsyncConnection] = None

    async def push(self, payload: str) -> None:
        try:
            async with self.pool.connection() as conn:
                async with conn.transaction():
                    await conn.execute(
                        "INSERT INTO event_queue (queue, payload) VALUES (%(queue)s, %(payload)s);",
                        {"queue": self.name, "payload": payload},
                    )
                    # delivered on commit
                    await conn.execute("SELECT pg_notify(%(channel)s, '');", {"channel": self.channel})
        except psycopg.Error as e:
            raise QueueUnavailableError(f"push to {self.name} failed: {e}") from e

    async def pop(self) -> str:
        try:
            listener = await self._ensure_listener()
            while True:
                payload = await self._claim_shielded()
                if payload is not None:
                    return payload
                async for _ in listener.notifies(timeout=self.poll_seconds, stop_after=1):
                    pass
        except psycopg.Error as e:
            await self._drop_listener()
            raise QueueUnavailableError(f"pop from {self.name} failed: {e}") from e

    async def depth(self) -> int:
        try:
            async with self.pool.connection() as conn:
                cur = await conn.execute(
                    "SELECT COUNT(*) AS n FROM event_queue WHERE queue = %(queue)s;",
                    {"queue": self.name},
                )
                row = await cur.fetchone()
        except psycopg.Error as e:
            raise QueueUnavailableError(f"depth of {self.name} failed: {e}") from e
        return int(row["n"]) if row else 0

    async def close(self) -> None:
        await self._drop_listener()

    async def _claim_shielded(self) -> Optional[str]:
        """
        Cancelling `pop` must not drop a row whose DELETE already committed:
        the claim runs to completion and a claimed row is returned anyway.
        """
        claim = asyncio.ensure_future(self._claim())
        try:
            return await asyncio.shield(claim)
        except asyncio.CancelledError:
            payload = await claim
            if payload is None:
                raise
            log.info("queue_claim_kept_on_cancel", queue=self.name)
            return payload

    async def _claim(self) -> Optional[str]:
        async with self.pool.connection() as conn:
            cur = await conn.execute(self.CLAIM, {"queue": self.name})
            row = await cur.fetchone()
        return row["payload"] if row else None

    async def _ensure_listener(self) -> psycopg.AsyncConnection:
        if self._listener is None or self._listener.closed:
            conn = await psycopg.AsyncConnection.connect(self.conninfo, autocommit=True)
            await conn.execute(sql.SQL("LISTEN {};").format(sql.Identifier(self.channel)))
            self._listener = conn
            log.info("queue_listening", queue=self.name, channel=self.channel)
        return self._listener

    async def _drop_listener(self) -> None:
        conn, self._listener = self._listener, None
        if conn is not None and not conn.closed:
            await conn.close()
