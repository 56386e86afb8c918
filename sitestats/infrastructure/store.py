"""
Document store: raw events, per-day counters and unique-user marks.

Both implementations expose the same two write primitives the aggregation
worker depends on:

* an atomic increment-upsert of the (site_id, date) counters, evaluated by
  the store itself so concurrent workers never lose an increment;
* an insert-once on a key, reporting an existing key as
  `InsertOutcome.ALREADY_EXISTS` rather than as an error.

Any other failure is raised as `StoreUnavailableError`.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, Optional, Protocol, Tuple

import psycopg
from psycopg_pool import AsyncConnectionPool

from ..shared.errors import DuplicateKeyError, StoreUnavailableError
from ..shared.events import Event


class InsertOutcome(str, Enum):
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"
    FAILED = "failed"


@dataclass
class DailyStat:
    site_id: str
    date: date
    total_views: int = 0
    paths: Dict[str, int] = field(default_factory=dict)


class DocumentStore(Protocol):
    async def insert_event(self, event: Event, occurred_at: datetime, day: date) -> InsertOutcome: ...

    async def increment_stats(self, site_id: str, day: date, path: str) -> None: ...

    async def mark_unique_user(
        self, site_id: str, day: date, user_id: str, first_seen: datetime
    ) -> InsertOutcome: ...

    async def get_daily_stat(self, site_id: str, day: date) -> Optional[DailyStat]: ...

    async def count_unique_users(self, site_id: str, day: date) -> int: ...


# -------- PostgreSQL --------

@asynccontextmanager
async def _store_errors(op: str):
    try:
        yield
    except psycopg.Error as e:
        raise StoreUnavailableError(f"{op} failed: {e}") from e


class PostgresDocumentStore:
    INSERT_EVENT = """
        INSERT INTO events (event_id, site_id, event_type, path, user_id, occurred_at, date)
        VALUES (%(event_id)s, %(site_id)s, %(event_type)s, %(path)s, %(user_id)s, %(occurred_at)s, %(date)s)
        ON CONFLICT (event_id) DO NOTHING;
    """

    # The conflicting row is locked and re-read before SET runs, so both
    # increments apply to the latest committed values.
    INCREMENT_STATS = """
        INSERT INTO stats AS s (site_id, date, total_views, paths)
        VALUES (%(site_id)s, %(date)s, 1, jsonb_build_object(%(path)s::text, 1))
        ON CONFLICT (site_id, date) DO UPDATE SET
            total_views = s.total_views + 1,
            paths = s.paths || jsonb_build_object(
                %(path)s::text,
                COALESCE((s.paths ->> %(path)s::text)::bigint, 0) + 1
            );
    """

    MARK_UNIQUE_USER = """
        INSERT INTO unique_users (site_id, date, user_id, first_seen)
        VALUES (%(site_id)s, %(date)s, %(user_id)s, %(first_seen)s)
        ON CONFLICT (site_id, date, user_id) DO NOTHING;
    """

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self.pool = pool

    async def insert_event(self, event: Event, occurred_at: datetime, day: date) -> InsertOutcome:
        params = {
            "event_id": event.id,
            "site_id": event.site_id,
            "event_type": event.event_type,
            "path": event.path_key,
            "user_id": event.user_id,
            "occurred_at": occurred_at,
            "date": day,
        }
        async with _store_errors("insert_event"), self.pool.connection() as conn:
            cur = await conn.execute(self.INSERT_EVENT, params)
            return InsertOutcome.INSERTED if cur.rowcount else InsertOutcome.ALREADY_EXISTS

    async def increment_stats(self, site_id: str, day: date, path: str) -> None:
        params = {"site_id": site_id, "date": day, "path": path}
        async with _store_errors("increment_stats"), self.pool.connection() as conn:
            await conn.execute(self.INCREMENT_STATS, params)

    async def mark_unique_user(
        self, site_id: str, day: date, user_id: str, first_seen: datetime
    ) -> InsertOutcome:
        params = {"site_id": site_id, "date": day, "user_id": user_id, "first_seen": first_seen}
        async with _store_errors("mark_unique_user"), self.pool.connection() as conn:
            cur = await conn.execute(self.MARK_UNIQUE_USER, params)
            return InsertOutcome.INSERTED if cur.rowcount else InsertOutcome.ALREADY_EXISTS

    async def get_daily_stat(self, site_id: str, day: date) -> Optional[DailyStat]:
        async with _store_errors("get_daily_stat"), self.pool.connection() as conn:
            cur = await conn.execute(
                "SELECT total_views, paths FROM stats WHERE site_id = %(site_id)s AND date = %(date)s;",
                {"site_id": site_id, "date": day},
            )
            row = await cur.fetchone()
        if row is None:
            return None
        return DailyStat(
            site_id=site_id,
            date=day,
            total_views=int(row["total_views"]),
            paths={k: int(v) for k, v in (row["paths"] or {}).items()},
        )

    async def count_unique_users(self, site_id: str, day: date) -> int:
        async with _store_errors("count_unique_users"), self.pool.connection() as conn:
            cur = await conn.execute(
                "SELECT COUNT(*) AS n FROM unique_users WHERE site_id = %(site_id)s AND date = %(date)s;",
                {"site_id": site_id, "date": day},
            )
            row = await cur.fetchone()
        return int(row["n"]) if row else 0


# -------- In-memory --------

class MemoryDocumentStore:
    """
    Dict-backed store for single-process runs and tests.

    Every method body runs without an await between read and write, so each
    call is atomic with respect to other tasks on the same loop.
    """

    def __init__(self) -> None:
        self.events: Dict[str, dict] = {}
        self.stats: Dict[Tuple[str, date], DailyStat] = {}
        self.unique_users: Dict[Tuple[str, date, str], datetime] = {}

    @staticmethod
    def _insert_once(table: dict, key, value) -> None:
        if key in table:
            raise DuplicateKeyError(repr(key))
        table[key] = value

    async def insert_event(self, event: Event, occurred_at: datetime, day: date) -> InsertOutcome:
        record = event.model_dump()
        record.update(path=event.path_key, occurred_at=occurred_at, date=day)
        try:
            self._insert_once(self.events, event.id, record)
        except DuplicateKeyError:
            return InsertOutcome.ALREADY_EXISTS
        return InsertOutcome.INSERTED

    async def increment_stats(self, site_id: str, day: date, path: str) -> None:
        stat = self.stats.setdefault((site_id, day), DailyStat(site_id=site_id, date=day))
        stat.total_views += 1
        stat.paths[path] = stat.paths.get(path, 0) + 1

    async def mark_unique_user(
        self, site_id: str, day: date, user_id: str, first_seen: datetime
    ) -> InsertOutcome:
        try:
            self._insert_once(self.unique_users, (site_id, day, user_id), first_seen)
        except DuplicateKeyError:
            return InsertOutcome.ALREADY_EXISTS
        return InsertOutcome.INSERTED

    async def get_daily_stat(self, site_id: str, day: date) -> Optional[DailyStat]:
        stat = self.stats.get((site_id, day))
        if stat is None:
            return None
        return DailyStat(site_id=site_id, date=day, total_views=stat.total_views, paths=dict(stat.paths))

    async def count_unique_users(self, site_id: str, day: date) -> int:
        return sum(1 for (s, d, _) in self.unique_users if s == site_id and d == day)
