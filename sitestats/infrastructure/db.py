import asyncio
import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool
import structlog

from ..shared.settings import Settings

log = structlog.get_logger()


async def open_pool(cfg: Settings) -> AsyncConnectionPool:
    """Open a connection pool, retrying while the database comes up."""
    attempts, delay = cfg.db_connect_attempts, 1.0
    for i in range(1, attempts + 1):
        pool = AsyncConnectionPool(
            cfg.conninfo,
            min_size=cfg.db_pool_min,
            max_size=cfg.db_pool_max,
            open=False,
            kwargs={"autocommit": True, "row_factory": dict_row},
        )
        try:
            log.info("db_connecting", attempt=i, host=cfg.db_host, port=cfg.db_port, dbname=cfg.db_name)
            await pool.open(wait=True, timeout=10.0)
            log.info("db_connected", pool_max=cfg.db_pool_max)
            return pool
        except psycopg.Error as e:
            await pool.close()
            log.warning("db_connect_failed", attempt=i, error=str(e))
            if i == attempts:
                log.error("db_gave_up_connecting")
                raise
            await asyncio.sleep(delay)
            delay = min(delay * 1.5, 5.0)
    raise RuntimeError("db_connect_attempts must be >= 1")


MIGRATIONS = [
    # --- Raw events, written once per event_id ---
    """
    CREATE TABLE IF NOT EXISTS events (
        event_id    TEXT PRIMARY KEY,
        site_id     TEXT NOT NULL,
        event_type  TEXT NOT NULL,
        path        TEXT NOT NULL,
        user_id     TEXT,
        occurred_at TIMESTAMPTZ NOT NULL,
        date        DATE NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_site_time ON events (site_id, occurred_at);",

    # --- Per (site, day) counters ---
    """
    CREATE TABLE IF NOT EXISTS stats (
        site_id     TEXT   NOT NULL,
        date        DATE   NOT NULL,
        total_views BIGINT NOT NULL DEFAULT 0,
        paths       JSONB  NOT NULL DEFAULT '{}'::jsonb,
        PRIMARY KEY (site_id, date)
    );
    """,

    # --- One mark per user per site per day ---
    """
    CREATE TABLE IF NOT EXISTS unique_users (
        site_id    TEXT        NOT NULL,
        date       DATE        NOT NULL,
        user_id    TEXT        NOT NULL,
        first_seen TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (site_id, date, user_id)
    );
    """,

    # --- Queue ---
    """
    CREATE TABLE IF NOT EXISTS event_queue (
        id          BIGSERIAL PRIMARY KEY,
        queue       TEXT NOT NULL,
        payload     TEXT NOT NULL,
        enqueued_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_event_queue_name_id ON event_queue (queue, id);",
]


async def ensure_migrations(pool: AsyncConnectionPool) -> None:
    """
    Create tables & indexes idempotently (safe to call on every startup).
    """
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            for stmt in MIGRATIONS:
                try:
                    await cur.execute(stmt)
                except psycopg.Error as e:
                    log.warning(
                        "migration_stmt_failed",
                        error=str(e),
                        sql=stmt.strip().splitlines()[0][:120]
                    )
            log.info("migrations_applied")
