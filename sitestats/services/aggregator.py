"""
Aggregation worker.

Pops one payload at a time and folds it into the store:

1. parse (malformed payloads are logged and dropped, never retried)
2. resolve the event time and its UTC day
3. insert the raw event, keyed by event id
4. increment the (site_id, day) counters in one store operation
5. insert-once the (site_id, day, user_id) mark when a user id is present

No transaction spans steps 3-5. Each step is safe to repeat, with one
asymmetry: a redelivered event bumps the counters again but never adds a
second user mark. A popped item is not put back when processing fails.
"""
import asyncio
from contextlib import suppress
from datetime import date, datetime
from enum import Enum
from typing import Callable, Optional, Union

from prometheus_client import Counter, Histogram
import structlog

from ..infrastructure.queue import EventQueue
from ..infrastructure.store import DocumentStore, InsertOutcome
from ..shared.errors import ValidationError
from ..shared.events import Event, parse_timestamp, utc_day, utcnow

log = structlog.get_logger()

WORKER_EVENTS = Counter(
    "worker_events_total",
    "Queue items handled by the aggregation worker",
    ["result"],  # "processed", "dropped", "error"
)
UNIQUE_MARKS = Counter(
    "unique_user_marks_total",
    "Unique-user mark attempts by outcome",
    ["outcome"],
)
WORKER_EVENT_SECONDS = Histogram(
    "worker_event_seconds",
    "Store writes per event",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5),
)


class HandleResult(str, Enum):
    PROCESSED = "processed"
    DROPPED = "dropped"


def _preview(payload: Union[str, bytes], limit: int = 200) -> str:
    text = payload.decode("utf-8", "replace") if isinstance(payload, bytes) else str(payload)
    return text[:limit]


class AggregationWorker:
    def __init__(
        self,
        queue: EventQueue,
        store: DocumentStore,
        error_pause: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.queue = queue
        self.store = store
        self.error_pause = error_pause
        self.clock = clock

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """
        Consume until `stop` is set. An item already popped is processed to
        completion before the loop exits; an idle wait is abandoned at once.
        """
        stop = stop or asyncio.Event()
        log.info("worker_started")
        while not stop.is_set():
            try:
                payload = await self._next_payload(stop)
                if payload is None:
                    break
                await self.handle(payload)
            except Exception as e:
                WORKER_EVENTS.labels("error").inc()
                log.error("worker_loop_error", error=str(e), exc_info=True)
                await self._pause(stop)
        log.info("worker_stopped")

    async def handle(self, payload: Union[str, bytes]) -> HandleResult:
        try:
            event = Event.from_wire(payload)
        except ValueError as e:  # pydantic.ValidationError included
            WORKER_EVENTS.labels("dropped").inc()
            log.warning(
                "worker_payload_dropped",
                error=str(e)[:300],
                payload=_preview(payload),
            )
            return HandleResult.DROPPED

        with WORKER_EVENT_SECONDS.time():
            now = self.clock()
            occurred_at = self._event_time(event, now)
            day = utc_day(occurred_at)

            outcome = await self.store.insert_event(event, occurred_at, day)
            if outcome is InsertOutcome.ALREADY_EXISTS:
                log.info("worker_event_redelivered", event_id=event.id)

            await self.store.increment_stats(event.site_id, day, event.path_key)

            if event.user_id:
                await self.record_unique_user(event.site_id, day, event.user_id, now)

        WORKER_EVENTS.labels("processed").inc()
        return HandleResult.PROCESSED

    async def record_unique_user(self, site_id: str, day: date, user_id: str, seen_at: datetime) -> InsertOutcome:
        try:
            outcome = await self.store.mark_unique_user(site_id, day, user_id, seen_at)
        except Exception as e:
            # a missing mark must not fail the event
            log.error("unique_user_mark_failed", site_id=site_id, date=day.isoformat(), error=str(e))
            outcome = InsertOutcome.FAILED
        UNIQUE_MARKS.labels(outcome.value).inc()
        return outcome

    def _event_time(self, event: Event, now: datetime) -> datetime:
        if not event.timestamp:
            return now
        try:
            return parse_timestamp(event.timestamp)
        except ValidationError:
            log.warning("worker_bad_timestamp", event_id=event.id, timestamp=event.timestamp)
            return now

    async def _next_payload(self, stop: asyncio.Event) -> Optional[str]:
        """Wait for an item or for `stop`, whichever comes first."""
        pop = asyncio.ensure_future(self.queue.pop())
        halt = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({pop, halt}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            halt.cancel()
            if not pop.done():
                pop.cancel()
                await asyncio.wait({pop})
        if pop.cancelled():
            return None
        return pop.result()

    async def _pause(self, stop: asyncio.Event) -> None:
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=self.error_pause)
