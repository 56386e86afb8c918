from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from prometheus_client import Counter
from pydantic import ValidationError as PydanticValidationError
import structlog

from ..infrastructure.queue import EventQueue
from ..shared.errors import QueueUnavailableError, ValidationError
from ..shared.events import Event, EventIn, format_timestamp, parse_timestamp, utcnow

log = structlog.get_logger()

INGEST_EVENTS = Counter(
    "ingest_events_total",
    "Events submitted to POST /event",
    ["result"],  # "accepted", "invalid", "error"
)

REQUIRED_FIELDS = ("site_id", "event_type")


def normalize_event(body: Any, now: datetime) -> Event:
    """Validate a submitted body and build the canonical Event."""
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    try:
        data = EventIn.model_validate(body)
    except PydanticValidationError as e:
        bad = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise ValidationError(f"fields must be strings: {', '.join(bad)}") from e

    missing = [name for name in REQUIRED_FIELDS if not getattr(data, name)]
    if missing:
        raise ValidationError.missing_fields(missing)

    ts = parse_timestamp(data.timestamp) if data.timestamp else now

    return Event(
        id=str(uuid4()),
        site_id=data.site_id,
        event_type=data.event_type,
        path=data.path or None,
        user_id=data.user_id or None,
        timestamp=format_timestamp(ts),
    )


class IngestionGateway:
    """Validates submissions and hands them to the queue. Nothing else is written."""

    def __init__(self, queue: EventQueue, clock: Callable[[], datetime] = utcnow) -> None:
        self.queue = queue
        self.clock = clock

    async def submit(self, body: Any) -> Event:
        try:
            event = normalize_event(body, self.clock())
        except ValidationError:
            INGEST_EVENTS.labels("invalid").inc()
            raise

        try:
            await self.queue.push(event.to_wire())
        except QueueUnavailableError:
            INGEST_EVENTS.labels("error").inc()
            raise

        INGEST_EVENTS.labels("accepted").inc()
        log.debug("event_enqueued", event_id=event.id, site_id=event.site_id)
        return event
