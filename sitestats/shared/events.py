"""
Event schema shared by the gateway, the worker and the reporting side.

The queue carries `Event.to_wire()` JSON; the worker reads it back with
`Event.from_wire()`. Timestamps are ISO-8601 UTC strings on the wire so a
bad value never makes an otherwise valid payload unreadable.
"""
from datetime import date, datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError

DEFAULT_PATH = "/"


class EventIn(BaseModel):
    """Body of POST /event. Presence checks happen in the gateway."""

    model_config = ConfigDict(extra="ignore")

    site_id: Optional[str] = None
    event_type: Optional[str] = None
    path: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: Optional[str] = None


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    site_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    path: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: Optional[str] = None

    @property
    def path_key(self) -> str:
        return self.path or DEFAULT_PATH

    def to_wire(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_wire(cls, payload: Union[str, bytes]) -> "Event":
        # raises pydantic.ValidationError on bad JSON as well as bad shape
        return cls.model_validate_json(payload)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 date or datetime; naive values are taken as UTC."""
    try:
        ts = datetime.fromisoformat(value.strip())
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        # offsets at the ends of the calendar can leave datetime's range
        return ts.astimezone(timezone.utc)
    except (AttributeError, TypeError, ValueError, OverflowError) as e:
        raise ValidationError("timestamp must be ISO format") from e


def format_timestamp(ts: datetime) -> str:
    """`2025-11-12T08:30:00.000Z`"""
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_day(ts: datetime) -> date:
    return ts.astimezone(timezone.utc).date()
