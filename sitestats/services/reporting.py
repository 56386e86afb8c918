from datetime import date, datetime
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from ..infrastructure.store import DailyStat, DocumentStore
from ..shared.errors import ValidationError
from ..shared.events import parse_timestamp, utc_day, utcnow

TOP_PATHS_LIMIT = 10


class PathViews(BaseModel):
    path: str
    views: int


class StatsSummary(BaseModel):
    site_id: str
    date: str
    total_views: int
    unique_users: int
    top_paths: List[PathViews]


def parse_day(value: Optional[str], now: datetime) -> date:
    """UTC calendar day of `value`; today (UTC) when it is absent."""
    if not value:
        return utc_day(now)
    try:
        return utc_day(parse_timestamp(value))
    except ValidationError as e:
        raise ValidationError("invalid date") from e


def rank_paths(paths: Dict[str, int], limit: int = TOP_PATHS_LIMIT) -> List[PathViews]:
    # views desc, then path asc so equal counts always come out the same way
    ranked = sorted(paths.items(), key=lambda kv: (-kv[1], kv[0]))
    return [PathViews(path=p, views=v) for p, v in ranked[:limit]]


class ReportingService:
    """Read side: one site's counters for one day. Never writes."""

    def __init__(
        self,
        store: DocumentStore,
        top_paths_limit: int = TOP_PATHS_LIMIT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.top_paths_limit = top_paths_limit
        self.clock = clock

    async def summary(self, site_id: Optional[str], day: Optional[str] = None) -> StatsSummary:
        if not site_id:
            raise ValidationError.missing_fields(["site_id"])
        resolved = parse_day(day, self.clock())

        stat = await self.store.get_daily_stat(site_id, resolved)
        if stat is None:
            stat = DailyStat(site_id=site_id, date=resolved)
        unique_users = await self.store.count_unique_users(site_id, resolved)

        return StatsSummary(
            site_id=site_id,
            date=resolved.isoformat(),
            total_views=stat.total_views,
            unique_users=unique_users,
            top_paths=rank_paths(stat.paths, self.top_paths_limit),
        )
