from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..services.reporting import ReportingService, StatsSummary
from .deps import get_reporting

router = APIRouter()


@router.get("/stats", response_model=StatsSummary, summary="Daily totals, unique users and top paths for a site")
async def get_stats(
    site_id: Optional[str] = Query(default=None),
    date: Optional[str] = Query(default=None, description="YYYY-MM-DD, defaults to today (UTC)"),
    reporting: ReportingService = Depends(get_reporting),
):
    return await reporting.summary(site_id, date)
