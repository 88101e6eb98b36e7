from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request

from pulse.api.deps import PERIOD_PATTERN, get_engine, parse_date_range
from pulse.core.config import settings
from pulse.core.limiter import limiter
from pulse.schemas.analytics import OverviewResponse, RealtimeResponse, SnapshotResponse
from pulse.services.pipeline import AnalyticsEngine

router = APIRouter()


@router.get("/{project_id}/snapshot", response_model=SnapshotResponse)
@limiter.limit(f"{settings.RATE_LIMIT_PER_MINUTE}/minute")
async def get_snapshot(
    request: Request,
    project_id: str,
    period: str = Query("24h", pattern=PERIOD_PATTERN),
    granularity: str = Query("hourly", pattern="^(hourly|daily)$"),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Metric buckets overlapping the range, oldest first."""
    start_dt, end_dt = parse_date_range(start, end, period)
    return engine.snapshot(project_id, start_dt, end_dt, granularity)


@router.get("/{project_id}/overview", response_model=OverviewResponse)
@limiter.limit(f"{settings.RATE_LIMIT_PER_MINUTE}/minute")
async def get_overview(
    request: Request,
    project_id: str,
    period: str = Query("24h", pattern=PERIOD_PATTERN),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Totals for the period compared with the period before it."""
    start_dt, end_dt = parse_date_range(start, end, period)
    return engine.overview(project_id, start_dt, end_dt)


@router.get("/{project_id}/realtime", response_model=RealtimeResponse)
@limiter.limit(f"{settings.RATE_LIMIT_PER_MINUTE}/minute")
async def get_realtime(
    request: Request,
    project_id: str,
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Active visitors and rolling-hour counts."""
    return engine.realtime(project_id)
