from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status

from pulse.api.deps import PERIOD_PATTERN, get_engine, parse_date_range
from pulse.core.config import settings
from pulse.core.limiter import limiter
from pulse.schemas.event import EventAccepted, EventFilters, EventIn, EventPage
from pulse.services.pipeline import AnalyticsEngine

router = APIRouter()


@router.post("", response_model=EventAccepted, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(f"{settings.INGEST_RATE_LIMIT_PER_MINUTE}/minute")
async def track_event(
    request: Request,
    data: EventIn,
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Record one pageview or custom event.

    The event is durable once this returns; aggregation happens asynchronously.
    Country comes from the trusted edge header, never from the payload.
    """
    record = await engine.submit(
        data,
        country=request.headers.get(settings.COUNTRY_HEADER),
        user_agent=request.headers.get("user-agent"),
    )
    return EventAccepted(id=record.id, timestamp=record.timestamp)


@router.get("/{project_id}", response_model=EventPage)
@limiter.limit(f"{settings.RATE_LIMIT_PER_MINUTE}/minute")
async def list_events(
    request: Request,
    project_id: str,
    period: str = Query("24h", pattern=PERIOD_PATTERN),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    limit: int = Query(100, ge=1, le=settings.EVENT_PAGE_SIZE_MAX),
    cursor: str | None = Query(None, max_length=256),
    event_name: str | None = Query(None),
    url: str | None = Query(None),
    session_id: str | None = Query(None),
    country: str | None = Query(None),
    browser: str | None = Query(None),
    os: str | None = Query(None),
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Page through raw events in ascending time order."""
    start_dt, end_dt = parse_date_range(start, end, period)
    filters = EventFilters(
        event_name=event_name,
        url=url,
        session_id=session_id,
        country=country,
        browser=browser,
        os=os,
    )
    events, next_cursor = await engine.store.fetch_page(
        project_id, start_dt, end_dt, filters, limit=limit, cursor=cursor
    )
    return EventPage(data=events, next_cursor=next_cursor)
