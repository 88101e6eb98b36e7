from datetime import datetime, timedelta
from fastapi import Request

from pulse.core.clock import as_utc, utcnow
from pulse.core.exceptions import ValidationError
from pulse.services.pipeline import AnalyticsEngine

PERIODS = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
PERIOD_PATTERN = "^(1h|24h|7d|30d)$"


def get_engine(request: Request) -> AnalyticsEngine:
    """Dependency returning the engine built by the application lifespan."""
    return request.app.state.engine  # type: ignore[no-any-return]


def parse_date_range(
    start: datetime | None, end: datetime | None, period: str = "24h"
) -> tuple[datetime, datetime]:
    """Parse date range from query params or default period."""
    try:
        end = as_utc(end) if end is not None else utcnow()
        start = as_utc(start) if start is not None else end - PERIODS.get(period, PERIODS["24h"])
    except OverflowError:
        raise ValidationError("Date range out of bounds") from None
    return start, end
