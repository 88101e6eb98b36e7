from datetime import datetime, timedelta

from pulse.core.clock import as_utc

GRANULARITY_SPANS: dict[str, timedelta] = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
}


def span(granularity: str) -> timedelta:
    try:
        return GRANULARITY_SPANS[granularity]
    except KeyError:
        raise ValueError(f"Unknown granularity: {granularity}") from None


def bucket_start(timestamp: datetime, granularity: str) -> datetime:
    """Start of the UTC bucket containing ``timestamp``."""
    ts = as_utc(timestamp)
    if granularity == "hourly":
        return ts.replace(minute=0, second=0, microsecond=0)
    if granularity == "daily":
        return ts.replace(hour=0, minute=0, second=0, microsecond=0)
    raise ValueError(f"Unknown granularity: {granularity}")


def bucket_starts(start: datetime, end: datetime, granularity: str) -> list[datetime]:
    """Every bucket start overlapping [start, end), oldest first."""
    start, end = as_utc(start), as_utc(end)
    if start >= end:
        return []
    step = span(granularity)
    current = bucket_start(start, granularity)
    starts = []
    while current < end:
        starts.append(current)
        current += step
    return starts


def pick_granularity(length: timedelta, available: list[str]) -> str:
    """Hourly buckets for ranges up to two days, daily beyond that."""
    if "hourly" in available and (length <= timedelta(days=2) or "daily" not in available):
        return "hourly"
    return "daily" if "daily" in available else available[0]


def align_up(timestamp: datetime, granularity: str) -> datetime:
    """First bucket start at or after ``timestamp``."""
    start = bucket_start(timestamp, granularity)
    return start if start == as_utc(timestamp) else start + span(granularity)


def bucket_count(start: datetime, end: datetime, granularity: str) -> int:
    """Number of buckets overlapping [start, end), without building them."""
    start, end = as_utc(start), as_utc(end)
    if start >= end:
        return 0
    step = span(granularity)
    return -(-(end - bucket_start(start, granularity)) // step)
