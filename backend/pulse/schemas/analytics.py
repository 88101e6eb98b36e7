from datetime import datetime

from pydantic import BaseModel


class TopItem(BaseModel):
    """One entry of a ranked breakdown."""

    value: str
    count: int


class MetricBucketView(BaseModel):
    """Copy of one time bucket, with derived ratios."""

    bucket_start: datetime
    granularity: str  # "hourly" or "daily"
    pageviews: int
    unique_visitors: int
    bounced_sessions: int
    bounce_rate: float
    views_per_visit: float
    top_pages: list[TopItem]
    top_referrers: list[TopItem]
    top_countries: list[TopItem]
    top_browsers: list[TopItem]
    top_os: list[TopItem]
    top_channels: list[TopItem]
    top_events: list[TopItem]


class SnapshotResponse(BaseModel):
    """Metric snapshot over a time range."""

    project_id: str
    granularity: str
    start: datetime
    end: datetime
    buckets: list[MetricBucketView]


class Totals(BaseModel):
    """Buckets folded into a single set of figures.

    Unique visitors are summed per bucket, so a session spanning two buckets
    counts in both.
    """

    pageviews: int
    unique_visitors: int
    bounced_sessions: int
    bounce_rate: float
    views_per_visit: float
    top_pages: list[TopItem]
    top_referrers: list[TopItem]
    top_countries: list[TopItem]
    top_browsers: list[TopItem]
    top_os: list[TopItem]
    top_channels: list[TopItem]


class OverviewResponse(BaseModel):
    """Current period against the same-length previous period."""

    project_id: str
    period_start: datetime
    period_end: datetime
    current: Totals
    previous: Totals
    pageviews_change: float | None
    unique_visitors_change: float | None


class RealtimeResponse(BaseModel):
    """Live figures for the real-time view."""

    project_id: str
    active_visitors: int
    pageviews_last_hour: int
    new_sessions_last_hour: int
    as_of: datetime
