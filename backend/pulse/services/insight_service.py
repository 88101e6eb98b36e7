import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta

from pulse.core.buckets import align_up, bucket_start, pick_granularity
from pulse.core.clock import utcnow
from pulse.core.exceptions import ValidationError
from pulse.schemas.analytics import Totals
from pulse.schemas.insight import InsightContext
from pulse.services.anomaly_service import AnomalyDetector
from pulse.services.window_aggregator import WindowAggregator, summarize

logger = logging.getLogger(__name__)

WINDOW_PATTERN = re.compile(r"^(\d{1,4})([hd])$")


def parse_window(window: str, maximum: timedelta | None = None) -> timedelta:
    """Turn "24h" / "30d" into a timedelta."""
    match = WINDOW_PATTERN.match(window or "")
    if not match:
        raise ValidationError(f"Invalid window {window!r}, expected e.g. 24h or 30d")
    amount, unit = int(match.group(1)), match.group(2)
    if amount < 1:
        raise ValidationError("Window must be at least 1h")
    length = timedelta(hours=amount) if unit == "h" else timedelta(days=amount)
    if maximum is not None and length > maximum:
        raise ValidationError(f"Window exceeds retention of {maximum.days} days")
    return length


class InsightContextBuilder:
    """Builds the insight summary from aggregator snapshots.

    Totals are cached per (project, window) and reused until the aggregator's
    version for the project moves or the clock enters a new hour.
    """

    def __init__(
        self,
        aggregator: WindowAggregator,
        detector: AnomalyDetector,
        *,
        top_k: int = 5,
        now: Callable[[], datetime] = utcnow,
    ):
        self.aggregator = aggregator
        self.detector = detector
        self.top_k = top_k
        self.now = now
        self._cache: dict[tuple[str, str], tuple[tuple[int, datetime], Totals]] = {}

    def _totals(
        self, project_id: str, window: str, start: datetime, end: datetime, granularity: str
    ) -> Totals:
        key = (project_id, window)
        stamp = (self.aggregator.version(project_id), bucket_start(end, "hourly"))
        cached = self._cache.get(key)
        if cached is not None and cached[0] == stamp:
            return cached[1]
        buckets = self.aggregator.snapshot(project_id, start, end, granularity)
        totals = summarize(buckets, top_k=self.top_k)
        self._cache[key] = (stamp, totals)
        logger.debug("Insight totals rebuilt for %s / %s", project_id, window)
        return totals

    async def build(self, project_id: str, window: str = "30d") -> InsightContext:
        length = parse_window(window, self.aggregator.retention)
        end = self.now()
        granularity = pick_granularity(length, self.aggregator.granularities)
        # Whole buckets only; a partial leading bucket would count events before start
        start = align_up(end - length, granularity)
        totals = self._totals(project_id, window, start, end, granularity)
        open_anomalies = await self.detector.open_count(project_id)
        return InsightContext(
            project_id=project_id,
            window=window,
            start=start,
            end=end,
            total_pageviews=totals.pageviews,
            unique_visitors=totals.unique_visitors,
            bounce_rate=totals.bounce_rate,
            top_pages=totals.top_pages,
            top_referrers=totals.top_referrers,
            open_anomalies=open_anomalies,
            sparse_data=totals.pageviews == 0,
        )
