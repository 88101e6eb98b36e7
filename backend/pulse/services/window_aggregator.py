"""Window Aggregator: incrementally maintained time buckets per project.

Writers call ``update`` while holding the project's lock (one critical
section per event together with the Session Resolver). Readers copy bucket
headers and top-N lists under the same lock and compute everything else
outside it, so a snapshot never sees half an event and never holds writers
up for longer than the copy.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from urllib.parse import urlsplit, urlunsplit

from pulse.core.buckets import bucket_start, bucket_starts, span
from pulse.core.clock import as_utc, utcnow
from pulse.core.locks import ProjectLocks
from pulse.core.topn import TopN
from pulse.schemas.analytics import MetricBucketView, TopItem, Totals
from pulse.schemas.event import EventRecord
from pulse.services.session_resolver import SessionDelta

logger = logging.getLogger(__name__)

DIRECT = "Direct"

SEARCH_LABELS = frozenset({"google", "bing", "duckduckgo", "yahoo", "baidu", "yandex", "ecosia"})
SOCIAL_LABELS = frozenset(
    {"facebook", "twitter", "linkedin", "instagram", "reddit", "pinterest", "tiktok", "youtube"}
)
SOCIAL_HOSTS = frozenset({"t.co", "x.com", "lnkd.in"})
EMAIL_LABELS = frozenset({"mail", "email", "newsletter", "outlook"})

BREAKDOWNS = ("pages", "referrers", "countries", "browsers", "os", "channels", "events")


def _host(url: str | None) -> str | None:
    if not url:
        return None
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def referrer_host(referrer: str | None, page_url: str | None = None) -> str:
    """Host of the referrer; empty, unparsable or same-origin referrers are Direct."""
    host = _host(referrer)
    if host is None:
        return DIRECT
    if host == _host(page_url):
        return DIRECT
    return host


def classify_channel(host: str) -> str:
    if host == DIRECT:
        return DIRECT
    labels = set(host.split("."))
    if labels & EMAIL_LABELS:
        return "Email"
    if labels & SEARCH_LABELS:
        return "Search"
    if host in SOCIAL_HOSTS or labels & SOCIAL_LABELS:
        return "Social"
    return "Referral"


def page_key(url: str) -> str:
    """URL without query string or fragment."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", "")) or url


def _ratio(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator else 0.0


@dataclass
class MetricBucket:
    project_id: str
    granularity: str
    bucket_start: datetime
    top_capacity: int
    tracking_factor: int
    pageviews: int = 0
    unique_visitors: int = 0
    bounced_sessions: int = 0
    tops: dict[str, TopN] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in BREAKDOWNS:
            self.tops[name] = TopN(self.top_capacity, self.tracking_factor)

    def apply(
        self,
        *,
        is_new_in_bucket: bool,
        bounce_retracted: bool,
        page: str,
        referrer: str,
        channel: str,
        event: EventRecord,
    ) -> None:
        self.pageviews += 1
        if is_new_in_bucket:
            self.unique_visitors += 1
            self.bounced_sessions += 1
        elif bounce_retracted:
            self.bounced_sessions -= 1
        self.tops["pages"].add(page)
        self.tops["referrers"].add(referrer)
        self.tops["countries"].add(event.country)
        self.tops["browsers"].add(event.browser)
        self.tops["os"].add(event.os)
        self.tops["channels"].add(channel)
        self.tops["events"].add(event.event_name)

    def freeze(self) -> "FrozenBucket":
        """Plain copy taken under the project lock."""
        return FrozenBucket(
            granularity=self.granularity,
            bucket_start=self.bucket_start,
            pageviews=self.pageviews,
            unique_visitors=self.unique_visitors,
            bounced_sessions=self.bounced_sessions,
            tops={name: top.top() for name, top in self.tops.items()},
        )


@dataclass(frozen=True)
class FrozenBucket:
    granularity: str
    bucket_start: datetime
    pageviews: int
    unique_visitors: int
    bounced_sessions: int
    tops: dict[str, list[tuple[str, int]]]

    def view(self) -> MetricBucketView:
        def items(name: str) -> list[TopItem]:
            return [TopItem(value=v, count=c) for v, c in self.tops[name]]

        return MetricBucketView(
            bucket_start=self.bucket_start,
            granularity=self.granularity,
            pageviews=self.pageviews,
            unique_visitors=self.unique_visitors,
            bounced_sessions=self.bounced_sessions,
            bounce_rate=_ratio(self.bounced_sessions, self.unique_visitors),
            views_per_visit=_ratio(self.pageviews, self.unique_visitors),
            top_pages=items("pages"),
            top_referrers=items("referrers"),
            top_countries=items("countries"),
            top_browsers=items("browsers"),
            top_os=items("os"),
            top_channels=items("channels"),
            top_events=items("events"),
        )


class RollingCounter:
    """Minute-resolution counts for rolling windows (last hour vs the one before)."""

    def __init__(self, window: timedelta = timedelta(hours=1)):
        self.window = window
        self._slots: dict[int, list[int]] = {}  # minute index -> [pageviews, new_sessions]

    @staticmethod
    def _minute(ts: datetime) -> int:
        return int(as_utc(ts).timestamp() // 60)

    def add(self, ts: datetime, *, new_session: bool) -> None:
        minute = self._minute(ts)
        slot = self._slots.get(minute)
        if slot is None:
            slot = self._slots[minute] = [0, 0]
        slot[0] += 1
        if new_session:
            slot[1] += 1

    def prune(self, now: datetime) -> None:
        floor = self._minute(now) - 2 * int(self.window.total_seconds() // 60) - 1
        for minute in [m for m in self._slots if m < floor]:
            del self._slots[minute]

    def windows(self, now: datetime) -> tuple[tuple[int, int], tuple[int, int]]:
        """((pageviews, new_sessions) in the last window, same for the one before)."""
        width = int(self.window.total_seconds() // 60)
        head = self._minute(now)
        current = [0, 0]
        previous = [0, 0]
        for minute, (pageviews, new_sessions) in self._slots.items():
            age = head - minute
            if 0 <= age < width:
                target = current
            elif width <= age < 2 * width:
                target = previous
            else:
                continue
            target[0] += pageviews
            target[1] += new_sessions
        return (current[0], current[1]), (previous[0], previous[1])


@dataclass(frozen=True)
class MetricReadings:
    """Numbers the anomaly baselines work from, taken in one critical section."""

    pageviews: int
    previous_pageviews: int
    new_sessions: int
    previous_new_sessions: int
    bounce_rate: float
    previous_bounce_rate: float
    bounce_sample: int
    previous_bounce_sample: int


class WindowAggregator:
    def __init__(
        self,
        locks: ProjectLocks,
        *,
        granularities: list[str],
        top_n_capacity: int = 20,
        tracking_factor: int = 4,
        retention: timedelta = timedelta(days=90),
        rolling_window: timedelta = timedelta(hours=1),
        now: Callable[[], datetime] = utcnow,
    ):
        self.locks = locks
        self.granularities = list(granularities)
        self.top_n_capacity = top_n_capacity
        self.tracking_factor = tracking_factor
        self.retention = retention
        self.rolling_window = rolling_window
        self.now = now
        self._buckets: dict[str, dict[tuple[str, datetime], MetricBucket]] = {}
        self._rolling: dict[str, RollingCounter] = {}
        self._versions: dict[str, int] = {}

    def accepts(self, timestamp: datetime) -> bool:
        """Events older than retention are stored but never aggregated."""
        return as_utc(timestamp) >= self.now() - self.retention

    def update(self, event: EventRecord, delta: SessionDelta) -> bool:
        """Apply one event; caller holds the project lock. Returns False if skipped."""
        if not self.accepts(event.timestamp):
            logger.debug("Event %s older than retention, not aggregated", event.id)
            return False

        project_id = event.project_id
        buckets = self._buckets.get(project_id)
        if buckets is None:
            buckets = self._buckets[project_id] = {}

        page = page_key(event.url)
        referrer = referrer_host(event.referrer, event.url)
        channel = classify_channel(referrer)

        for granularity, window in delta.windows.items():
            key = (granularity, window.bucket_start)
            bucket = buckets.get(key)
            if bucket is None:
                bucket = buckets[key] = MetricBucket(
                    project_id=project_id,
                    granularity=granularity,
                    bucket_start=window.bucket_start,
                    top_capacity=self.top_n_capacity,
                    tracking_factor=self.tracking_factor,
                )
            bucket.apply(
                is_new_in_bucket=window.is_new_in_bucket,
                bounce_retracted=window.bounce_retracted,
                page=page,
                referrer=referrer,
                channel=channel,
                event=event,
            )

        rolling = self._rolling.get(project_id)
        if rolling is None:
            rolling = self._rolling[project_id] = RollingCounter(self.rolling_window)
        rolling.add(event.timestamp, new_session=delta.is_new_session)
        self._versions[project_id] = self._versions.get(project_id, 0) + 1
        return True

    def version(self, project_id: str) -> int:
        """Bumped on every applied event; used to invalidate derived caches."""
        return self._versions.get(project_id, 0)

    def projects(self) -> list[str]:
        return list(self._buckets)

    def snapshot(
        self, project_id: str, start: datetime, end: datetime, granularity: str
    ) -> list[MetricBucketView]:
        """Buckets overlapping [start, end) in time order; empty range yields []."""
        starts = bucket_starts(start, end, granularity)
        if not starts:
            return []
        with self.locks.get(project_id):
            buckets = self._buckets.get(project_id, {})
            frozen = [buckets[(granularity, s)].freeze() for s in starts if (granularity, s) in buckets]
        return [f.view() for f in frozen]

    def readings(self, project_id: str, now: datetime | None = None) -> MetricReadings:
        now = as_utc(now) if now is not None else self.now()
        hour = timedelta(hours=1)
        last_complete = bucket_start(now, "hourly") - hour
        with self.locks.get(project_id):
            rolling = self._rolling.get(project_id)
            if rolling is not None:
                rolling.prune(now)
                (pageviews, new_sessions), (prev_pageviews, prev_new_sessions) = rolling.windows(now)
            else:
                pageviews = new_sessions = prev_pageviews = prev_new_sessions = 0
            buckets = self._buckets.get(project_id, {})
            current = buckets.get(("hourly", last_complete))
            previous = buckets.get(("hourly", last_complete - hour))
            cur = (current.bounced_sessions, current.unique_visitors) if current else (0, 0)
            prev = (previous.bounced_sessions, previous.unique_visitors) if previous else (0, 0)
        return MetricReadings(
            pageviews=pageviews,
            previous_pageviews=prev_pageviews,
            new_sessions=new_sessions,
            previous_new_sessions=prev_new_sessions,
            bounce_rate=_ratio(*cur),
            previous_bounce_rate=_ratio(*prev),
            bounce_sample=cur[1],
            previous_bounce_sample=prev[1],
        )

    def prune(self) -> int:
        """Drop buckets whose span ended before the retention cutoff."""
        cutoff = self.now() - self.retention
        dropped = 0
        for project_id in list(self._buckets):
            with self.locks.get(project_id):
                buckets = self._buckets[project_id]
                stale = [k for k in buckets if k[1] + span(k[0]) <= cutoff]
                for key in stale:
                    del buckets[key]
                dropped += len(stale)
        if dropped:
            logger.info("Pruned %d buckets past retention", dropped)
        return dropped


def summarize(buckets: list[MetricBucketView], top_k: int | None = None) -> Totals:
    """Fold bucket views into totals, merging breakdowns by summed count."""

    def merged(attr: str) -> list[TopItem]:
        counts: dict[str, int] = {}
        for bucket in buckets:
            for item in getattr(bucket, attr):
                counts[item.value] = counts.get(item.value, 0) + item.count
        # sorted() is stable, so ties keep first-seen order
        ranked = sorted(counts.items(), key=lambda kv: -kv[1])
        if top_k is not None:
            ranked = ranked[:top_k]
        return [TopItem(value=v, count=c) for v, c in ranked]

    pageviews = sum(b.pageviews for b in buckets)
    unique_visitors = sum(b.unique_visitors for b in buckets)
    bounced = sum(b.bounced_sessions for b in buckets)
    return Totals(
        pageviews=pageviews,
        unique_visitors=unique_visitors,
        bounced_sessions=bounced,
        bounce_rate=_ratio(bounced, unique_visitors),
        views_per_visit=_ratio(pageviews, unique_visitors),
        top_pages=merged("top_pages"),
        top_referrers=merged("top_referrers"),
        top_countries=merged("top_countries"),
        top_browsers=merged("top_browsers"),
        top_os=merged("top_os"),
        top_channels=merged("top_channels"),
    )
