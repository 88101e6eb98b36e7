"""Session Resolver: maps events to sessions with bounded, TTL-evicted state.

The index is a cache, not a source of truth. A session whose entry was
evicted (inactive longer than the timeout, or pushed out when the project hit
its capacity) is treated as a brand-new session if it sends another event.
That double counts the visitor once in unique-visitor and bounce figures, an
accepted approximation that keeps memory bounded.

Mutating calls (``update``, ``evict_expired``) expect the caller to hold the
project's lock from ``ProjectLocks``; read helpers acquire it themselves.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from pulse.core.buckets import bucket_start
from pulse.core.exceptions import CapacityError
from pulse.core.locks import ProjectLocks
from pulse.schemas.event import EventRecord

logger = logging.getLogger(__name__)

# Bucket slots kept per session and granularity; the oldest goes first
MAX_BUCKET_SLOTS = 48


@dataclass
class WindowDelta:
    """What one event did to its session inside a single bucket."""

    bucket_start: datetime
    is_new_in_bucket: bool
    count_before: int
    count_after: int

    @property
    def bounce_retracted(self) -> bool:
        return self.count_before == 1 and self.count_after == 2


@dataclass
class SessionDelta:
    is_new_session: bool
    pageview_count_before: int
    pageview_count_after: int
    windows: dict[str, WindowDelta] = field(default_factory=dict)

    @property
    def bounce_retracted(self) -> bool:
        """The session just stopped being a bounce (1 -> 2 pageviews)."""
        return self.pageview_count_before == 1 and self.pageview_count_after == 2


@dataclass
class SessionState:
    session_id: str
    first_seen: datetime
    last_seen: datetime
    pageviews: int
    entry_url: str
    exit_url: str
    # granularity -> {bucket_start: pageviews in that bucket}
    buckets: dict[str, dict[datetime, int]] = field(default_factory=dict)

    @property
    def bounced(self) -> bool:
        return self.pageviews == 1

    @property
    def duration(self) -> timedelta:
        return self.last_seen - self.first_seen


class SessionResolver:
    def __init__(
        self,
        locks: ProjectLocks,
        *,
        granularities: list[str],
        timeout: timedelta = timedelta(minutes=30),
        max_sessions: int = 50_000,
    ):
        self.locks = locks
        self.granularities = list(granularities)
        self.timeout = timeout
        self.max_sessions = max_sessions
        self._index: dict[str, OrderedDict[str, SessionState]] = {}
        self._watermark: dict[str, datetime] = {}

    def _sessions(self, project_id: str) -> OrderedDict[str, SessionState]:
        sessions = self._index.get(project_id)
        if sessions is None:
            sessions = self._index[project_id] = OrderedDict()
        return sessions

    def _reserve(self, sessions: OrderedDict[str, SessionState]) -> None:
        if len(sessions) >= self.max_sessions:
            raise CapacityError(f"session index full at {self.max_sessions} entries")

    def update(self, event: EventRecord) -> SessionDelta:
        """Fold one event into its session; caller holds the project lock."""
        project_id = event.project_id
        sessions = self._sessions(project_id)
        ts = event.timestamp

        watermark = self._watermark.get(project_id)
        if watermark is None or ts > watermark:
            self._watermark[project_id] = ts
        self.evict_expired(project_id)

        state = sessions.get(event.session_id)
        if state is not None and ts - state.last_seen > self.timeout:
            # Inactivity gap: same id, new session
            del sessions[event.session_id]
            state = None

        is_new = state is None
        if state is None:
            try:
                self._reserve(sessions)
            except CapacityError:
                evicted_id, _ = sessions.popitem(last=False)
                logger.warning(
                    "Session index for project %s at capacity, evicted %s",
                    project_id,
                    evicted_id,
                )
            state = SessionState(
                session_id=event.session_id,
                first_seen=ts,
                last_seen=ts,
                pageviews=0,
                entry_url=event.url,
                exit_url=event.url,
            )
            sessions[event.session_id] = state

        before = state.pageviews
        state.pageviews += 1
        if ts >= state.last_seen:
            state.last_seen = ts
            state.exit_url = event.url
        if ts < state.first_seen:
            state.first_seen = ts
            state.entry_url = event.url
        sessions.move_to_end(event.session_id)

        windows: dict[str, WindowDelta] = {}
        for granularity in self.granularities:
            start = bucket_start(ts, granularity)
            slots = state.buckets.setdefault(granularity, {})
            if start not in slots and len(slots) >= MAX_BUCKET_SLOTS and start < min(slots):
                # Older than every tracked slot; counted as a view but never as a visitor
                windows[granularity] = WindowDelta(start, False, 0, 0)
                continue
            count_before = slots.get(start, 0)
            slots[start] = count_before + 1
            if len(slots) > MAX_BUCKET_SLOTS:
                del slots[min(slots)]
            windows[granularity] = WindowDelta(
                bucket_start=start,
                is_new_in_bucket=count_before == 0,
                count_before=count_before,
                count_after=count_before + 1,
            )

        return SessionDelta(
            is_new_session=is_new,
            pageview_count_before=before,
            pageview_count_after=state.pageviews,
            windows=windows,
        )

    def evict_expired(self, project_id: str) -> int:
        """Drop sessions idle longer than the timeout relative to the newest event."""
        sessions = self._index.get(project_id)
        watermark = self._watermark.get(project_id)
        if not sessions or watermark is None:
            return 0
        cutoff = watermark - self.timeout
        evicted = 0
        # Entries are ordered by last touch, so the stalest sit at the front
        while sessions:
            session_id, state = next(iter(sessions.items()))
            if state.last_seen >= cutoff:
                break
            del sessions[session_id]
            evicted += 1
        return evicted

    def get(self, project_id: str, session_id: str) -> SessionState | None:
        with self.locks.get(project_id):
            state = self._index.get(project_id, {}).get(session_id)
            if state is None:
                return None
            return SessionState(
                session_id=state.session_id,
                first_seen=state.first_seen,
                last_seen=state.last_seen,
                pageviews=state.pageviews,
                entry_url=state.entry_url,
                exit_url=state.exit_url,
                buckets={g: dict(slots) for g, slots in state.buckets.items()},
            )

    def active_sessions(self, project_id: str, since: datetime) -> int:
        """Sessions whose latest event is at or after ``since``."""
        with self.locks.get(project_id):
            sessions = self._index.get(project_id)
            if not sessions:
                return 0
            count = 0
            for state in reversed(sessions.values()):
                if state.last_seen >= since:
                    count += 1
            return count

    def size(self, project_id: str) -> int:
        with self.locks.get(project_id):
            return len(self._index.get(project_id, ()))
