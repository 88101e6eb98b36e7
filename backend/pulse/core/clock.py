import threading
from datetime import datetime, timedelta, timezone

TICK = timedelta(microseconds=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime (SQLite hands back naive values)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MonotonicClock:
    """Hands out strictly increasing timestamps per project.

    Client clocks are never consulted; if the wall clock steps backwards the
    next timestamp is the previous one plus one microsecond.
    """

    def __init__(self) -> None:
        self._last: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def next(self, project_id: str, now: datetime | None = None) -> datetime:
        candidate = as_utc(now) if now is not None else utcnow()
        with self._lock:
            last = self._last.get(project_id)
            if last is not None and candidate <= last:
                candidate = last + TICK
            self._last[project_id] = candidate
        return candidate

    def observe(self, project_id: str, timestamp: datetime) -> None:
        """Raise the floor for a project (used when warming from storage)."""
        timestamp = as_utc(timestamp)
        with self._lock:
            last = self._last.get(project_id)
            if last is None or timestamp > last:
                self._last[project_id] = timestamp
