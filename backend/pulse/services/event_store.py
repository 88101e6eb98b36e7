import base64
import binascii
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime
from typing import TypeVar

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulse.core.clock import MonotonicClock, as_utc, utcnow
from pulse.core.exceptions import ValidationError
from pulse.core.retry import run_bounded
from pulse.models.event import Event
from pulse.schemas.event import EventFilters, EventRecord, NewEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 500


def encode_cursor(timestamp: datetime, event_id: int) -> str:
    raw = f"{as_utc(timestamp).isoformat()}|{event_id}".encode()
    return base64.urlsafe_b64encode(raw).decode()


def decode_cursor(cursor: str) -> tuple[datetime, int]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode()).decode()
        ts, event_id = raw.rsplit("|", 1)
        return as_utc(datetime.fromisoformat(ts)), int(event_id)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise ValidationError("Invalid cursor") from None


class EventStore:
    """Append-only durable record of raw events, keyed by project and time.

    Every call is bounded: each attempt has a timeout, connection-level
    failures are retried with exponential backoff, and exhaustion surfaces as
    TransientStoreError rather than hanging.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: MonotonicClock | None = None,
        timeout: float = 5.0,
        retry_attempts: int = 3,
        retry_wait_max: float = 2.0,
    ):
        self.session_factory = session_factory
        self.clock = clock or MonotonicClock()
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_wait_max = retry_wait_max

    async def _run(self, op_name: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await run_bounded(
            op_name,
            fn,
            attempts=self.retry_attempts,
            timeout=self.timeout,
            wait_max=self.retry_wait_max,
        )

    @staticmethod
    def check(event: NewEvent) -> None:
        missing = [
            name
            for name, value in (
                ("project_id", event.project_id),
                ("url", event.url),
                ("session_id", event.session_id),
            )
            if not (value or "").strip()
        ]
        if missing:
            raise ValidationError.missing(missing)

    async def append(self, event: NewEvent, *, timestamp: datetime | None = None) -> EventRecord:
        """Durably store one event and return it with its assigned id and timestamp.

        The row is written with ``processed_at`` NULL, which is its place in
        the processing outbox, so enqueueing is part of the same commit.
        ``timestamp`` is for trusted backfill only; live ingestion always
        takes the per-project monotonic clock.
        """
        self.check(event)
        assigned = as_utc(timestamp) if timestamp is not None else self.clock.next(event.project_id)

        async def op() -> EventRecord:
            async with self.session_factory() as session:
                row = Event(**event.model_dump(), timestamp=assigned)
                session.add(row)
                await session.commit()
                return EventRecord.model_validate(row)

        return await self._run("append", op)

    async def fetch_page(
        self,
        project_id: str | None,
        start: datetime,
        end: datetime,
        filters: EventFilters | None = None,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        cursor: str | None = None,
    ) -> tuple[list[EventRecord], str | None]:
        """Read one page ordered by (timestamp, id); returns (events, next_cursor)."""
        start, end = as_utc(start), as_utc(end)
        if start >= end or limit < 1:
            return [], None

        conditions = [Event.timestamp >= start, Event.timestamp < end]
        if project_id is not None:
            conditions.append(Event.project_id == project_id)
        if filters is not None:
            for column, value in filters.active().items():
                conditions.append(getattr(Event, column) == value)
        if cursor is not None:
            after_ts, after_id = decode_cursor(cursor)
            conditions.append(
                or_(
                    Event.timestamp > after_ts,
                    and_(Event.timestamp == after_ts, Event.id > after_id),
                )
            )

        stmt = select(Event).where(*conditions).order_by(Event.timestamp, Event.id).limit(limit)

        async def op() -> list[EventRecord]:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return [EventRecord.model_validate(row) for row in result.scalars().all()]

        events = await self._run("query", op)
        next_cursor = None
        if len(events) == limit:
            last = events[-1]
            next_cursor = encode_cursor(last.timestamp, last.id)
        return events, next_cursor

    async def query(
        self,
        project_id: str | None,
        start: datetime,
        end: datetime,
        filters: EventFilters | None = None,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AsyncIterator[EventRecord]:
        """Lazily yield events in [start, end) ascending by timestamp.

        Pure read: calling again restarts from the beginning. ``project_id``
        of None spans all projects (used for warm-up replay).
        """
        cursor: str | None = None
        while True:
            events, cursor = await self.fetch_page(
                project_id, start, end, filters, limit=page_size, cursor=cursor
            )
            for event in events:
                yield event
            if cursor is None:
                return

    async def fetch_unprocessed(
        self, older_than: datetime, *, limit: int = DEFAULT_PAGE_SIZE, exclude: set[int] | None = None
    ) -> list[EventRecord]:
        """Outbox entries written before ``older_than`` that were never applied."""
        conditions = [Event.processed_at.is_(None), Event.timestamp < as_utc(older_than)]
        if exclude:
            conditions.append(Event.id.notin_(exclude))
        stmt = select(Event).where(*conditions).order_by(Event.timestamp, Event.id).limit(limit)

        async def op() -> list[EventRecord]:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return [EventRecord.model_validate(row) for row in result.scalars().all()]

        return await self._run("fetch_unprocessed", op)

    async def mark_processed(self, event_ids: list[int]) -> int:
        if not event_ids:
            return 0
        stamp = utcnow()

        async def op() -> int:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(Event)
                    .where(Event.id.in_(event_ids), Event.processed_at.is_(None))
                    .values(processed_at=stamp)
                )
                await session.commit()
                return int(result.rowcount or 0)

        return await self._run("mark_processed", op)

    async def mark_processed_until(self, until: datetime) -> int:
        """Stamp every outbox entry at or before ``until`` (after a replay)."""
        stamp = utcnow()

        async def op() -> int:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(Event)
                    .where(Event.processed_at.is_(None), Event.timestamp <= as_utc(until))
                    .values(processed_at=stamp)
                )
                await session.commit()
                return int(result.rowcount or 0)

        return await self._run("mark_processed_until", op)

    async def purge_expired(self, before: datetime) -> int:
        """Delete events older than the retention cutoff."""

        async def op() -> int:
            async with self.session_factory() as session:
                result = await session.execute(delete(Event).where(Event.timestamp < as_utc(before)))
                await session.commit()
                return int(result.rowcount or 0)

        count = await self._run("purge_expired", op)
        if count:
            logger.info("Purged %d events older than %s", count, before.isoformat())
        return count

    async def warm_clock(self) -> None:
        """Seed the monotonic clock with the newest stored timestamp per project."""

        async def op() -> list[tuple[str, datetime]]:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Event.project_id, func.max(Event.timestamp)).group_by(Event.project_id)
                )
                return [(row[0], row[1]) for row in result.all()]

        for project_id, latest in await self._run("warm_clock", op):
            if latest is not None:
                self.clock.observe(project_id, latest)
