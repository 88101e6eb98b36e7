"""Analytics engine: wires the store, resolver, aggregator, detector and broker.

Write path: ``submit`` validates, appends (the row doubles as its outbox
entry) and hands the stored event to an in-process queue, then returns. A
drain task applies queued events in micro-batches, one critical section per
event per project, evaluates anomalies for the touched projects, publishes to
live subscribers and finally stamps the events processed. Anything that never
made it through (queue full, crash, store hiccup while marking) is picked up
again by the outbox sweeper.

Aggregates live in process memory, so one engine instance must own
aggregation for a database. Extra API processes can share live messages
through the Redis relay but would each hold partial metrics.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulse.core.buckets import align_up, bucket_count, pick_granularity, span
from pulse.core.clock import MonotonicClock, as_utc, utcnow
from pulse.core.config import Settings
from pulse.core.exceptions import PulseError, TransientStoreError, ValidationError
from pulse.core.locks import ProjectLocks
from pulse.core.stream import LiveRelay
from pulse.schemas.analytics import OverviewResponse, RealtimeResponse, SnapshotResponse
from pulse.schemas.anomaly import AnomalyResponse
from pulse.schemas.event import EventIn, EventRecord, NewEvent
from pulse.services.anomaly_service import AnomalyDetector, AnomalyPolicy, Evaluation, Outcome
from pulse.services.baselines import Baseline, baseline_from_settings
from pulse.services.event_service import EventService
from pulse.services.event_store import EventStore
from pulse.services.fanout import MESSAGE_ANOMALY, MESSAGE_EVENT, Broker
from pulse.services.insight_service import InsightContextBuilder
from pulse.services.session_resolver import SessionResolver
from pulse.services.window_aggregator import WindowAggregator, summarize

logger = logging.getLogger(__name__)

REPLAY_LOOKAHEAD = timedelta(minutes=1)


def _change(current: int, previous: int) -> float | None:
    """Percent change, or None when there is nothing to compare against."""
    if previous == 0:
        return None
    return round((current - previous) / previous * 100, 1)


class AnalyticsEngine:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        redis: Redis | None = None,
        now: Callable[[], datetime] = utcnow,
        baseline: Baseline | None = None,
    ):
        self.settings = settings
        self.now = now
        self.locks = ProjectLocks()
        self.clock = MonotonicClock()
        self.retention = timedelta(days=settings.EVENT_RETENTION_DAYS)

        self.store = EventStore(
            session_factory,
            clock=self.clock,
            timeout=settings.STORE_TIMEOUT_SECONDS,
            retry_attempts=settings.STORE_RETRY_ATTEMPTS,
            retry_wait_max=settings.STORE_RETRY_WAIT_MAX,
        )
        self.resolver = SessionResolver(
            self.locks,
            granularities=settings.BUCKET_GRANULARITIES,
            timeout=timedelta(minutes=settings.SESSION_TIMEOUT_MINUTES),
            max_sessions=settings.SESSION_INDEX_MAX_PER_PROJECT,
        )
        self.aggregator = WindowAggregator(
            self.locks,
            granularities=settings.BUCKET_GRANULARITIES,
            top_n_capacity=settings.TOP_N_CAPACITY,
            tracking_factor=settings.TOP_N_TRACKING_FACTOR,
            retention=self.retention,
            now=now,
        )
        self.detector = AnomalyDetector(
            session_factory,
            AnomalyPolicy.from_settings(settings),
            timeout=settings.STORE_TIMEOUT_SECONDS,
            retry_attempts=settings.STORE_RETRY_ATTEMPTS,
            retry_wait_max=settings.STORE_RETRY_WAIT_MAX,
        )
        self.baseline = baseline or baseline_from_settings(settings)
        self.broker = Broker(settings.SUBSCRIBER_QUEUE_SIZE, settings.REPLAY_BUFFER_SIZE)
        self.insights = InsightContextBuilder(
            self.aggregator, self.detector, top_k=settings.INSIGHT_TOP_K, now=now
        )

        self.relay: LiveRelay | None = None
        if redis is not None:
            self.relay = LiveRelay(self.broker, redis=redis)
            self.broker.add_forwarder(self.relay.publish)

        self._queue: asyncio.Queue[EventRecord] = asyncio.Queue(maxsize=settings.PIPELINE_QUEUE_SIZE)
        self._queued: set[int] = set()
        self._unmarked: set[int] = set()
        self._tasks: list[asyncio.Task[Any]] = []
        self.running = False

    # Lifecycle

    async def start(self) -> None:
        await self.store.warm_clock()
        await self.detector.load()
        if self.settings.REPLAY_ON_STARTUP:
            await self.replay()
        self._tasks = [
            asyncio.create_task(self._drain_loop(), name="pulse-drain"),
            asyncio.create_task(self._sweep_loop(), name="pulse-outbox-sweep"),
            asyncio.create_task(self._evaluate_loop(), name="pulse-evaluate"),
        ]
        if self.relay is not None:
            self._tasks.append(asyncio.create_task(self.relay.run(), name="pulse-relay"))
        self.running = True
        logger.info("Analytics engine started")

    async def stop(self) -> None:
        self.running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.broker.close()
        try:
            await self._flush_marks()
        except TransientStoreError:
            logger.warning("Could not stamp %d processed events on shutdown", len(self._unmarked))
        logger.info("Analytics engine stopped")

    async def replay(self) -> int:
        """Rebuild in-memory state from stored events within retention.

        Only the resolver and aggregator are fed; nothing is published and no
        anomaly is evaluated, since these events were already live once.
        """
        end = self.now() + REPLAY_LOOKAHEAD
        start = end - self.retention - REPLAY_LOOKAHEAD
        count = 0
        async for event in self.store.query(None, start, end):
            self._apply(event)
            count += 1
        await self.store.mark_processed_until(end)
        if count:
            logger.info("Replayed %d stored events into memory", count)
        return count

    # Write path

    async def submit(
        self, data: EventIn, *, country: str | None = None, user_agent: str | None = None
    ) -> EventRecord:
        """Validate, durably store and enqueue one tracking payload."""
        event = EventService.build(data, country=country, header_user_agent=user_agent)
        return await self.ingest(event)

    async def ingest(self, event: NewEvent, *, timestamp: datetime | None = None) -> EventRecord:
        record = await self.store.append(event, timestamp=timestamp)
        self._enqueue(record)
        return record

    def _enqueue(self, record: EventRecord) -> bool:
        if record.id in self._queued or record.id in self._unmarked:
            return False
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            logger.warning("Pipeline queue full, event %d left to the outbox sweeper", record.id)
            return False
        self._queued.add(record.id)
        return True

    def _apply(self, event: EventRecord) -> bool:
        """Resolver and aggregator update as one critical section."""
        if not self.aggregator.accepts(event.timestamp):
            return False
        with self.locks.get(event.project_id):
            delta = self.resolver.update(event)
            return self.aggregator.update(event, delta)

    async def process_batch(self, batch: list[EventRecord]) -> list[Evaluation]:
        # Off the queue now; anything not stamped below is the sweeper's again
        self._queued.difference_update(event.id for event in batch)
        touched: list[str] = []
        for event in batch:
            if event.id in self._unmarked:
                continue
            applied = self._apply(event)
            self._unmarked.add(event.id)
            if not applied:
                continue
            if event.project_id not in touched:
                touched.append(event.project_id)
            self.broker.publish(event.project_id, MESSAGE_EVENT, event.model_dump(mode="json"))

        evaluations: list[Evaluation] = []
        for project_id in touched:
            evaluations.extend(await self.evaluate_project(project_id))
        await self._flush_marks()
        return evaluations

    async def _flush_marks(self) -> None:
        if not self._unmarked:
            return
        ids = sorted(self._unmarked)
        await self.store.mark_processed(ids)
        self._unmarked.difference_update(ids)

    async def process_pending(self) -> list[Evaluation]:
        """Apply everything currently queued, inline."""
        evaluations: list[Evaluation] = []
        while True:
            batch: list[EventRecord] = []
            while len(batch) < self.settings.PIPELINE_BATCH_SIZE:
                try:
                    batch.append(self._queue.get_nowait())
                except asyncio.QueueEmpty:
                    break
            if not batch:
                return evaluations
            try:
                evaluations.extend(await self.process_batch(batch))
            finally:
                for _ in batch:
                    self._queue.task_done()

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait until every queued event has been applied."""
        if self.running:
            await asyncio.wait_for(self._queue.join(), timeout)
        else:
            await self.process_pending()

    async def _drain_loop(self) -> None:
        while True:
            first = await self._queue.get()
            batch = [first]
            while len(batch) < self.settings.PIPELINE_BATCH_SIZE:
                try:
                    batch.append(self._queue.get_nowait())
                except asyncio.QueueEmpty:
                    break
            try:
                await self.process_batch(batch)
            except PulseError as exc:
                logger.warning("Batch of %d events deferred: %s", len(batch), exc.detail)
            except Exception:
                logger.exception("Failed to process batch of %d events", len(batch))
            finally:
                for _ in batch:
                    self._queue.task_done()

    async def sweep_outbox(self) -> int:
        """Re-enqueue stored events that were never applied."""
        await self._flush_marks()
        older_than = self.now() - timedelta(seconds=self.settings.OUTBOX_GRACE_SECONDS)
        stale = await self.store.fetch_unprocessed(
            older_than,
            limit=self.settings.PIPELINE_BATCH_SIZE,
            exclude=self._queued | self._unmarked,
        )
        requeued = sum(1 for event in stale if self._enqueue(event))
        if requeued:
            logger.info("Outbox sweep re-enqueued %d events", requeued)
        return requeued

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.OUTBOX_SWEEP_INTERVAL_SECONDS)
            try:
                await self.sweep_outbox()
            except PulseError as exc:
                logger.warning("Outbox sweep failed: %s", exc.detail)
            except Exception:
                logger.exception("Outbox sweep failed")

    # Anomalies

    async def evaluate_project(
        self, project_id: str, now: datetime | None = None
    ) -> list[Evaluation]:
        readings = self.aggregator.readings(project_id, now)
        results: list[Evaluation] = []
        for observation in self.baseline.observations(readings):
            evaluation = await self.detector.evaluate(
                project_id, observation.metric_type, observation.actual, observation.expected
            )
            if evaluation.outcome is Outcome.RAISED and evaluation.anomaly is not None:
                self.broker.publish(
                    project_id, MESSAGE_ANOMALY, evaluation.anomaly.model_dump(mode="json")
                )
            results.append(evaluation)
        return results

    async def _evaluate_loop(self) -> None:
        # Drops only show up when nothing arrives, so evaluate on a timer too
        while True:
            await asyncio.sleep(self.settings.ANOMALY_EVAL_INTERVAL_SECONDS)
            for project_id in self.aggregator.projects():
                with self.locks.get(project_id):
                    self.resolver.evict_expired(project_id)
                try:
                    await self.evaluate_project(project_id)
                except PulseError as exc:
                    logger.warning("Anomaly evaluation for %s failed: %s", project_id, exc.detail)
                except Exception:
                    logger.exception("Anomaly evaluation for %s failed", project_id)
            self.aggregator.prune()

    async def resolve_anomaly(self, anomaly_id: int) -> AnomalyResponse:
        return await self.detector.resolve(anomaly_id)

    # Read path

    def _check_granularity(self, granularity: str) -> None:
        if granularity not in self.aggregator.granularities:
            raise ValidationError(f"Unsupported granularity: {granularity}")

    def _clamp(
        self, start: datetime, end: datetime, granularity: str
    ) -> tuple[datetime, datetime]:
        """Limit a requested range to what memory can hold and reject oversized ones."""
        now = self.now()
        start = max(as_utc(start), now - self.retention)
        end = min(as_utc(end), now + span(granularity))
        start = min(start, end)
        if bucket_count(start, end, granularity) > self.settings.SNAPSHOT_MAX_BUCKETS:
            raise ValidationError(
                f"Range spans more than {self.settings.SNAPSHOT_MAX_BUCKETS} {granularity} buckets"
            )
        return start, end

    def snapshot(
        self, project_id: str, start: datetime, end: datetime, granularity: str
    ) -> SnapshotResponse:
        self._check_granularity(granularity)
        start, end = self._clamp(start, end, granularity)
        return SnapshotResponse(
            project_id=project_id,
            granularity=granularity,
            start=start,
            end=end,
            buckets=self.aggregator.snapshot(project_id, start, end, granularity),
        )

    def overview(self, project_id: str, start: datetime, end: datetime) -> OverviewResponse:
        """Whole buckets only, so the current and previous periods never share one."""
        length = max(as_utc(end) - as_utc(start), timedelta(0))
        granularity = pick_granularity(length, self.aggregator.granularities)
        start, end = self._clamp(start, end, granularity)
        start = min(align_up(start, granularity), end)
        previous_start = align_up(start - (end - start), granularity)
        top_k = self.settings.INSIGHT_TOP_K * 2
        current = summarize(self.aggregator.snapshot(project_id, start, end, granularity), top_k)
        previous = summarize(
            self.aggregator.snapshot(project_id, previous_start, start, granularity), top_k
        )
        return OverviewResponse(
            project_id=project_id,
            period_start=start,
            period_end=end,
            current=current,
            previous=previous,
            pageviews_change=_change(current.pageviews, previous.pageviews),
            unique_visitors_change=_change(current.unique_visitors, previous.unique_visitors),
        )

    def realtime(self, project_id: str) -> RealtimeResponse:
        now = self.now()
        since = now - timedelta(minutes=self.settings.ACTIVE_VISITOR_WINDOW_MINUTES)
        readings = self.aggregator.readings(project_id, now)
        return RealtimeResponse(
            project_id=project_id,
            active_visitors=self.resolver.active_sessions(project_id, since),
            pageviews_last_hour=readings.pageviews,
            new_sessions_last_hour=readings.new_sessions,
            as_of=now,
        )


def build_engine(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis: Redis | None = None,
) -> AnalyticsEngine:
    return AnalyticsEngine(settings, session_factory, redis=redis)
