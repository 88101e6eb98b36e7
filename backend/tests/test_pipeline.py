"""End-to-end tests for the analytics engine write and read paths."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from pulse.core.clock import utcnow
from pulse.core.exceptions import ValidationError
from pulse.schemas.event import EventIn, NewEvent
from pulse.services.anomaly_service import AnomalyState, Outcome
from pulse.services.baselines import TRAFFIC_SPIKE
from pulse.services.pipeline import AnalyticsEngine


def _payload(session_id: str = "sess_1", url: str = "https://example.com/", **extra) -> EventIn:
    return EventIn(projectId="proj_1", url=url, sessionId=session_id, **extra)


async def _submit_many(engine, count: int, *, prefix: str = "s") -> None:
    for i in range(count):
        await engine.submit(_payload(session_id=f"{prefix}{i}"))


def _hourly_totals(engine):
    now = utcnow()
    buckets = engine.aggregator.snapshot(
        "proj_1", now - timedelta(hours=2), now + timedelta(minutes=1), "hourly"
    )
    return sum(b.pageviews for b in buckets), sum(b.unique_visitors for b in buckets)


@pytest.mark.asyncio
async def test_submit_then_drain_updates_metrics(analytics_engine):
    record = await analytics_engine.submit(
        _payload(userAgent="Mozilla/5.0 (Windows NT 10.0) Chrome/120"), country="DE"
    )
    assert record.id > 0
    assert record.country == "DE"
    assert record.browser == "Chrome"

    # Stored but not yet applied
    assert _hourly_totals(analytics_engine) == (0, 0)

    await analytics_engine.drain()
    assert _hourly_totals(analytics_engine) == (1, 1)
    assert await analytics_engine.store.fetch_unprocessed(utcnow() + timedelta(seconds=1)) == []


@pytest.mark.asyncio
async def test_missing_fields_rejected_before_store(analytics_engine):
    with pytest.raises(ValidationError) as exc_info:
        await analytics_engine.submit(EventIn(projectId="proj_1"))
    assert exc_info.value.fields == ["url", "sessionId"]
    events, _ = await analytics_engine.store.fetch_page(
        None, utcnow() - timedelta(hours=1), utcnow() + timedelta(hours=1)
    )
    assert events == []


@pytest.mark.asyncio
async def test_timestamps_are_server_assigned_and_increasing(analytics_engine):
    records = [await analytics_engine.submit(_payload()) for _ in range(5)]
    stamps = [r.timestamp for r in records]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == 5


@pytest.mark.asyncio
async def test_live_subscriber_sees_events(analytics_engine):
    sub = analytics_engine.broker.subscribe("proj_1")
    await analytics_engine.submit(_payload(url="https://example.com/pricing"))
    await analytics_engine.drain()

    message = await sub.get(timeout=1)
    assert message.type == "event"
    assert message.data["url"] == "https://example.com/pricing"


@pytest.mark.asyncio
async def test_fixed_baseline_spike_raises_one_anomaly(make_engine):
    """100 visits against an expected 50 is exactly at threshold; the 101st trips it."""
    engine = make_engine(ANOMALY_BASELINE="fixed", ANOMALY_FIXED_BASELINE=50)
    sub = engine.broker.subscribe("proj_1")

    await _submit_many(engine, 100)
    await engine.drain()
    assert engine.detector.state("proj_1", TRAFFIC_SPIKE) is AnomalyState.NORMAL

    await engine.submit(_payload(session_id="s100"))
    await engine.drain()
    assert engine.detector.state("proj_1", TRAFFIC_SPIKE) is AnomalyState.ACTIVE

    items, total = await engine.detector.list_anomalies("proj_1")
    assert total == 1
    assert items[0].metric_type == TRAFFIC_SPIKE
    assert items[0].expected_value == 50
    assert items[0].actual_value == 101

    anomalies = []
    while (message := await sub.get(timeout=0.05)) is not None:
        if message.type == "anomaly":
            anomalies.append(message)
    assert len(anomalies) == 1
    assert anomalies[0].data["metric_type"] == TRAFFIC_SPIKE


@pytest.mark.asyncio
async def test_active_spike_updates_instead_of_duplicating(make_engine):
    engine = make_engine(ANOMALY_BASELINE="fixed", ANOMALY_FIXED_BASELINE=50)
    await _submit_many(engine, 101)
    await engine.drain()

    await engine.submit(_payload(session_id="late"))
    await engine.drain()
    results = await engine.evaluate_project("proj_1")
    spike = [r for r in results if r.anomaly and r.anomaly.metric_type == TRAFFIC_SPIKE]
    assert spike[0].outcome is Outcome.UPDATED
    assert spike[0].anomaly.actual_value == 102
    assert await engine.detector.open_count("proj_1") == 1


@pytest.mark.asyncio
async def test_resolve_anomaly_through_engine(make_engine):
    engine = make_engine(ANOMALY_BASELINE="fixed", ANOMALY_FIXED_BASELINE=1)
    await _submit_many(engine, 3)
    await engine.drain()
    (anomaly,), _ = await engine.detector.list_anomalies("proj_1")

    resolved = await engine.resolve_anomaly(anomaly.id)
    assert resolved.is_resolved
    assert (await engine.resolve_anomaly(anomaly.id)).resolved_at == resolved.resolved_at


@pytest.mark.asyncio
async def test_replay_rebuilds_state_without_publishing(make_engine):
    writer = make_engine()
    for i in range(3):
        await writer.store.append(
            NewEvent(project_id="proj_1", url="https://example.com/", session_id=f"s{i}")
        )

    engine = make_engine(ANOMALY_BASELINE="fixed", ANOMALY_FIXED_BASELINE=1)
    sub = engine.broker.subscribe("proj_1")
    assert await engine.replay() == 3
    assert _hourly_totals(engine) == (3, 3)
    assert await sub.get(timeout=0.05) is None
    assert await engine.detector.open_count("proj_1") == 0
    assert await engine.store.fetch_unprocessed(utcnow() + timedelta(seconds=1)) == []


@pytest.mark.asyncio
async def test_outbox_sweep_recovers_unapplied_events(make_engine):
    engine = make_engine(OUTBOX_GRACE_SECONDS=0)
    # Written but never handed to the queue, as after a crash
    await engine.store.append(
        NewEvent(project_id="proj_1", url="https://example.com/", session_id="orphan")
    )
    assert await engine.sweep_outbox() == 1
    # Already queued, so a second sweep leaves it alone
    assert await engine.sweep_outbox() == 0
    await engine.drain()
    assert _hourly_totals(engine) == (1, 1)
    assert await engine.sweep_outbox() == 0


@pytest.mark.asyncio
async def test_full_queue_defers_to_sweeper(make_engine):
    engine = make_engine(PIPELINE_QUEUE_SIZE=1, OUTBOX_GRACE_SECONDS=0)
    await _submit_many(engine, 3)
    await engine.drain()
    assert _hourly_totals(engine) == (1, 1)

    for _ in range(2):
        assert await engine.sweep_outbox() == 1
        await engine.drain()
    assert _hourly_totals(engine) == (3, 3)
    assert await engine.sweep_outbox() == 0


@pytest.mark.asyncio
async def test_queued_event_not_enqueued_twice(analytics_engine):
    record = await analytics_engine.submit(_payload())
    assert analytics_engine._enqueue(record) is False
    await analytics_engine.drain()
    assert _hourly_totals(analytics_engine) == (1, 1)


@pytest.mark.asyncio
async def test_realtime_counts_recent_sessions(analytics_engine):
    for session_id in ("a", "a", "b"):
        await analytics_engine.submit(_payload(session_id=session_id))
    await analytics_engine.drain()

    live = analytics_engine.realtime("proj_1")
    assert live.active_visitors == 2
    assert live.pageviews_last_hour == 3
    assert live.new_sessions_last_hour == 2


@pytest.mark.asyncio
async def test_overview_without_previous_period(analytics_engine):
    await _submit_many(analytics_engine, 4)
    await analytics_engine.drain()
    now = utcnow()
    overview = analytics_engine.overview("proj_1", now - timedelta(hours=24), now + timedelta(minutes=1))
    assert overview.current.pageviews == 4
    assert overview.previous.pageviews == 0
    assert overview.pageviews_change is None


def test_snapshot_rejects_unknown_granularity(analytics_engine):
    now = utcnow()
    with pytest.raises(ValidationError):
        analytics_engine.snapshot("proj_1", now - timedelta(hours=1), now, "weekly")


@pytest.mark.asyncio
async def test_start_and_stop(analytics_engine):
    await analytics_engine.start()
    assert analytics_engine.running
    await analytics_engine.submit(_payload())
    await analytics_engine.drain(timeout=5)
    assert _hourly_totals(analytics_engine) == (1, 1)
    await analytics_engine.stop()
    assert not analytics_engine.running


@pytest.mark.asyncio
async def test_failed_batch_leaves_nothing_marked_as_queued(make_engine, monkeypatch):
    engine = make_engine(OUTBOX_GRACE_SECONDS=0)
    await _submit_many(engine, 3)
    apply = engine._apply

    def failing(event):
        if event.session_id == "s1":
            raise RuntimeError("aggregator blew up")
        return apply(event)

    monkeypatch.setattr(engine, "_apply", failing)
    with pytest.raises(RuntimeError):
        await engine.drain()
    assert engine._queued == set()

    monkeypatch.setattr(engine, "_apply", apply)
    assert await engine.sweep_outbox() == 2
    await engine.drain()
    assert _hourly_totals(engine) == (3, 3)
    assert await engine.sweep_outbox() == 0


@pytest.mark.asyncio
async def test_sweep_loop_survives_unexpected_errors(make_engine, monkeypatch, caplog):
    engine = make_engine(OUTBOX_SWEEP_INTERVAL_SECONDS=0.01)
    calls = []

    async def broken_sweep():
        calls.append(1)
        raise RuntimeError("database driver bug")

    monkeypatch.setattr(engine, "sweep_outbox", broken_sweep)
    task = asyncio.create_task(engine._sweep_loop())
    await asyncio.sleep(0.1)
    assert not task.done()
    assert len(calls) >= 2
    assert "Outbox sweep failed" in caplog.text
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_evaluate_loop_survives_unexpected_errors(make_engine, make_record, monkeypatch):
    engine = make_engine(ANOMALY_EVAL_INTERVAL_SECONDS=0.01)
    assert engine._apply(make_record(timestamp=utcnow()))
    calls = []

    async def broken_evaluate(project_id):
        calls.append(project_id)
        raise RuntimeError("baseline returned garbage")

    monkeypatch.setattr(engine, "evaluate_project", broken_evaluate)
    task = asyncio.create_task(engine._evaluate_loop())
    await asyncio.sleep(0.1)
    assert not task.done()
    assert len(calls) >= 2
    assert set(calls) == {"proj_1"}
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_engine(make_settings, session_factory) -> AnalyticsEngine:
    return AnalyticsEngine(make_settings(), session_factory, now=lambda: NOW)


def test_overview_uses_whole_buckets_only(fixed_engine, make_record):
    for minute in (10, 70):
        fixed_engine._apply(make_record(timestamp=NOW.replace(hour=7) + timedelta(minutes=minute)))

    # 07:30 to 10:30 covers 08:00-10:30; the previous period is 06:00-08:00
    overview = fixed_engine.overview(
        "proj_1", NOW.replace(hour=7, minute=30), NOW.replace(hour=10, minute=30)
    )
    assert overview.period_start == NOW.replace(hour=8)
    assert overview.current.pageviews == 1
    assert overview.previous.pageviews == 1
    assert overview.pageviews_change == 0.0


@pytest.mark.asyncio
async def test_insight_window_ignores_partial_leading_bucket(
    make_settings, session_factory, make_record
):
    now = NOW.replace(hour=10, minute=30)
    engine = AnalyticsEngine(make_settings(), session_factory, now=lambda: now)
    engine._apply(make_record(timestamp=now.replace(hour=9, minute=10)))

    context = await engine.insights.build("proj_1", "1h")
    assert context.start == now.replace(minute=0)
    assert context.total_pageviews == 0
    assert context.sparse_data

    engine._apply(make_record(session_id="sess_2", timestamp=now.replace(minute=10)))
    context = await engine.insights.build("proj_1", "1h")
    assert context.total_pageviews == 1
    assert not context.sparse_data


def test_snapshot_clamps_start_to_retention(fixed_engine):
    snapshot = fixed_engine.snapshot(
        "proj_1", datetime(1900, 1, 1, tzinfo=timezone.utc), NOW, "daily"
    )
    assert snapshot.start == NOW - fixed_engine.retention
    assert snapshot.end == NOW


def test_snapshot_clamps_far_future_end(fixed_engine):
    snapshot = fixed_engine.snapshot(
        "proj_1",
        datetime(9999, 12, 30, tzinfo=timezone.utc),
        datetime(9999, 12, 31, 23, 59, tzinfo=timezone.utc),
        "daily",
    )
    assert snapshot.start == snapshot.end == NOW + timedelta(days=1)
    assert snapshot.buckets == []


def test_snapshot_rejects_too_many_buckets(make_engine):
    engine = make_engine(SNAPSHOT_MAX_BUCKETS=10)
    now = utcnow()
    with pytest.raises(ValidationError):
        engine.snapshot("proj_1", now - timedelta(days=2), now, "hourly")
    assert engine.snapshot("proj_1", now - timedelta(hours=5), now, "hourly").buckets == []
