"""Tests for the anomaly state machine and baselines."""

import pytest
from sqlalchemy import func, select

from pulse.core.exceptions import NotFoundError, ValidationError
from pulse.models.anomaly import Anomaly
from pulse.services.anomaly_service import (
    AnomalyDetector,
    AnomalyPolicy,
    AnomalyState,
    Outcome,
)
from pulse.services.baselines import (
    BOUNCE_RATE_SPIKE,
    SESSION_DROP,
    TRAFFIC_SPIKE,
    FixedBaseline,
    PreviousPeriodBaseline,
)
from pulse.services.window_aggregator import MetricReadings


@pytest.fixture
def detector(session_factory) -> AnomalyDetector:
    return AnomalyDetector(session_factory, AnomalyPolicy(), retry_wait_max=0.01)


async def _count_open(session_factory, project_id: str = "proj_1") -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(func.count())
            .select_from(Anomaly)
            .where(Anomaly.project_id == project_id, Anomaly.is_resolved.is_(False))
        )
        return result.scalar_one()


class TestPolicy:
    def test_deviation_guards_zero_baseline(self):
        assert AnomalyPolicy.deviation(5, 0) > 1e6

    def test_spike_and_drop_thresholds(self):
        policy = AnomalyPolicy()
        assert policy.breached(TRAFFIC_SPIKE, 1.01)
        assert not policy.breached(TRAFFIC_SPIKE, 1.0)
        assert policy.breached(SESSION_DROP, -0.6)
        assert not policy.breached(SESSION_DROP, -0.5)
        # A drop metric never fires on a spike
        assert not policy.breached(SESSION_DROP, 3.0)

    def test_severity_buckets(self):
        policy = AnomalyPolicy()
        assert policy.severity(101, 50) == "low"
        assert policy.severity(175, 50) == "medium"
        assert policy.severity(300, 50) == "high"
        assert policy.severity(15, 50) == "medium"
        assert policy.severity(5, 50) == "high"

    def test_thresholds_are_configurable(self):
        policy = AnomalyPolicy(spike_threshold=0.2)
        assert policy.breached(TRAFFIC_SPIKE, 0.3)


@pytest.mark.asyncio
async def test_spike_raises_single_anomaly(detector, session_factory):
    """101 visits against an expected 50 opens one traffic_spike; the 102nd updates it."""
    first = await detector.evaluate("proj_1", TRAFFIC_SPIKE, 101, 50)
    assert first.outcome is Outcome.RAISED
    assert first.anomaly.metric_type == TRAFFIC_SPIKE
    assert first.anomaly.severity == "low"
    assert detector.state("proj_1", TRAFFIC_SPIKE) is AnomalyState.ACTIVE

    second = await detector.evaluate("proj_1", TRAFFIC_SPIKE, 102, 50)
    assert second.outcome is Outcome.UPDATED
    assert second.anomaly.id == first.anomaly.id
    assert second.anomaly.actual_value == 102
    assert await _count_open(session_factory) == 1


@pytest.mark.asyncio
async def test_within_threshold_stays_normal(detector, session_factory):
    result = await detector.evaluate("proj_1", TRAFFIC_SPIKE, 99, 50)
    assert result.outcome is Outcome.NONE
    assert detector.state("proj_1", TRAFFIC_SPIKE) is AnomalyState.NORMAL
    assert await _count_open(session_factory) == 0


@pytest.mark.asyncio
async def test_no_auto_resolve_by_default(detector):
    await detector.evaluate("proj_1", TRAFFIC_SPIKE, 200, 50)
    for _ in range(5):
        result = await detector.evaluate("proj_1", TRAFFIC_SPIKE, 50, 50)
        assert result.outcome is Outcome.NONE
    assert detector.state("proj_1", TRAFFIC_SPIKE) is AnomalyState.ACTIVE


@pytest.mark.asyncio
async def test_auto_resolve_after_consecutive_calm_evaluations(session_factory):
    detector = AnomalyDetector(session_factory, AnomalyPolicy(auto_resolve_after=2))
    await detector.evaluate("proj_1", TRAFFIC_SPIKE, 200, 50)
    assert (await detector.evaluate("proj_1", TRAFFIC_SPIKE, 50, 50)).outcome is Outcome.NONE
    # A breach in between resets the streak
    assert (await detector.evaluate("proj_1", TRAFFIC_SPIKE, 200, 50)).outcome is Outcome.UPDATED
    assert (await detector.evaluate("proj_1", TRAFFIC_SPIKE, 50, 50)).outcome is Outcome.NONE
    resolved = await detector.evaluate("proj_1", TRAFFIC_SPIKE, 50, 50)
    assert resolved.outcome is Outcome.RESOLVED
    assert resolved.anomaly.is_resolved
    assert detector.state("proj_1", TRAFFIC_SPIKE) is AnomalyState.NORMAL


@pytest.mark.asyncio
async def test_resolve_is_idempotent(detector, session_factory):
    raised = await detector.evaluate("proj_1", TRAFFIC_SPIKE, 200, 50)
    first = await detector.resolve(raised.anomaly.id)
    second = await detector.resolve(raised.anomaly.id)
    assert first.is_resolved and second.is_resolved
    assert first.resolved_at == second.resolved_at
    assert detector.state("proj_1", TRAFFIC_SPIKE) is AnomalyState.NORMAL

    items, total = await detector.list_anomalies("proj_1")
    assert total == 1
    assert items[0].is_resolved


@pytest.mark.asyncio
async def test_new_breach_after_resolve_opens_new_anomaly(detector):
    raised = await detector.evaluate("proj_1", TRAFFIC_SPIKE, 200, 50)
    await detector.resolve(raised.anomaly.id)
    again = await detector.evaluate("proj_1", TRAFFIC_SPIKE, 200, 50)
    assert again.outcome is Outcome.RAISED
    assert again.anomaly.id != raised.anomaly.id


@pytest.mark.asyncio
async def test_resolve_unknown_anomaly(detector):
    with pytest.raises(NotFoundError):
        await detector.resolve(9999)


@pytest.mark.asyncio
async def test_unknown_metric_type_rejected(detector):
    with pytest.raises(ValidationError):
        await detector.evaluate("proj_1", "cpu_spike", 10, 1)


@pytest.mark.asyncio
async def test_keys_are_independent(detector, session_factory):
    await detector.evaluate("proj_1", TRAFFIC_SPIKE, 200, 50)
    await detector.evaluate("proj_1", SESSION_DROP, 10, 50)
    await detector.evaluate("proj_2", TRAFFIC_SPIKE, 200, 50)
    assert await _count_open(session_factory, "proj_1") == 2
    assert await _count_open(session_factory, "proj_2") == 1


@pytest.mark.asyncio
async def test_state_reloaded_from_database(detector, session_factory):
    raised = await detector.evaluate("proj_1", TRAFFIC_SPIKE, 200, 50)

    restarted = AnomalyDetector(session_factory)
    assert await restarted.load() == 1
    assert restarted.state("proj_1", TRAFFIC_SPIKE) is AnomalyState.ACTIVE
    update = await restarted.evaluate("proj_1", TRAFFIC_SPIKE, 250, 50)
    assert update.outcome is Outcome.UPDATED
    assert update.anomaly.id == raised.anomaly.id


@pytest.mark.asyncio
async def test_conflicting_writer_adopts_existing_row(detector, session_factory, caplog):
    """A second detector that missed the open row must not create a duplicate."""
    await detector.evaluate("proj_1", TRAFFIC_SPIKE, 200, 50)
    stale = AnomalyDetector(session_factory)
    result = await stale.evaluate("proj_1", TRAFFIC_SPIKE, 300, 50)
    assert result.outcome is Outcome.UPDATED
    assert result.anomaly.actual_value == 300
    assert await _count_open(session_factory) == 1
    assert "adopting existing row" in caplog.text


@pytest.mark.asyncio
async def test_list_filters_unresolved(detector):
    a = await detector.evaluate("proj_1", TRAFFIC_SPIKE, 200, 50)
    await detector.evaluate("proj_1", SESSION_DROP, 10, 50)
    await detector.resolve(a.anomaly.id)
    items, total = await detector.list_anomalies("proj_1", unresolved_only=True)
    assert total == 1
    assert items[0].metric_type == SESSION_DROP
    assert await detector.open_count("proj_1") == 1


def _readings(**overrides) -> MetricReadings:
    values = dict(
        pageviews=0,
        previous_pageviews=0,
        new_sessions=0,
        previous_new_sessions=0,
        bounce_rate=0.0,
        previous_bounce_rate=0.0,
        bounce_sample=0,
        previous_bounce_sample=0,
    )
    values.update(overrides)
    return MetricReadings(**values)


class TestBaselines:
    def test_previous_period_skips_thin_baselines(self):
        baseline = PreviousPeriodBaseline(min_baseline=10, min_bounce_sample=10)
        assert baseline.observations(_readings(pageviews=500, previous_pageviews=3)) == []

    def test_previous_period_observations(self):
        baseline = PreviousPeriodBaseline(min_baseline=10, min_bounce_sample=10)
        observed = baseline.observations(
            _readings(
                pageviews=120,
                previous_pageviews=40,
                new_sessions=5,
                previous_new_sessions=30,
                bounce_rate=0.9,
                previous_bounce_rate=0.4,
                bounce_sample=20,
                previous_bounce_sample=25,
            )
        )
        by_metric = {o.metric_type: (o.actual, o.expected) for o in observed}
        assert by_metric == {
            TRAFFIC_SPIKE: (120, 40),
            BOUNCE_RATE_SPIKE: (0.9, 0.4),
            SESSION_DROP: (5, 30),
        }

    def test_fixed_baseline_pins_traffic_only(self):
        baseline = FixedBaseline(50)
        observed = baseline.observations(_readings(pageviews=101))
        assert [(o.metric_type, o.actual, o.expected) for o in observed] == [
            (TRAFFIC_SPIKE, 101, 50)
        ]
