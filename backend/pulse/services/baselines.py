"""Baseline policies: turn aggregator readings into (actual, expected) pairs.

The Anomaly Detector never computes a baseline itself; the engine asks a
policy for observations and hands each one to ``AnomalyDetector.evaluate``.
"""

from dataclasses import dataclass

from pulse.core.config import Settings
from pulse.services.window_aggregator import MetricReadings

TRAFFIC_SPIKE = "traffic_spike"
BOUNCE_RATE_SPIKE = "bounce_rate_spike"
SESSION_DROP = "session_drop"

DROP_METRICS = frozenset({SESSION_DROP})
METRIC_TYPES = (TRAFFIC_SPIKE, BOUNCE_RATE_SPIKE, SESSION_DROP)


@dataclass(frozen=True)
class Observation:
    metric_type: str
    actual: float
    expected: float


class PreviousPeriodBaseline:
    """Compare each metric with the same-length period right before it.

    Pageviews and new sessions use the rolling last hour against the hour
    before; bounce rate uses the last two completed hourly buckets. A metric
    whose previous period is below ``min_baseline`` (or whose bounce sample
    is below ``min_bounce_sample`` sessions) is not observed at all, since a
    tiny baseline turns any visit into a spike.
    """

    def __init__(self, min_baseline: float = 10.0, min_bounce_sample: int = 10):
        self.min_baseline = min_baseline
        self.min_bounce_sample = min_bounce_sample

    def observations(self, readings: MetricReadings) -> list[Observation]:
        found: list[Observation] = []
        if readings.previous_pageviews >= self.min_baseline:
            found.append(
                Observation(TRAFFIC_SPIKE, readings.pageviews, readings.previous_pageviews)
            )
        if (
            readings.bounce_sample >= self.min_bounce_sample
            and readings.previous_bounce_sample >= self.min_bounce_sample
        ):
            found.append(
                Observation(
                    BOUNCE_RATE_SPIKE, readings.bounce_rate, readings.previous_bounce_rate
                )
            )
        if readings.previous_new_sessions >= self.min_baseline:
            found.append(
                Observation(SESSION_DROP, readings.new_sessions, readings.previous_new_sessions)
            )
        return found


class FixedBaseline:
    """Constant expected pageviews per rolling hour.

    Only ``traffic_spike`` is pinned; the other metrics fall back to the
    previous-period policy.
    """

    def __init__(self, expected: float = 50.0, fallback: PreviousPeriodBaseline | None = None):
        self.expected = expected
        self.fallback = fallback or PreviousPeriodBaseline()

    def observations(self, readings: MetricReadings) -> list[Observation]:
        found = [o for o in self.fallback.observations(readings) if o.metric_type != TRAFFIC_SPIKE]
        found.insert(0, Observation(TRAFFIC_SPIKE, readings.pageviews, self.expected))
        return found


Baseline = PreviousPeriodBaseline | FixedBaseline


def baseline_from_settings(settings: Settings) -> Baseline:
    previous = PreviousPeriodBaseline(
        min_baseline=settings.ANOMALY_MIN_BASELINE,
        min_bounce_sample=int(settings.ANOMALY_MIN_BASELINE),
    )
    if settings.ANOMALY_BASELINE == "fixed":
        return FixedBaseline(settings.ANOMALY_FIXED_BASELINE, fallback=previous)
    return previous
