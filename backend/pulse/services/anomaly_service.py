"""Anomaly Detector: a Normal/Active state machine per (project, metric).

The detector is baseline-agnostic; it is handed ``actual`` and ``expected``
and decides whether to raise, update or resolve. Each key has a single writer
(an asyncio lock), and the database backs the "one open anomaly per key" rule
with a partial unique index, so a second process that races us is caught as a
conflict instead of producing a duplicate row.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulse.core.clock import utcnow
from pulse.core.config import Settings
from pulse.core.exceptions import NotFoundError, StateConflictError, ValidationError
from pulse.core.retry import run_bounded
from pulse.models.anomaly import Anomaly
from pulse.schemas.anomaly import AnomalyResponse
from pulse.services.baselines import DROP_METRICS, METRIC_TYPES

logger = logging.getLogger(__name__)

T = TypeVar("T")

EPSILON = 1e-9


class AnomalyState(str, Enum):
    NORMAL = "normal"
    ACTIVE = "active"


class Outcome(str, Enum):
    NONE = "none"
    RAISED = "raised"
    UPDATED = "updated"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class AnomalyPolicy:
    """Thresholds and severity buckets; all externally configurable."""

    spike_threshold: float = 1.0
    drop_threshold: float = -0.5
    severity_medium: float = 2.0
    severity_high: float = 4.0
    auto_resolve_after: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnomalyPolicy":
        return cls(
            spike_threshold=settings.ANOMALY_SPIKE_THRESHOLD,
            drop_threshold=settings.ANOMALY_DROP_THRESHOLD,
            severity_medium=settings.ANOMALY_SEVERITY_MEDIUM,
            severity_high=settings.ANOMALY_SEVERITY_HIGH,
            auto_resolve_after=settings.ANOMALY_AUTO_RESOLVE_AFTER,
        )

    @staticmethod
    def deviation(actual: float, expected: float) -> float:
        return (actual - expected) / max(expected, EPSILON)

    def breached(self, metric_type: str, deviation: float) -> bool:
        if metric_type in DROP_METRICS:
            return deviation < self.drop_threshold
        return deviation > self.spike_threshold

    def severity(self, actual: float, expected: float) -> str:
        """Bucket by fold change, so spikes and drops of equal size rank alike.

        A reading twice its baseline (or half of it) has magnitude 1.0.
        """
        high, low = max(actual, expected), min(actual, expected)
        magnitude = high / max(low, EPSILON) - 1
        if magnitude > self.severity_high:
            return "high"
        if magnitude > self.severity_medium:
            return "medium"
        return "low"


@dataclass
class Evaluation:
    outcome: Outcome
    deviation: float
    anomaly: AnomalyResponse | None = None


@dataclass
class _KeyState:
    anomaly_id: int | None = None
    calm_streak: int = 0

    @property
    def state(self) -> AnomalyState:
        return AnomalyState.ACTIVE if self.anomaly_id is not None else AnomalyState.NORMAL


@dataclass
class _Registry:
    states: dict[tuple[str, str], _KeyState] = field(default_factory=dict)
    locks: dict[tuple[str, str], asyncio.Lock] = field(default_factory=dict)


class AnomalyDetector:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: AnomalyPolicy | None = None,
        *,
        timeout: float = 5.0,
        retry_attempts: int = 3,
        retry_wait_max: float = 2.0,
    ):
        self.session_factory = session_factory
        self.policy = policy or AnomalyPolicy()
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_wait_max = retry_wait_max
        self._registry = _Registry()

    async def _run(self, op_name: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await run_bounded(
            op_name,
            fn,
            attempts=self.retry_attempts,
            timeout=self.timeout,
            wait_max=self.retry_wait_max,
        )

    def _lock(self, key: tuple[str, str]) -> asyncio.Lock:
        lock = self._registry.locks.get(key)
        if lock is None:
            lock = self._registry.locks[key] = asyncio.Lock()
        return lock

    def state(self, project_id: str, metric_type: str) -> AnomalyState:
        key_state = self._registry.states.get((project_id, metric_type))
        return key_state.state if key_state else AnomalyState.NORMAL

    async def load(self) -> int:
        """Rebuild Active states from open anomalies in the database."""

        async def op() -> list[tuple[int, str, str]]:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Anomaly.id, Anomaly.project_id, Anomaly.metric_type).where(
                        Anomaly.is_resolved.is_(False)
                    )
                )
                return [(row[0], row[1], row[2]) for row in result.all()]

        rows = await self._run("load_anomalies", op)
        for anomaly_id, project_id, metric_type in rows:
            self._registry.states[(project_id, metric_type)] = _KeyState(anomaly_id=anomaly_id)
        if rows:
            logger.info("Restored %d open anomalies", len(rows))
        return len(rows)

    async def evaluate(
        self, project_id: str, metric_type: str, actual: float, expected: float
    ) -> Evaluation:
        if metric_type not in METRIC_TYPES:
            raise ValidationError(f"Unknown metric type: {metric_type}")

        key = (project_id, metric_type)
        deviation = self.policy.deviation(actual, expected)
        breach = self.policy.breached(metric_type, deviation)

        async with self._lock(key):
            key_state = self._registry.states.setdefault(key, _KeyState())

            if key_state.anomaly_id is not None and breach:
                key_state.calm_streak = 0
                anomaly = await self._touch(key_state.anomaly_id, actual)
                if anomaly is not None:
                    return Evaluation(Outcome.UPDATED, deviation, anomaly)
                # Resolved elsewhere since we last looked
                key_state.anomaly_id = None

            if key_state.anomaly_id is None:
                if not breach:
                    return Evaluation(Outcome.NONE, deviation)
                anomaly, created = await self._open(project_id, metric_type, actual, expected)
                key_state.anomaly_id = anomaly.id
                key_state.calm_streak = 0
                if not created:
                    return Evaluation(Outcome.UPDATED, deviation, anomaly)
                logger.warning(
                    "Anomaly raised: project=%s metric=%s actual=%.2f expected=%.2f severity=%s",
                    project_id,
                    metric_type,
                    actual,
                    expected,
                    anomaly.severity,
                )
                return Evaluation(Outcome.RAISED, deviation, anomaly)

            key_state.calm_streak += 1
            threshold = self.policy.auto_resolve_after
            if threshold and key_state.calm_streak >= threshold:
                anomaly = await self._mark_resolved(key_state.anomaly_id)
                key_state.anomaly_id = None
                key_state.calm_streak = 0
                logger.info(
                    "Anomaly auto-resolved: project=%s metric=%s", project_id, metric_type
                )
                return Evaluation(Outcome.RESOLVED, deviation, anomaly)
            return Evaluation(Outcome.NONE, deviation)

    async def _open(
        self, project_id: str, metric_type: str, actual: float, expected: float
    ) -> tuple[AnomalyResponse, bool]:
        severity = self.policy.severity(actual, expected)

        async def insert() -> AnomalyResponse:
            async with self.session_factory() as session:
                row = Anomaly(
                    project_id=project_id,
                    metric_type=metric_type,
                    expected_value=expected,
                    actual_value=actual,
                    severity=severity,
                    detected_at=utcnow(),
                    is_resolved=False,
                )
                session.add(row)
                await session.commit()
                return AnomalyResponse.model_validate(row)

        try:
            return await self._run("raise_anomaly", insert), True
        except IntegrityError:
            # Another writer holds the open row for this key
            conflict = StateConflictError(
                f"Open anomaly already exists for project={project_id} metric={metric_type}"
            )
            logger.error("%s; adopting existing row", conflict.detail)

        existing = await self._find_open(project_id, metric_type)
        if existing is None:
            raise conflict
        touched = await self._touch(existing.id, actual)
        return (touched or existing), False

    async def _find_open(self, project_id: str, metric_type: str) -> AnomalyResponse | None:
        async def op() -> AnomalyResponse | None:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Anomaly).where(
                        Anomaly.project_id == project_id,
                        Anomaly.metric_type == metric_type,
                        Anomaly.is_resolved.is_(False),
                    )
                )
                row = result.scalar_one_or_none()
                return AnomalyResponse.model_validate(row) if row else None

        return await self._run("find_open_anomaly", op)

    async def _touch(self, anomaly_id: int, actual: float) -> AnomalyResponse | None:
        """Refresh the latest reading on an open anomaly; None if it is no longer open."""

        async def op() -> AnomalyResponse | None:
            async with self.session_factory() as session:
                row = await session.get(Anomaly, anomaly_id)
                if row is None or row.is_resolved:
                    return None
                row.actual_value = actual
                row.updated_at = utcnow()
                await session.commit()
                return AnomalyResponse.model_validate(row)

        return await self._run("update_anomaly", op)

    async def _mark_resolved(self, anomaly_id: int) -> AnomalyResponse:
        async def op() -> AnomalyResponse:
            async with self.session_factory() as session:
                row = await session.get(Anomaly, anomaly_id)
                if row is None:
                    raise NotFoundError("Anomaly not found")
                if not row.is_resolved:
                    row.is_resolved = True
                    row.resolved_at = utcnow()
                    await session.commit()
                return AnomalyResponse.model_validate(row)

        return await self._run("resolve_anomaly", op)

    async def get(self, anomaly_id: int) -> AnomalyResponse:
        async def op() -> AnomalyResponse | None:
            async with self.session_factory() as session:
                row = await session.get(Anomaly, anomaly_id)
                return AnomalyResponse.model_validate(row) if row else None

        anomaly = await self._run("get_anomaly", op)
        if anomaly is None:
            raise NotFoundError("Anomaly not found")
        return anomaly

    async def resolve(self, anomaly_id: int) -> AnomalyResponse:
        """Mark an anomaly resolved. Resolving a resolved anomaly is a no-op."""
        current = await self.get(anomaly_id)
        if current.is_resolved:
            return current

        key = (current.project_id, current.metric_type)
        async with self._lock(key):
            anomaly = await self._mark_resolved(anomaly_id)
            key_state = self._registry.states.get(key)
            if key_state is not None and key_state.anomaly_id == anomaly_id:
                key_state.anomaly_id = None
                key_state.calm_streak = 0
        logger.info("Anomaly %d resolved", anomaly_id)
        return anomaly

    async def list_anomalies(
        self,
        project_id: str,
        *,
        unresolved_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[AnomalyResponse], int]:
        conditions = [Anomaly.project_id == project_id]
        if unresolved_only:
            conditions.append(Anomaly.is_resolved.is_(False))

        async def op() -> tuple[list[AnomalyResponse], int]:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Anomaly)
                    .where(*conditions)
                    .order_by(Anomaly.detected_at.desc(), Anomaly.id.desc())
                    .offset(offset)
                    .limit(limit)
                )
                items = [AnomalyResponse.model_validate(r) for r in result.scalars().all()]
                count_result = await session.execute(
                    select(func.count()).select_from(Anomaly).where(*conditions)
                )
                return items, count_result.scalar_one()

        return await self._run("list_anomalies", op)

    async def open_count(self, project_id: str) -> int:
        _, total = await self.list_anomalies(project_id, unresolved_only=True, limit=1)
        return total
