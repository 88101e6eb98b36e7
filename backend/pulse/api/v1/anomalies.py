from fastapi import APIRouter, Depends, Query, Request

from pulse.api.deps import get_engine
from pulse.core.config import settings
from pulse.core.limiter import limiter
from pulse.schemas.anomaly import AnomalyListResponse, AnomalyResponse
from pulse.services.pipeline import AnalyticsEngine

router = APIRouter()


@router.get("/{project_id}", response_model=AnomalyListResponse)
@limiter.limit(f"{settings.RATE_LIMIT_PER_MINUTE}/minute")
async def list_anomalies(
    request: Request,
    project_id: str,
    unresolved: bool = Query(False),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Anomalies for a project, newest first."""
    data, total = await engine.detector.list_anomalies(
        project_id, unresolved_only=unresolved, limit=limit, offset=offset
    )
    return AnomalyListResponse(data=data, total=total)


@router.post("/{anomaly_id}/resolve", response_model=AnomalyResponse)
@limiter.limit(f"{settings.RATE_LIMIT_PER_MINUTE}/minute")
async def resolve_anomaly(
    request: Request,
    anomaly_id: int,
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Mark an anomaly resolved. Resolving it again is a no-op."""
    return await engine.resolve_anomaly(anomaly_id)
