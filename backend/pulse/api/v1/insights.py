from fastapi import APIRouter, Depends, Query, Request

from pulse.api.deps import get_engine
from pulse.core.config import settings
from pulse.core.limiter import limiter
from pulse.schemas.insight import InsightContextResponse
from pulse.services.pipeline import AnalyticsEngine

router = APIRouter()


@router.get("/{project_id}/context", response_model=InsightContextResponse)
@limiter.limit(f"{settings.RATE_LIMIT_PER_MINUTE}/minute")
async def get_insight_context(
    request: Request,
    project_id: str,
    window: str = Query("30d", max_length=8),
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Bounded traffic summary for an external language-model service."""
    context = await engine.insights.build(project_id, window)
    return InsightContextResponse(**context.model_dump(), prompt=context.to_prompt())
