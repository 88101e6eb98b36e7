import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.api.deps import get_engine
from pulse.core.exceptions import ServiceUnavailableError
from pulse.db.session import get_db
from pulse.schemas.common import MessageResponse
from pulse.services.pipeline import AnalyticsEngine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=MessageResponse)
async def health_check():
    """Basic health check endpoint."""
    return {"message": "healthy"}


@router.get("/ready", response_model=MessageResponse)
async def readiness_check(
    db: AsyncSession = Depends(get_db),
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Readiness check - verifies the database answers and the engine is running."""
    try:
        await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        logger.error("Readiness check failed: database connection error")
        raise ServiceUnavailableError(detail="Service not ready") from None
    if not engine.running:
        raise ServiceUnavailableError(detail="Analytics engine not running")
    return {"message": "ready"}
