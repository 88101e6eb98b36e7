from fastapi import APIRouter

from pulse.api.v1 import analytics, anomalies, events, health, insights, ws

api_router = APIRouter()

api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(events.router, prefix="/events", tags=["events"])
api_router.include_router(analytics.router, prefix="/analytics", tags=["analytics"])
api_router.include_router(anomalies.router, prefix="/anomalies", tags=["anomalies"])
api_router.include_router(insights.router, prefix="/insights", tags=["insights"])
api_router.include_router(ws.router, prefix="/ws", tags=["websocket"])
