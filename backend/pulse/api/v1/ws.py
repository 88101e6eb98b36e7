import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from pulse.services.fanout import Subscription
from pulse.services.pipeline import AnalyticsEngine

logger = logging.getLogger(__name__)

router = APIRouter()


async def _forward(subscription: Subscription, websocket: WebSocket) -> None:
    """Send live messages until the subscription closes."""
    try:
        async for message in subscription:
            await websocket.send_json(message.to_dict())
    except WebSocketDisconnect:
        return
    if subscription.overflowed:
        await websocket.close(
            code=status.WS_1013_TRY_AGAIN_LATER,
            reason="Subscriber fell behind, reconnect with last_seq",
        )


async def _receive(websocket: WebSocket) -> None:
    """Consume client frames (pings) until the client goes away."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@router.websocket("/{project_id}")
async def live_stream(websocket: WebSocket, project_id: str, last_seq: int | None = None):
    """WebSocket endpoint for live events and anomalies.

    Connect with: ws://host/api/v1/ws/{project_id}?last_seq=<n>

    Messages are ``{"seq", "type", "project_id", "data"}`` with ``type`` either
    "event" or "anomaly". Passing the last seen ``seq`` on reconnect replays
    what was missed, as far back as the replay buffer reaches; when it does
    not reach far enough a ``{"type": "replay_truncated"}`` frame comes first.
    """
    engine: AnalyticsEngine = websocket.app.state.engine
    await websocket.accept()

    subscription = engine.broker.subscribe(project_id, last_seq)
    if subscription.replay_truncated:
        await websocket.send_json({"type": "replay_truncated", "project_id": project_id})

    forward_task = asyncio.create_task(_forward(subscription, websocket))
    receive_task = asyncio.create_task(_receive(websocket))
    try:
        await asyncio.wait({forward_task, receive_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        subscription.cancel()
        for task in (forward_task, receive_task):
            task.cancel()
        await asyncio.gather(forward_task, receive_task, return_exceptions=True)
        logger.debug("Live stream for project %s closed at seq %s", project_id, subscription.last_seq)
