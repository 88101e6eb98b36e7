"""Redis pub/sub relay for live messages across processes."""

import asyncio
import json
import logging
import uuid
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from pulse.core.redis import get_redis
from pulse.services.fanout import Broker, LiveMessage

logger = logging.getLogger(__name__)

PUBSUB_PREFIX = "pulse:live:"  # per-project channel: pulse:live:{project_id}
PUBSUB_PATTERN = f"{PUBSUB_PREFIX}*"
RECONNECT_DELAY_SECONDS = 2.0


class LiveRelay:
    """Mirror locally published messages to Redis and replay remote ones locally.

    Every payload carries the publishing process' ``origin`` so a process
    never re-delivers its own messages.
    """

    def __init__(self, broker: Broker, *, redis: Redis | None = None):
        self.broker = broker
        self.origin = uuid.uuid4().hex
        self._redis = redis

    async def _client(self) -> Redis:
        return self._redis or await get_redis()

    async def publish(self, message: LiveMessage) -> bool:
        """Publish a message to the per-project Redis channel."""
        channel = f"{PUBSUB_PREFIX}{message.project_id}"
        payload = {"origin": self.origin, "type": message.type, "data": message.data}
        try:
            r = await self._client()
            await r.publish(channel, json.dumps(payload, default=str))
            return True
        except (RedisError, OSError) as exc:
            logger.warning("PUBLISH to %s failed: %s", channel, exc)
            return False

    def handle(self, raw: dict[str, Any]) -> LiveMessage | None:
        """Deliver one Redis pub/sub message to local subscribers."""
        if raw.get("type") != "pmessage":
            return None
        channel = raw["channel"]
        project_id = channel[len(PUBSUB_PREFIX) :]
        try:
            payload = json.loads(raw["data"])
        except (TypeError, ValueError):
            logger.warning("Dropping malformed relay payload on %s", channel)
            return None
        if payload.get("origin") == self.origin:
            return None
        return self.broker.publish(
            project_id, payload.get("type", "event"), payload.get("data") or {}, forward=False
        )

    async def run(self) -> None:
        """Listen on every project channel until cancelled."""
        while True:
            pubsub = None
            try:
                r = await self._client()
                pubsub = r.pubsub()
                await pubsub.psubscribe(PUBSUB_PATTERN)
                logger.info("Live relay listening on %s", PUBSUB_PATTERN)
                while True:
                    msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    if msg:
                        self.handle(msg)
            except asyncio.CancelledError:
                raise
            except (RedisError, OSError) as exc:
                logger.warning("Live relay disconnected: %s", exc)
                await asyncio.sleep(RECONNECT_DELAY_SECONDS)
            finally:
                if pubsub is not None:
                    try:
                        await pubsub.punsubscribe(PUBSUB_PATTERN)
                        await pubsub.aclose()
                    except (RedisError, OSError):
                        pass
