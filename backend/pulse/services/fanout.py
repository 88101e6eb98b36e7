"""In-process publish/subscribe for live dashboards.

Each subscriber owns a bounded queue. Publishing never awaits: a subscriber
whose queue is full is closed instead of silently skipping messages, so a
connected session never sees a gap. Reconnecting with ``last_seq`` replays
from a bounded per-project buffer, which gives at-least-once delivery.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

MESSAGE_EVENT = "event"
MESSAGE_ANOMALY = "anomaly"

_CLOSED = object()


@dataclass(frozen=True)
class LiveMessage:
    """One notification on a project's live channel."""

    seq: int
    type: str
    project_id: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "type": self.type,
            "project_id": self.project_id,
            "data": self.data,
        }


class Subscription:
    """Cancellable async iterator over one project's live messages."""

    def __init__(self, broker: "Broker", project_id: str, maxsize: int):
        self.project_id = project_id
        self.last_seq: int | None = None
        self.overflowed = False
        self.replay_truncated = False
        self._broker = broker
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, message: LiveMessage) -> bool:
        if self._closed:
            return False
        if self._queue.qsize() >= self._maxsize:
            logger.warning(
                "Subscriber on project %s fell behind at seq %d, closing",
                self.project_id,
                message.seq,
            )
            self.overflowed = True
            self._close()
            self._broker._remove(self)
            return False
        self._queue.put_nowait(message)
        return True

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Pending messages are dropped; the client resumes from last_seq.
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def cancel(self) -> None:
        """Stop the subscription and release its queue immediately."""
        self._broker._remove(self)
        self._close()

    async def get(self, timeout: float | None = None) -> LiveMessage | None:
        """Next message, or None when closed or the timeout expires."""
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            # Leave the marker for any other waiter
            self._queue.put_nowait(_CLOSED)
            return None
        self.last_seq = item.seq
        return item  # type: ignore[no-any-return]

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> LiveMessage:
        message = await self.get()
        if message is None:
            raise StopAsyncIteration
        return message


class Broker:
    """Per-project fan-out hub."""

    def __init__(self, queue_size: int = 256, replay_size: int = 1000):
        self.queue_size = queue_size
        self.replay_size = replay_size
        self._subscribers: dict[str, set[Subscription]] = {}
        self._buffers: dict[str, deque[LiveMessage]] = {}
        self._seq: dict[str, int] = {}
        self._forwarders: list[Callable[[LiveMessage], Awaitable[Any]]] = []
        self._pending: set[asyncio.Task[Any]] = set()

    def add_forwarder(self, forwarder: Callable[[LiveMessage], Awaitable[Any]]) -> None:
        """Register a coroutine called with every locally published message."""
        self._forwarders.append(forwarder)

    def subscriber_count(self, project_id: str) -> int:
        return len(self._subscribers.get(project_id, ()))

    def subscribe(self, project_id: str, last_seq: int | None = None) -> Subscription:
        """Open a subscription, replaying buffered messages newer than ``last_seq``."""
        subscription = Subscription(self, project_id, self.queue_size)
        if last_seq is not None:
            buffer = self._buffers.get(project_id, deque())
            if last_seq > self._seq.get(project_id, 0):
                # Cursor from before a restart; everything buffered is new to this client
                subscription.replay_truncated = True
                last_seq = 0
            backlog = [m for m in buffer if m.seq > last_seq]
            oldest = buffer[0].seq if buffer else self._seq.get(project_id, 0) + 1
            if last_seq + 1 < oldest:
                subscription.replay_truncated = True
            if len(backlog) >= self.queue_size:
                subscription.replay_truncated = True
                backlog = backlog[-(self.queue_size - 1) :] if self.queue_size > 1 else []
            for message in backlog:
                subscription._offer(message)
        self._subscribers.setdefault(project_id, set()).add(subscription)
        logger.debug("Subscribed to project %s (last_seq=%s)", project_id, last_seq)
        return subscription

    def publish(
        self,
        project_id: str,
        message_type: str,
        data: dict[str, Any],
        *,
        forward: bool = True,
    ) -> LiveMessage:
        """Deliver a message to every live subscriber without blocking."""
        seq = self._seq.get(project_id, 0) + 1
        self._seq[project_id] = seq
        message = LiveMessage(seq=seq, type=message_type, project_id=project_id, data=data)

        buffer = self._buffers.get(project_id)
        if buffer is None:
            buffer = self._buffers[project_id] = deque(maxlen=self.replay_size)
        buffer.append(message)

        for subscription in list(self._subscribers.get(project_id, ())):
            subscription._offer(message)

        if forward:
            for forwarder in self._forwarders:
                self._spawn(forwarder(message))
        return message

    def close(self) -> None:
        """Close every subscription (used on shutdown)."""
        for subscriptions in list(self._subscribers.values()):
            for subscription in list(subscriptions):
                subscription.cancel()
        for task in list(self._pending):
            task.cancel()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop: forwarding is best-effort
            logger.debug("No event loop for forwarder, dropping")
            if asyncio.iscoroutine(coro):
                coro.close()
            return
        task = loop.create_task(coro)  # type: ignore[arg-type]
        self._pending.add(task)
        task.add_done_callback(self._forward_done)

    def _forward_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Live forwarder failed: %s", task.exception())

    def _remove(self, subscription: Subscription) -> None:
        subscriptions = self._subscribers.get(subscription.project_id)
        if subscriptions is None:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            del self._subscribers[subscription.project_id]
