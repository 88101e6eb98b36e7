"""Background worker: purges events past the retention window.

Run as a separate process:
    python -m pulse.worker
"""

import asyncio
import logging
import signal
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pulse.core.clock import utcnow
from pulse.core.config import settings, setup_logging
from pulse.core.exceptions import TransientStoreError
from pulse.services.event_store import EventStore

logger = logging.getLogger(__name__)

# Worker settings
PURGE_INTERVAL_SECONDS = 3600

_shutdown = asyncio.Event()


def _handle_signal(*_):
    logger.info("Shutdown signal received")
    _shutdown.set()


async def purge_once(store: EventStore, retention_days: int) -> int:
    """Delete every event older than the retention window."""
    cutoff = utcnow() - timedelta(days=retention_days)
    return await store.purge_expired(cutoff)


async def run_worker() -> None:
    """Main worker loop."""
    setup_logging()
    logger.info(
        "Starting retention worker (retention=%d days, interval=%ds)",
        settings.EVENT_RETENTION_DAYS,
        PURGE_INTERVAL_SECONDS,
    )

    engine = create_async_engine(settings.DATABASE_URL)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    store = EventStore(
        session_factory,
        timeout=settings.STORE_TIMEOUT_SECONDS,
        retry_attempts=settings.STORE_RETRY_ATTEMPTS,
        retry_wait_max=settings.STORE_RETRY_WAIT_MAX,
    )

    while not _shutdown.is_set():
        try:
            await purge_once(store, settings.EVENT_RETENTION_DAYS)
        except TransientStoreError:
            logger.warning("Retention purge skipped, store unavailable")
        try:
            await asyncio.wait_for(_shutdown.wait(), timeout=PURGE_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            pass

    await engine.dispose()
    logger.info("Worker shut down cleanly")


if __name__ == "__main__":
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handle_signal)
    asyncio.run(run_worker())
