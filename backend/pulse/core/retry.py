"""Bounded retry for durable-store calls.

Each attempt runs under a timeout; connection-level failures are retried with
exponential backoff and, once attempts are exhausted, surface as
TransientStoreError. Nothing here blocks indefinitely.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pulse.core.exceptions import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Connection-level failures worth retrying; anything else is a bug or bad data
RETRYABLE_ERRORS = (OperationalError, InterfaceError, ConnectionError, TimeoutError, OSError)


async def run_bounded(
    op_name: str,
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    timeout: float = 5.0,
    wait_max: float = 2.0,
) -> T:
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=0.1, max=wait_max),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await asyncio.wait_for(fn(), timeout)
    except RETRYABLE_ERRORS as exc:
        logger.error("Store operation %s failed after %d attempts: %s", op_name, attempts, exc)
        raise TransientStoreError() from exc
    raise AssertionError("unreachable")  # pragma: no cover
