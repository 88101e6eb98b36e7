"""Redis client used for cross-process live fan-out."""

import redis.asyncio as redis
from redis.asyncio import ConnectionPool

from pulse.core.config import settings

# Connection pool settings
SOCKET_TIMEOUT = 5.0  # seconds
SOCKET_CONNECT_TIMEOUT = 5.0  # seconds
RETRY_ON_TIMEOUT = True
MAX_CONNECTIONS = 10

# Module-level globals kept only for standalone / worker contexts
redis_client: redis.Redis | None = None
_connection_pool: ConnectionPool | None = None


def _make_pool() -> ConnectionPool:
    return ConnectionPool.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_timeout=SOCKET_TIMEOUT,
        socket_connect_timeout=SOCKET_CONNECT_TIMEOUT,
        retry_on_timeout=RETRY_ON_TIMEOUT,
        max_connections=MAX_CONNECTIONS,
    )


def create_redis_client() -> redis.Redis:
    """Create a new Redis client with a dedicated connection pool.

    Used by the FastAPI lifespan to hand a managed client to the live relay.
    The caller is responsible for closing the returned client on shutdown.
    """
    return redis.Redis(connection_pool=_make_pool())


async def get_redis() -> redis.Redis:
    """Get or create a module-level Redis client (for worker / non-DI contexts)."""
    global redis_client, _connection_pool
    if redis_client is None:
        _connection_pool = _make_pool()
        redis_client = redis.Redis(connection_pool=_connection_pool)
    return redis_client


async def close_redis() -> None:
    """Close the module-level Redis connection and pool."""
    global redis_client, _connection_pool
    if redis_client:
        await redis_client.aclose()
        redis_client = None
    if _connection_pool:
        await _connection_pool.disconnect()
        _connection_pool = None
