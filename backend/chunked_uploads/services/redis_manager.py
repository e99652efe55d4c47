"""Process-wide async Redis connection pool.

The session store, the notifier and their readiness checks all talk to the
same Redis server. They share one pool, created on first use from settings
and torn down in the application lifespan.
"""

import logging
import threading
from typing import Optional

import redis.asyncio as aioredis

from chunked_uploads.config import Settings, get_settings

logger = logging.getLogger(__name__)

_pool: Optional[aioredis.ConnectionPool] = None
_pool_lock = threading.Lock()


def _build_pool(settings: Settings) -> aioredis.ConnectionPool:
    logger.info(
        f"Creating Redis pool for {settings.redis_host}:{settings.redis_port}/{settings.redis_db} "
        f"(max {settings.redis_max_connections} connections)"
    )
    return aioredis.ConnectionPool.from_url(
        settings.redis_url,
        max_connections=settings.redis_max_connections,
        decode_responses=True,
        socket_keepalive=True,
        socket_connect_timeout=settings.redis_connect_timeout_seconds,
        health_check_interval=30,
    )


def get_async_client(settings: Optional[Settings] = None) -> aioredis.Redis:
    """Client bound to the shared pool; the first call decides the pool settings."""
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = _build_pool(settings or get_settings())
        pool = _pool
    return aioredis.Redis(connection_pool=pool)


async def close_all_async() -> None:
    """Drop the shared pool and close its connections. Safe to call twice."""
    global _pool
    with _pool_lock:
        pool, _pool = _pool, None
    if pool is None:
        return
    try:
        await pool.disconnect()
    except Exception as e:
        logger.warning(f"Error closing async Redis pool: {e}")
