"""Redis connections used by the refresh worker and by producers.

Two kinds of connection share the same resilience settings: the arq pool that
enqueues jobs, and a plain ``redis.asyncio`` client for the backlog list and
the refresh lock.
"""

from __future__ import annotations

import redis.asyncio as aioredis
from arq.connections import RedisSettings

from indexer.main.config import Settings, get_settings


def build_arq_redis_settings(settings: Settings | None = None) -> RedisSettings:
    settings = settings or get_settings()
    return RedisSettings(
        host=settings.redis_host,
        port=settings.redis_port,
        database=settings.redis_db or 0,
        conn_timeout=settings.redis_conn_timeout,
        conn_retries=settings.redis_conn_retries,
        conn_retry_delay=settings.redis_conn_retry_delay,
        retry_on_timeout=settings.redis_retry_on_timeout,
        max_connections=settings.redis_max_connections,
    )


def build_redis_client(settings: Settings | None = None) -> aioredis.Redis:
    """Create a client whose responses are decoded to ``str``.

    Backlog entries and lock values are text, so decoding here keeps callers
    free of ``bytes`` handling.
    """
    settings = settings or get_settings()
    pool_options = {
        "db": settings.redis_db or 0,
        "decode_responses": True,
        "socket_connect_timeout": settings.redis_conn_timeout,
        "socket_keepalive": settings.redis_socket_keepalive,
        "retry_on_timeout": settings.redis_retry_on_timeout,
        "health_check_interval": settings.redis_health_check_interval,
    }
    if settings.redis_max_connections is not None:
        pool_options["max_connections"] = settings.redis_max_connections

    pool = aioredis.ConnectionPool.from_url(
        f"redis://{settings.redis_host}:{settings.redis_port}", **pool_options
    )
    return aioredis.Redis(connection_pool=pool)


_redis_client: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    """Get the process-wide client, creating it if needed."""
    global _redis_client
    if _redis_client is None:
        _redis_client = build_redis_client()
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is None:
        return
    await _redis_client.aclose()
    _redis_client = None
