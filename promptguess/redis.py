"""Shared Redis client.

Redis only backs rate limiting. Callers treat a missing or unreachable
client as a degraded dependency, never as a failed request.
"""

import time

import redis.asyncio as aioredis

from promptguess.config import Settings
from promptguess.logging_config import get_logger

logger = get_logger(__name__)

_redis: aioredis.Redis | None = None


class RedisUnavailableError(RuntimeError):
    """The shared client was never connected, or has been closed."""


def build_client(settings: Settings) -> aioredis.Redis:
    """Client with bounded socket timeouts so a stalled Redis cannot hang a request."""
    return aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
        max_connections=settings.redis_max_connections,
    )


def get_redis() -> aioredis.Redis:
    if _redis is None:
        raise RedisUnavailableError("Redis not initialized")
    return _redis


def set_redis(client: aioredis.Redis | None) -> None:
    global _redis
    _redis = client


async def init_redis(settings: Settings) -> aioredis.Redis:
    """Connect and ping; the shared client is only published once it answers."""
    client = build_client(settings)
    try:
        await client.ping()
    except Exception:
        await client.aclose()
        raise
    set_redis(client)
    return client


async def ping_redis() -> float:
    """Round-trip latency to Redis in milliseconds."""
    client = get_redis()
    start = time.monotonic()
    await client.ping()
    return round((time.monotonic() - start) * 1000, 1)


async def close_redis() -> None:
    client = _redis
    set_redis(None)
    if client is not None:
        await client.aclose()
        logger.info("redis_closed")
