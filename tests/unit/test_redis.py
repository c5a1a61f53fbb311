"""Shared Redis client: connect, publish only when healthy, ping latency."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from promptguess import redis as redis_module
from promptguess.redis import (
    RedisUnavailableError,
    close_redis,
    get_redis,
    init_redis,
    ping_redis,
    set_redis,
)


@pytest.fixture(autouse=True)
def no_shared_client():
    set_redis(None)
    yield
    set_redis(None)


def _client(ping_error: Exception | None = None) -> MagicMock:
    client = MagicMock()
    client.ping = AsyncMock(side_effect=ping_error, return_value=True)
    client.aclose = AsyncMock()
    return client


class TestInitRedis:
    @pytest.mark.asyncio
    async def test_client_uses_configured_timeouts(self, settings):
        client = _client()
        with patch.object(redis_module.aioredis, "from_url", return_value=client) as from_url:
            assert await init_redis(settings) is client

        from_url.assert_called_once_with(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout_seconds,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
            max_connections=settings.redis_max_connections,
        )
        assert get_redis() is client

    @pytest.mark.asyncio
    async def test_unreachable_redis_is_never_published(self, settings):
        client = _client(ping_error=RedisConnectionError("refused"))
        with patch.object(redis_module.aioredis, "from_url", return_value=client):
            with pytest.raises(RedisConnectionError):
                await init_redis(settings)

        client.aclose.assert_awaited_once()
        with pytest.raises(RedisUnavailableError):
            get_redis()


class TestPingAndClose:
    @pytest.mark.asyncio
    async def test_ping_without_client_raises(self):
        with pytest.raises(RedisUnavailableError):
            await ping_redis()

    @pytest.mark.asyncio
    async def test_ping_reports_latency(self):
        client = _client()
        set_redis(client)
        latency = await ping_redis()
        assert latency >= 0
        client.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_forgets_client(self):
        client = _client()
        set_redis(client)
        await close_redis()
        client.aclose.assert_awaited_once()
        with pytest.raises(RedisUnavailableError):
            get_redis()
        # Closing twice is harmless
        await close_redis()
