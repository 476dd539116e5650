"""Tests for the Redis counter backend using a mocked client."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from llmgate.service.rate_limit import RateLimiter
from llmgate.service.replay import ReplayGuard
from llmgate.storage.errors import BackendUnavailable
from llmgate.storage.redis_cache import RedisCache


def _cache(script=None, set_result=True, timeout=0.5):
    client = MagicMock()
    client.register_script.return_value = script or AsyncMock(return_value=[1, 60_000])
    client.set = AsyncMock(return_value=set_result)
    client.close = AsyncMock()
    client.connection_pool.disconnect = AsyncMock()
    return RedisCache("redis://localhost:6379/0", socket_timeout=timeout, client=client), client


def test_fixed_window_script_registered():
    _, client = _cache()
    client.register_script.assert_called_once_with(RedisCache._FIXED_WINDOW_SCRIPT)
    assert "PEXPIRE" in RedisCache._FIXED_WINDOW_SCRIPT


async def test_incr_window_runs_script():
    script = AsyncMock(return_value=[3, 42_000])
    cache, _ = _cache(script=script)
    assert await cache.incr_window("ratelimit:a:/v1/chat", 60_000) == (3, 42_000)
    script.assert_awaited_once_with(keys=["ratelimit:a:/v1/chat"], args=[60_000])


async def test_incr_window_clamps_negative_ttl():
    cache, _ = _cache(script=AsyncMock(return_value=[1, -1]))
    assert await cache.incr_window("k", 1000) == (1, 0)


async def test_set_if_absent_uses_nx_px():
    cache, client = _cache(set_result=None)
    assert await cache.set_if_absent("nonce:abc", 300_000) is False
    client.set.assert_awaited_once_with("nonce:abc", "1", px=300_000, nx=True)


async def test_redis_error_becomes_backend_unavailable():
    cache, client = _cache()
    client.set = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    with pytest.raises(BackendUnavailable) as exc:
        await cache.set_if_absent("nonce:abc", 1000)
    assert exc.value.detail["operation"] == "set_if_absent"


async def test_slow_operation_times_out():
    async def slow(**kwargs):
        await asyncio.sleep(1)
        return [1, 1000]

    cache, _ = _cache(script=slow, timeout=0.01)
    with pytest.raises(BackendUnavailable) as exc:
        await cache.incr_window("k", 1000)
    assert exc.value.message == "redis operation timed out"


async def test_components_fail_open_on_redis_outage():
    script = AsyncMock(side_effect=RedisConnectionError("down"))
    cache, client = _cache(script=script)
    client.set = AsyncMock(side_effect=RedisConnectionError("down"))

    assert (await RateLimiter(cache).check("k", 1, 1000)).allowed
    assert await ReplayGuard(cache).try_consume("n", 1000) is True


async def test_close_releases_pool():
    cache, client = _cache()
    await cache.close()
    client.close.assert_awaited_once()
    client.connection_pool.disconnect.assert_awaited_once()
