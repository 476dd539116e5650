from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, Tuple, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from llmgate.storage.errors import BackendUnavailable

T = TypeVar("T")


class RedisCache:
    """Thin Redis wrapper for the shared rate-limit and nonce counters."""

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # Fixed window: INCR, start the window on the first hit, report the TTL.
    # All three run atomically, so every counter carries an expiry.
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    name = "redis"

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = socket_timeout
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before selecting this backend."""
        # Sync client; the async pool must not bind to a startup event loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.operation_timeout,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            raise BackendUnavailable(
                "redis operation timed out",
                {"operation": operation, "timeout": self.operation_timeout},
            ) from exc
        except (RedisError, OSError) as exc:
            raise BackendUnavailable(
                "redis operation failed",
                {"operation": operation, "error": str(exc)},
            ) from exc

    async def incr_window(self, key: str, window_ms: int) -> Tuple[int, int]:
        count, ttl = await self._bounded(
            "incr_window", self._fixed_window(keys=[key], args=[int(window_ms)])
        )
        return int(count), max(0, int(ttl))

    async def set_if_absent(self, key: str, ttl_ms: int) -> bool:
        acquired = await self._bounded(
            "set_if_absent", self.client.set(key, "1", px=int(ttl_ms), nx=True)
        )
        return bool(acquired)

    async def close(self) -> None:
        """Close Redis connection pool."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
