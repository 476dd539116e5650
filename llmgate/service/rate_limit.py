from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable

from llmgate.logging import get_logger
from llmgate.storage.common import CounterBackend, rate_key
from llmgate.storage.errors import BackendUnavailable
from llmgate.storage.models import now_ms

logger = get_logger(__name__)

DEFAULT_WINDOW_MS = 60 * 1000


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    reset_at: int  # ms epoch
    limit: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    def retry_after_seconds(self, now: int) -> int:
        return max(1, math.ceil((self.reset_at - now) / 1000))


class RateLimiter:
    """Fixed-window request counter per (client, route).

    Windows are non-overlapping, so a burst straddling a boundary can be
    admitted up to twice the ceiling within ``window_ms``.

    Failure policy: backend errors and timeouts FAIL OPEN. The request is
    allowed and ``rate_limit_backend_error`` is logged.
    """

    def __init__(self, backend: CounterBackend, *, clock: Callable[[], int] = now_ms) -> None:
        self.backend = backend
        self._clock = clock

    def now(self) -> int:
        return self._clock()

    async def check(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        now = self._clock()
        if max_requests <= 0:
            return RateLimitResult(allowed=True, count=0, reset_at=now, limit=max_requests)
        if window_ms <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_ms=window_ms,
                message="Invalid rate limit window; defaulting to 60 seconds",
            )
            window_ms = DEFAULT_WINDOW_MS
        try:
            count, remaining_ms = await self.backend.incr_window(key, window_ms)
        except BackendUnavailable as exc:
            logger.error(
                "rate_limit_backend_error",
                backend=getattr(self.backend, "name", type(self.backend).__name__),
                key=key,
                error=exc.message,
                detail=exc.detail,
                policy="fail_open",
            )
            return RateLimitResult(
                allowed=True, count=0, reset_at=now + window_ms, limit=max_requests
            )
        return RateLimitResult(
            allowed=count <= max_requests,
            count=count,
            reset_at=now + remaining_ms,
            limit=max_requests,
        )

    async def check_client(
        self, client_key: str, route: str, max_requests: int, window_ms: int
    ) -> RateLimitResult:
        return await self.check(rate_key(client_key, route), max_requests, window_ms)
