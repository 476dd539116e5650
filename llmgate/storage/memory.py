from __future__ import annotations

import threading
from typing import Callable, Dict, Tuple

from llmgate.logging import get_logger
from llmgate.storage.models import RateWindowRecord, now_ms

logger = get_logger(__name__)

DEFAULT_NONCE_CACHE_MAX_SIZE = 100_000


class MemoryCounterStore:
    """In-process counter backend used when no Redis is configured.

    Every read-modify-write happens under one lock, so an increment and the
    comparison that follows it are a single atomic step. Counters are local
    to the process: running several workers multiplies the effective limits.

    Nonces carry their own expiry and are pruned by ``sweep``. Should the
    nonce map still grow past ``nonce_max_size`` it is cleared wholesale,
    which lets a replay inside its validity window through under memory
    pressure.
    """

    name = "memory"

    def __init__(
        self,
        *,
        nonce_max_size: int = DEFAULT_NONCE_CACHE_MAX_SIZE,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.nonce_max_size = nonce_max_size
        self._clock = clock
        self._windows: Dict[str, RateWindowRecord] = {}
        self._nonces: Dict[str, int] = {}
        self._lock = threading.Lock()

    async def incr_window(self, key: str, window_ms: int) -> Tuple[int, int]:
        with self._lock:
            now = self._clock()
            record = self._windows.get(key)
            if record is None or record.window_expires_at <= now:
                record = RateWindowRecord(key=key, count=0, window_expires_at=now + window_ms)
                self._windows[key] = record
            record.count += 1
            return record.count, max(0, record.window_expires_at - now)

    async def set_if_absent(self, key: str, ttl_ms: int) -> bool:
        with self._lock:
            now = self._clock()
            expires_at = self._nonces.get(key)
            if expires_at is not None and expires_at > now:
                return False
            if len(self._nonces) >= self.nonce_max_size:
                logger.warning(
                    "nonce_cache_cleared",
                    size=len(self._nonces),
                    max_size=self.nonce_max_size,
                    message="local nonce cache full; replay protection reset",
                )
                self._nonces.clear()
            self._nonces[key] = now + ttl_ms
            return True

    def sweep(self) -> Dict[str, int]:
        """Drop lapsed rate windows and expired nonces."""
        with self._lock:
            now = self._clock()
            stale_windows = [k for k, r in self._windows.items() if r.window_expires_at <= now]
            for key in stale_windows:
                del self._windows[key]
            stale_nonces = [k for k, exp in self._nonces.items() if exp <= now]
            for key in stale_nonces:
                del self._nonces[key]
        return {"windows": len(stale_windows), "nonces": len(stale_nonces)}

    def window_count(self) -> int:
        with self._lock:
            return len(self._windows)

    def nonce_count(self) -> int:
        with self._lock:
            return len(self._nonces)

    async def close(self) -> None:
        with self._lock:
            self._windows.clear()
            self._nonces.clear()
