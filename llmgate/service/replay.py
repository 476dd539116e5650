from __future__ import annotations

from llmgate.logging import get_logger
from llmgate.storage.common import CounterBackend, nonce_key
from llmgate.storage.errors import BackendUnavailable

logger = get_logger(__name__)


class ReplayGuard:
    """Single-use enforcement for signature nonces.

    ``try_consume`` relies on the backend's atomic set-if-absent, so among
    concurrent verifications of the same token exactly one sees the nonce
    as fresh.

    Failure policy: when the shared store errors or times out the guard
    FAILS OPEN and reports the nonce as unused, leaving only the signature
    max-age window as replay protection. Each such event is logged as
    ``replay_guard_backend_error``.
    """

    def __init__(self, backend: CounterBackend, *, min_ttl_ms: int = 0) -> None:
        self.backend = backend
        self.min_ttl_ms = min_ttl_ms

    async def try_consume(self, nonce: str, ttl_ms: int) -> bool:
        if not nonce:
            return False
        # A nonce must outlive every signature that could still carry it
        ttl = max(int(ttl_ms), self.min_ttl_ms, 1)
        try:
            fresh = await self.backend.set_if_absent(nonce_key(nonce), ttl)
        except BackendUnavailable as exc:
            logger.error(
                "replay_guard_backend_error",
                backend=getattr(self.backend, "name", type(self.backend).__name__),
                error=exc.message,
                detail=exc.detail,
                policy="fail_open",
            )
            return True
        if not fresh:
            logger.warning("nonce_replay_detected", ttl_ms=ttl)
        return fresh
