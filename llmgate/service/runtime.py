from __future__ import annotations

import asyncio
import threading
from typing import Optional

from llmgate.config import Settings, get_settings, reset_settings_cache
from llmgate.logging import get_logger, mask_url_password
from llmgate.service.admission import AdmissionPipeline
from llmgate.service.credentials import CredentialStore
from llmgate.service.ip_filter import IpFilter
from llmgate.service.llm import LLMService
from llmgate.service.maintenance import MaintenanceWorker
from llmgate.service.quota import QuotaEnforcer
from llmgate.service.rate_limit import RateLimiter
from llmgate.service.replay import ReplayGuard
from llmgate.service.signature import SignatureEngine
from llmgate.storage.common import CounterBackend
from llmgate.storage.memory import MemoryCounterStore
from llmgate.storage.redis_cache import RedisCache
from llmgate.storage.sessions import SessionStore

logger = get_logger(__name__)


def _build_backend(settings: Settings) -> CounterBackend:
    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            cache = RedisCache(
                settings.redis_url, socket_timeout=settings.backend_timeout_seconds
            )
            cache.verify_connection()
            logger.info(
                "redis_backend_selected",
                redis_url=mask_url_password(settings.redis_url),
            )
            return cache
        except Exception as exc:
            redis_error = exc

    if settings.redis_url:
        logger.warning(
            "redis_disabled_fallback",
            redis_url=mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                "Running without Redis; rate limits and replay protection are "
                "local to this process."
            ),
        )
    return MemoryCounterStore(nonce_max_size=settings.nonce_cache_max_size)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            enable_aes_auth=self.settings.enable_aes_auth,
            test_mode=self.settings.test_mode,
        )
        # Refuse to start on a missing secret or bad IP list entry
        self.settings.validate_startup()

        self.backend = _build_backend(self.settings)
        self.replay_guard = ReplayGuard(
            self.backend, min_ttl_ms=self.settings.signature_max_age_ms
        )
        self.signature: Optional[SignatureEngine] = None
        if self.settings.enable_aes_auth:
            self.credentials = CredentialStore.from_settings(self.settings)
            self.signature = SignatureEngine(
                self.credentials,
                self.replay_guard,
                max_age_ms=self.settings.signature_max_age_ms,
            )
        else:
            logger.warning(
                "signature_verification_disabled",
                message="ENABLE_AES_AUTH is false; /v1 routes accept unsigned requests",
            )
        self.rate_limiter = RateLimiter(self.backend)
        self.quota = QuotaEnforcer(
            daily_limit=self.settings.daily_quota,
            monthly_limit=self.settings.monthly_quota,
            max_tokens_per_request=self.settings.max_tokens_per_request,
        )
        self.ip_filter = IpFilter(
            whitelist=self.settings.ip_whitelist,
            blacklist=self.settings.ip_blacklist,
            enable_whitelist=self.settings.enable_ip_whitelist,
            enable_blacklist=self.settings.enable_ip_blacklist,
        )
        self.admission = AdmissionPipeline(
            self.settings,
            ip_filter=self.ip_filter,
            rate_limiter=self.rate_limiter,
            signature_engine=self.signature,
            quota=self.quota,
        )
        self.sessions = SessionStore(
            self.settings.session_ttl_seconds,
            max_sessions=self.settings.session_max_count,
        )
        self.llm = LLMService(
            self.settings.llm_api_base_url,
            api_key=self.settings.llm_api_key,
            default_model=self.settings.llm_default_model,
            timeout=self.settings.llm_timeout_seconds,
        )
        self.maintenance = MaintenanceWorker(
            self.sessions,
            self.quota,
            self.backend,
            interval=self.settings.sweep_interval_seconds,
        )

        logger.info(
            "runtime_initialized",
            backend=self.backend.name,
            rate_limit_max_requests=self.settings.rate_limit_max_requests,
            rate_limit_window_ms=self.settings.rate_limit_window_ms,
            daily_quota=self.settings.daily_quota,
            monthly_quota=self.settings.monthly_quota,
            ip_filter_enabled=self.ip_filter.enabled,
        )

    async def close(self) -> None:
        await self.maintenance.stop()
        await self.llm.close()
        await self.backend.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        # Close existing Redis connections to avoid event loop issues
        if runtime is not None and isinstance(runtime.backend, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.backend.close())
            except RuntimeError:
                asyncio.run(runtime.backend.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
