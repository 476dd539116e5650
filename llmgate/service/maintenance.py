"""Background worker for periodic housekeeping.

Every sweep interval the worker:
- evicts sessions idle past their TTL
- forgets quota records whose windows have both lapsed
- prunes expired rate windows and nonces from the in-process counter store
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

from llmgate.logging import get_logger
from llmgate.service.quota import QuotaEnforcer
from llmgate.storage.common import CounterBackend
from llmgate.storage.sessions import SessionStore

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60
MAX_BACKOFF_SECONDS = 300


class MaintenanceWorker:
    def __init__(
        self,
        sessions: SessionStore,
        quota: QuotaEnforcer,
        backend: Optional[CounterBackend] = None,
        *,
        interval: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.sessions = sessions
        self.quota = quota
        self.backend = backend
        self.interval = max(1, interval)
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("maintenance_worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("maintenance_worker_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("maintenance_worker_stopped")

    def sweep_once(self) -> Dict[str, int]:
        """Run one pass over every store and report what was removed."""
        evicted: Dict[str, int] = {
            "sessions": self.sessions.sweep(),
            "quota_records": self.quota.sweep(),
        }
        # Only the in-process store needs pruning; Redis expires keys itself
        backend_sweep = getattr(self.backend, "sweep", None)
        if callable(backend_sweep):
            evicted.update(backend_sweep())
        if any(evicted.values()):
            logger.info("maintenance_sweep_completed", **evicted)
        return evicted

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                await asyncio.to_thread(self.sweep_once)
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "maintenance_sweep_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "maintenance_worker_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
