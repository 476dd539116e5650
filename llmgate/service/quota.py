from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from llmgate.logging import get_logger
from llmgate.storage.models import QuotaRecord

logger = get_logger(__name__)

DAY_SECONDS = 24 * 60 * 60
MONTH_SECONDS = 30 * DAY_SECONDS


@dataclass(frozen=True)
class QuotaResult:
    allowed: bool
    reason: Optional[str] = None  # "daily" | "monthly" | "tokens"
    daily_count: int = 0
    monthly_count: int = 0


@dataclass(frozen=True)
class QuotaUsage:
    client_key: str
    daily_count: int
    daily_limit: int
    daily_reset_at: float
    monthly_count: int
    monthly_limit: int
    monthly_reset_at: float

    def to_dict(self) -> dict:
        return {
            "client_key": self.client_key,
            "daily": {
                "used": self.daily_count,
                "limit": self.daily_limit,
                "reset_at": self.daily_reset_at,
            },
            "monthly": {
                "used": self.monthly_count,
                "limit": self.monthly_limit,
                "reset_at": self.monthly_reset_at,
            },
        }


class QuotaEnforcer:
    """Per-caller daily and monthly request ceilings plus a token ceiling.

    Each counter has its own rolling window that starts when the caller's
    record is created (``+24h`` / ``+30d``) and restarts from the moment it
    lapses; windows are not aligned to calendar days or months.

    Accounting is pessimistic: ``admit`` spends the slot before the upstream
    call is made. ``refund`` exists for deployments that turn on
    ``QUOTA_REFUND_ON_UPSTREAM_FAILURE``.
    """

    def __init__(
        self,
        *,
        daily_limit: int,
        monthly_limit: int,
        max_tokens_per_request: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.daily_limit = daily_limit
        self.monthly_limit = monthly_limit
        self.max_tokens_per_request = max_tokens_per_request
        self._clock = clock
        self._records: Dict[str, QuotaRecord] = {}
        self._lock = threading.Lock()

    def check_tokens(self, requested: Optional[int]) -> QuotaResult:
        """Static per-request ceiling on ``max_tokens``. Spends no quota."""
        if requested is None or self.max_tokens_per_request <= 0:
            return QuotaResult(allowed=True)
        if requested > self.max_tokens_per_request:
            return QuotaResult(allowed=False, reason="tokens")
        return QuotaResult(allowed=True)

    def _record_for(self, client_key: str, now: float) -> QuotaRecord:
        record = self._records.get(client_key)
        if record is None:
            record = QuotaRecord(
                client_key=client_key,
                daily_count=0,
                daily_reset_at=now + DAY_SECONDS,
                monthly_count=0,
                monthly_reset_at=now + MONTH_SECONDS,
                created_at=now,
            )
            self._records[client_key] = record
            return record
        if now >= record.daily_reset_at:
            record.daily_count = 0
            record.daily_reset_at = now + DAY_SECONDS
        if now >= record.monthly_reset_at:
            record.monthly_count = 0
            record.monthly_reset_at = now + MONTH_SECONDS
        return record

    def admit(self, client_key: str) -> QuotaResult:
        with self._lock:
            record = self._record_for(client_key, self._clock())
            if self.daily_limit > 0 and record.daily_count >= self.daily_limit:
                result = QuotaResult(
                    allowed=False,
                    reason="daily",
                    daily_count=record.daily_count,
                    monthly_count=record.monthly_count,
                )
            elif self.monthly_limit > 0 and record.monthly_count >= self.monthly_limit:
                result = QuotaResult(
                    allowed=False,
                    reason="monthly",
                    daily_count=record.daily_count,
                    monthly_count=record.monthly_count,
                )
            else:
                record.daily_count += 1
                record.monthly_count += 1
                return QuotaResult(
                    allowed=True,
                    daily_count=record.daily_count,
                    monthly_count=record.monthly_count,
                )
        logger.warning(
            "quota_exceeded",
            client_key=client_key,
            reason=result.reason,
            daily_count=result.daily_count,
            monthly_count=result.monthly_count,
        )
        return result

    def refund(self, client_key: str) -> None:
        """Give back one admitted slot, never dropping below zero."""
        with self._lock:
            record = self._records.get(client_key)
            if record is None:
                return
            record.daily_count = max(0, record.daily_count - 1)
            record.monthly_count = max(0, record.monthly_count - 1)
        logger.info("quota_refunded", client_key=client_key)

    def usage(self, client_key: str) -> QuotaUsage:
        with self._lock:
            record = self._record_for(client_key, self._clock())
            return QuotaUsage(
                client_key=client_key,
                daily_count=record.daily_count,
                daily_limit=self.daily_limit,
                daily_reset_at=record.daily_reset_at,
                monthly_count=record.monthly_count,
                monthly_limit=self.monthly_limit,
                monthly_reset_at=record.monthly_reset_at,
            )

    def get_record(self, client_key: str) -> Optional[QuotaRecord]:
        with self._lock:
            return self._records.get(client_key)

    def sweep(self) -> int:
        """Forget callers whose daily and monthly windows have both lapsed."""
        with self._lock:
            now = self._clock()
            stale = [
                key for key, record in self._records.items()
                if now >= record.daily_reset_at and now >= record.monthly_reset_at
            ]
            for key in stale:
                del self._records[key]
        return len(stale)
