import asyncio
import time
from unittest.mock import MagicMock

from llmgate.service.maintenance import MaintenanceWorker
from llmgate.service.quota import QuotaEnforcer
from llmgate.storage.memory import MemoryCounterStore
from llmgate.storage.models import Message
from llmgate.storage.sessions import SessionStore


class SecondsClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


async def test_sweep_once_covers_every_store(clock):
    session_clock = SecondsClock()
    sessions = SessionStore(ttl_seconds=10, clock=session_clock)
    sessions.append("idle", [Message(role="user", content="hi")])
    session_clock.now += 11

    quota = QuotaEnforcer(daily_limit=1, monthly_limit=1, max_tokens_per_request=0)
    backend = MemoryCounterStore(clock=clock)
    await backend.incr_window("ratelimit:a:/v1/chat", 1000)
    await backend.set_if_absent("nonce:x", 1000)
    clock.advance(1000)

    worker = MaintenanceWorker(sessions, quota, backend)
    evicted = worker.sweep_once()

    assert evicted == {"sessions": 1, "quota_records": 0, "windows": 1, "nonces": 1}
    assert backend.window_count() == 0
    assert backend.nonce_count() == 0


def test_backend_without_sweep_is_skipped():
    sessions = SessionStore()
    quota = QuotaEnforcer(daily_limit=1, monthly_limit=1, max_tokens_per_request=0)
    redis_like = MagicMock(spec=["name", "incr_window", "set_if_absent", "close"])
    worker = MaintenanceWorker(sessions, quota, redis_like)
    assert worker.sweep_once() == {"sessions": 0, "quota_records": 0}


async def test_start_and_stop():
    sessions = MagicMock()
    sessions.sweep.return_value = 0
    quota = MagicMock()
    quota.sweep.return_value = 0
    worker = MaintenanceWorker(sessions, quota, None, interval=1)

    await worker.start()
    assert worker.running
    # Second start is a no-op
    await worker.start()
    await asyncio.sleep(0)
    await worker.stop()
    assert not worker.running


async def test_loop_survives_sweep_errors(monkeypatch):
    calls = []

    def flaky_sweep():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        return 0

    sessions = MagicMock()
    sessions.sweep.side_effect = flaky_sweep
    quota = MagicMock()
    quota.sweep.return_value = 0
    worker = MaintenanceWorker(sessions, quota, None, interval=1)

    real_sleep = asyncio.sleep

    async def fast_sleep(seconds):
        await real_sleep(0)

    monkeypatch.setattr("llmgate.service.maintenance.asyncio.sleep", fast_sleep)
    await worker.start()
    for _ in range(100):
        if len(calls) >= 2:
            break
        await real_sleep(0.01)
    await worker.stop()

    assert len(calls) >= 2


async def test_slow_sweep_runs_off_the_event_loop(monkeypatch):
    def slow_sweep():
        time.sleep(0.3)
        return 0

    sessions = MagicMock()
    sessions.sweep.side_effect = slow_sweep
    quota = MagicMock()
    quota.sweep.return_value = 0
    worker = MaintenanceWorker(sessions, quota, None, interval=1)

    real_sleep = asyncio.sleep

    async def fast_sleep(seconds):
        await real_sleep(0)

    monkeypatch.setattr("llmgate.service.maintenance.asyncio.sleep", fast_sleep)
    await worker.start()
    started = time.monotonic()
    for _ in range(10):
        await real_sleep(0.01)
    elapsed = time.monotonic() - started
    await worker.stop()

    assert sessions.sweep.called
    assert elapsed < 0.25
