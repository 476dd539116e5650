"""Tests for daily/monthly quotas and the per-request token ceiling."""

from llmgate.service.quota import DAY_SECONDS, MONTH_SECONDS, QuotaEnforcer


class SecondsClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def _enforcer(clock, daily=3, monthly=100, max_tokens=4096):
    return QuotaEnforcer(
        daily_limit=daily,
        monthly_limit=monthly,
        max_tokens_per_request=max_tokens,
        clock=clock,
    )


class TestTokenCeiling:
    def test_over_ceiling_rejected_without_spending(self):
        quota = _enforcer(SecondsClock())
        result = quota.check_tokens(5000)
        assert not result.allowed
        assert result.reason == "tokens"
        assert quota.get_record("caller") is None

    def test_within_ceiling_and_missing_allowed(self):
        quota = _enforcer(SecondsClock())
        assert quota.check_tokens(4096).allowed
        assert quota.check_tokens(None).allowed

    def test_zero_ceiling_disables(self):
        quota = _enforcer(SecondsClock(), max_tokens=0)
        assert quota.check_tokens(1_000_000).allowed


class TestAdmit:
    def test_daily_exhausted_despite_monthly_headroom(self):
        quota = _enforcer(SecondsClock(), daily=2, monthly=1000)
        assert quota.admit("caller").allowed
        assert quota.admit("caller").allowed
        result = quota.admit("caller")
        assert not result.allowed
        assert result.reason == "daily"
        assert result.monthly_count == 2

    def test_monthly_exhausted(self):
        clock = SecondsClock()
        quota = _enforcer(clock, daily=10, monthly=2)
        quota.admit("caller")
        quota.admit("caller")
        result = quota.admit("caller")
        assert result.reason == "monthly"

    def test_rejection_does_not_increment(self):
        quota = _enforcer(SecondsClock(), daily=1)
        quota.admit("caller")
        quota.admit("caller")
        quota.admit("caller")
        record = quota.get_record("caller")
        assert record.daily_count == 1
        assert record.monthly_count == 1

    def test_daily_window_resets_after_24h(self):
        clock = SecondsClock()
        quota = _enforcer(clock, daily=1)
        assert quota.admit("caller").allowed
        assert not quota.admit("caller").allowed
        clock.now += DAY_SECONDS
        result = quota.admit("caller")
        assert result.allowed
        assert result.daily_count == 1
        assert result.monthly_count == 2
        assert quota.get_record("caller").daily_reset_at == clock.now + DAY_SECONDS

    def test_monthly_window_resets_after_30_days(self):
        clock = SecondsClock()
        quota = _enforcer(clock, daily=0, monthly=1)
        assert quota.admit("caller").allowed
        clock.now += MONTH_SECONDS - 1
        assert not quota.admit("caller").allowed
        clock.now += 1
        assert quota.admit("caller").allowed

    def test_zero_limits_disable(self):
        quota = _enforcer(SecondsClock(), daily=0, monthly=0)
        for _ in range(50):
            assert quota.admit("caller").allowed

    def test_callers_are_independent(self):
        quota = _enforcer(SecondsClock(), daily=1)
        assert quota.admit("a").allowed
        assert not quota.admit("a").allowed
        assert quota.admit("b").allowed


class TestRefundAndUsage:
    def test_refund_returns_slot(self):
        quota = _enforcer(SecondsClock(), daily=1)
        assert quota.admit("caller").allowed
        quota.refund("caller")
        assert quota.admit("caller").allowed

    def test_without_refund_slot_stays_spent(self):
        quota = _enforcer(SecondsClock(), daily=1)
        assert quota.admit("caller").allowed
        assert not quota.admit("caller").allowed

    def test_refund_never_goes_negative(self):
        quota = _enforcer(SecondsClock())
        quota.refund("unknown")
        quota.admit("caller")
        quota.refund("caller")
        quota.refund("caller")
        record = quota.get_record("caller")
        assert record.daily_count == 0
        assert record.monthly_count == 0

    def test_usage_snapshot(self):
        clock = SecondsClock()
        quota = _enforcer(clock, daily=5, monthly=50)
        quota.admit("caller")
        usage = quota.usage("caller").to_dict()
        assert usage["daily"] == {"used": 1, "limit": 5, "reset_at": clock.now + DAY_SECONDS}
        assert usage["monthly"]["used"] == 1
        assert usage["monthly"]["limit"] == 50

    def test_sweep_drops_fully_lapsed_records(self):
        clock = SecondsClock()
        quota = _enforcer(clock)
        quota.admit("old")
        clock.now += DAY_SECONDS
        quota.admit("recent")
        assert quota.sweep() == 0
        clock.now += MONTH_SECONDS
        assert quota.sweep() == 2
        assert quota.get_record("old") is None
