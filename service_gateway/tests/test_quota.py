"""
Unit tests for the fixed-window quota enforcer.
"""

import pytest

from service_gateway.app.ratelimit.quota import QuotaDecision, QuotaEnforcer, QuotaOutcome
from shared.errors import RateLimitExceededError
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock, InMemoryStore


# Aligned to a 60s window boundary.
WINDOW_START = 1_700_000_040.0


class TestQuotaEnforcer:
    """Test cases for QuotaEnforcer."""

    @pytest.fixture
    def clock(self):
        return FakeClock(WINDOW_START)

    @pytest.fixture
    def store(self, clock):
        return InMemoryStore(clock)

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("gateway-test")

    @pytest.fixture
    def enforcer(self, store, clock, metrics):
        return QuotaEnforcer(store, window_ms=60_000, clock=clock, metrics=metrics)

    @pytest.mark.asyncio
    async def test_exactly_limit_requests_pass_then_next_window_resets(self, enforcer, clock):
        """N requests succeed, the (N+1)th is denied, the next window starts over."""
        for i in range(5):
            decision = await enforcer.check("client-1", 5)
            assert decision.outcome == QuotaOutcome.ALLOWED
            assert decision.remaining == 5 - (i + 1)

        denied = await enforcer.check("client-1", 5)
        assert denied.outcome == QuotaOutcome.DENIED
        assert denied.allowed is False
        assert denied.remaining == 0

        clock.advance(60)
        decision = await enforcer.check("client-1", 5)
        assert decision.outcome == QuotaOutcome.ALLOWED
        assert decision.remaining == 4

    @pytest.mark.asyncio
    async def test_standard_tier_scenario(self, enforcer, clock):
        """1000 requests pass with remaining counting down to 0, the 1001st is denied."""
        remaining = []
        for _ in range(1000):
            decision = await enforcer.check("standard-client", 1000)
            assert decision.allowed
            remaining.append(decision.remaining)
            clock.advance(0.01)

        assert remaining[0] == 999
        assert remaining[998] == 1
        assert remaining[-1] == 0
        assert remaining == sorted(remaining, reverse=True)

        denied = await enforcer.check("standard-client", 1000)
        assert denied.outcome == QuotaOutcome.DENIED
        assert denied.retry_after > 0

    @pytest.mark.asyncio
    async def test_retry_after_rounds_up_to_window_end(self, enforcer, clock):
        clock.advance(59.5)
        await enforcer.check("client-1", 1)
        denied = await enforcer.check("client-1", 1)

        assert denied.retry_after == 1
        assert denied.reset_time_ms == int((WINDOW_START + 60) * 1000)

    @pytest.mark.asyncio
    async def test_retry_after_counts_whole_seconds_remaining(self, enforcer, clock):
        clock.advance(20.2)
        await enforcer.check("client-1", 1)
        denied = await enforcer.check("client-1", 1)

        assert denied.retry_after == 40

    @pytest.mark.asyncio
    async def test_zero_limit_rejects_everything(self, enforcer):
        """Suspended clients carry a quota of zero."""
        decision = await enforcer.check("suspended", 0)

        assert decision.outcome == QuotaOutcome.DENIED
        assert decision.remaining == 0

    @pytest.mark.asyncio
    async def test_window_key_and_expiry(self, enforcer, store, clock):
        clock.advance(12.345)
        await enforcer.check("client-1", 10)

        key = f"rate_limit:client-1:{int(WINDOW_START * 1000)}"
        assert await store.get(key) == "1"
        assert 0 < store.ttl_ms(key) <= 60_000

    @pytest.mark.asyncio
    async def test_windows_are_shared_across_clients_but_counted_separately(self, enforcer):
        first = await enforcer.check("client-a", 10)
        second = await enforcer.check("client-b", 10)

        assert first.reset_time_ms == second.reset_time_ms
        assert first.remaining == second.remaining == 9

    @pytest.mark.asyncio
    async def test_instances_sharing_a_store_share_counters(self, store, clock):
        first = QuotaEnforcer(store, window_ms=60_000, clock=clock)
        second = QuotaEnforcer(store, window_ms=60_000, clock=clock)

        await first.check("client-1", 2)
        await second.check("client-1", 2)
        decision = await first.check("client-1", 2)

        assert decision.outcome == QuotaOutcome.DENIED

    @pytest.mark.asyncio
    async def test_rejected_attempts_still_count(self, enforcer, store):
        await enforcer.check("client-1", 1)
        await enforcer.check("client-1", 1)
        await enforcer.check("client-1", 1)

        key = f"rate_limit:client-1:{int(WINDOW_START * 1000)}"
        assert await store.get(key) == "3"

    @pytest.mark.asyncio
    async def test_store_failure_fails_open(self, enforcer, store, metrics):
        store.fail = True

        decision = await enforcer.check("client-1", 10)

        assert decision.outcome == QuotaOutcome.DEGRADED_ALLOW
        assert decision.allowed is True
        assert decision.degraded is True
        assert decision.headers()["X-RateLimit-Degraded"] == "true"
        assert metrics.sample_value("quota_decisions_total", outcome="degraded_allow") == 1.0
        assert metrics.sample_value("store_errors_total", operation="quota_check") == 1.0

    @pytest.mark.asyncio
    async def test_metrics_distinguish_outcomes(self, enforcer, metrics):
        await enforcer.check("client-1", 1)
        await enforcer.check("client-1", 1)

        assert metrics.sample_value("quota_decisions_total", outcome="allowed") == 1.0
        assert metrics.sample_value("quota_decisions_total", outcome="denied") == 1.0

    @pytest.mark.asyncio
    async def test_status_does_not_count(self, enforcer):
        await enforcer.check("client-1", 10)

        status = await enforcer.status("client-1", 10)
        again = await enforcer.status("client-1", 10)

        assert status.remaining == again.remaining == 9

    @pytest.mark.asyncio
    async def test_reset_clears_current_window(self, enforcer):
        await enforcer.check("client-1", 1)
        await enforcer.reset("client-1")

        decision = await enforcer.check("client-1", 1)
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_enforce_raises_with_retry_after(self, enforcer):
        await enforcer.enforce("client-1", 1)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await enforcer.enforce("client-1", 1)

        error = exc_info.value
        assert error.status_code == 429
        assert error.headers["Retry-After"] == str(error.retry_after)
        assert error.headers["X-RateLimit-Remaining"] == "0"
        assert error.details["retry_after"] == error.retry_after

    def test_decision_headers(self):
        decision = QuotaDecision(QuotaOutcome.ALLOWED, 100, 42, int(WINDOW_START * 1000))

        headers = decision.headers()

        assert headers == {
            "X-RateLimit-Limit": "100",
            "X-RateLimit-Remaining": "42",
            "X-RateLimit-Reset": "2023-11-14T22:14:00Z",
        }

    def test_invalid_window_rejected(self):
        with pytest.raises(ValueError):
            QuotaEnforcer(InMemoryStore(), window_ms=0)
