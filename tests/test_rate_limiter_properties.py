"""
Property-based tests for the rate limiter and its circuit breaker.
"""

import pytest
from hypothesis import given, strategies as st
from pathlib import Path
import sys

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from profile_crawler.concurrent.models import CircuitState
from profile_crawler.concurrent.rate_controller import RateLimiter
from config import RateLimitConfig
from fakes import FakeClock


def make_limiter(clock, **overrides):
    params = dict(
        max_requests_per_minute=30,
        min_delay_ms=1000,
        max_delay_ms=10000,
        error_threshold=5,
        circuit_reset_time_ms=60000,
        time_func=clock,
        sleep_func=clock.sleep,
    )
    params.update(overrides)
    return RateLimiter(**params)


class TestSlidingWindow:
    """Admission inside the 60 second window."""

    @given(limit=st.integers(min_value=1, max_value=40))
    def test_never_admits_more_than_limit_in_window(self, limit):
        """Within one window at most ``limit`` requests are admitted."""
        clock = FakeClock()
        limiter = make_limiter(clock, max_requests_per_minute=limit)

        admitted = 0
        for _ in range(limit * 2):
            if limiter.can_request():
                limiter.record_request()
                admitted += 1
            clock.advance(0.1)

        assert admitted == limit
        assert limiter.get_requests_in_window() == limit

    def test_slots_free_up_after_window(self):
        clock = FakeClock()
        limiter = make_limiter(clock, max_requests_per_minute=2)

        limiter.record_request()
        limiter.record_request()
        assert not limiter.can_request()

        clock.advance(60)
        assert limiter.can_request()
        assert limiter.get_requests_in_window() == 0

    def test_wait_for_slot_polls_until_window_frees(self):
        clock = FakeClock()
        limiter = make_limiter(clock, max_requests_per_minute=1, poll_interval_seconds=1.0)
        limiter.record_request()

        assert limiter.wait_for_slot() is True
        assert clock.sleeps
        assert sum(clock.sleeps) >= 59

    def test_wait_for_slot_honours_cancellation(self):
        clock = FakeClock()
        limiter = make_limiter(clock, max_requests_per_minute=1)
        limiter.record_request()

        assert limiter.wait_for_slot(should_stop=lambda: True) is False


class TestCircuitBreaker:
    """Closed, open and half-open transitions."""

    def test_opens_at_error_threshold(self):
        clock = FakeClock()
        limiter = make_limiter(clock, error_threshold=3)

        limiter.record_error("boom")
        limiter.record_error("boom")
        assert limiter.circuit_state == CircuitState.CLOSED

        limiter.record_error("boom")
        assert limiter.circuit_state == CircuitState.OPEN
        assert not limiter.can_request()

    @pytest.mark.parametrize("meta", [
        {"status": 429},
        {"status": 403},
        {"blocked": True},
        {"login_redirect": True},
    ])
    def test_rate_limit_signal_opens_immediately(self, meta):
        clock = FakeClock()
        limiter = make_limiter(clock)

        limiter.record_error("pushed back", meta)

        assert limiter.circuit_state == CircuitState.OPEN
        assert limiter.backoff_penalty == 1

    def test_half_open_after_reset_then_closes_on_success(self):
        clock = FakeClock()
        limiter = make_limiter(clock, circuit_reset_time_ms=60000)
        limiter.record_error("blocked", {"blocked": True})

        clock.advance(59)
        assert not limiter.can_request()

        clock.advance(1)
        assert limiter.can_request()
        assert limiter.circuit_state == CircuitState.HALF_OPEN

        limiter.record_request()
        assert limiter.circuit_state == CircuitState.CLOSED
        assert limiter.error_count == 0

    def test_half_open_admits_single_trial_request(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        limiter.record_error("blocked", {"status": 429})
        clock.advance(60)

        assert limiter.can_request() is True
        assert limiter.can_request() is False

    def test_failed_trial_request_reopens(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        limiter.record_error("blocked", {"status": 429})
        clock.advance(60)
        assert limiter.can_request()

        limiter.record_error("still blocked")
        assert limiter.circuit_state == CircuitState.OPEN
        assert limiter.last_circuit_open == clock()

    @given(signals=st.integers(min_value=0, max_value=20))
    def test_backoff_penalty_is_capped(self, signals):
        clock = FakeClock()
        limiter = make_limiter(clock)
        for _ in range(signals):
            limiter.record_error("429", {"status": 429})

        assert 0 <= limiter.backoff_penalty <= 5

    def test_success_decays_errors_and_penalty(self):
        clock = FakeClock()
        limiter = make_limiter(clock, error_threshold=10)
        limiter.record_error("a")
        limiter.record_error("b")
        limiter.backoff_penalty = 2

        limiter.record_request()

        assert limiter.error_count == 1
        assert limiter.backoff_penalty == 1.5

    def test_reset_clears_everything(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        limiter.record_request()
        limiter.record_error("blocked", {"blocked": True})

        limiter.reset()

        assert limiter.circuit_state == CircuitState.CLOSED
        assert limiter.error_count == 0
        assert limiter.backoff_penalty == 0
        assert limiter.get_requests_in_window() == 0


class TestAdaptiveDelay:
    """Delay scaling by error pressure."""

    def test_clean_limiter_returns_base_delay(self):
        limiter = make_limiter(FakeClock())
        assert limiter.get_adaptive_delay(2000) == 2000

    def test_errors_and_penalty_scale_delay(self):
        limiter = make_limiter(FakeClock(), error_threshold=10)
        limiter.record_error("a")
        limiter.record_error("b")
        # 2000 * (1 + 2 * 0.2) = 2800
        assert limiter.get_adaptive_delay(2000) == pytest.approx(2800)

        limiter.backoff_penalty = 2
        # 2800 * (1 + 2 * 0.5) = 5600
        assert limiter.get_adaptive_delay(2000) == pytest.approx(5600)

    def test_half_open_doubles_delay(self):
        clock = FakeClock()
        limiter = make_limiter(clock, max_delay_ms=100000)
        limiter.record_error("blocked", {"status": 429})
        clock.advance(60)
        limiter.can_request()

        # error_count 1, half-open, penalty 1: 1000 * 1.2 * 2 * 1.5
        assert limiter.get_adaptive_delay(1000) == pytest.approx(3600)

    @given(
        base=st.floats(min_value=0, max_value=50000),
        errors=st.integers(min_value=0, max_value=30),
    )
    def test_delay_always_clamped(self, base, errors):
        limiter = make_limiter(FakeClock(), error_threshold=100)
        for _ in range(errors):
            limiter.record_error("x")

        delay = limiter.get_adaptive_delay(base)
        assert limiter.min_delay_ms <= delay <= limiter.max_delay_ms


class TestLimiterConfiguration:

    def test_from_config_copies_settings(self):
        config = RateLimitConfig(max_requests_per_minute=12, error_threshold=7)
        limiter = RateLimiter.from_config(config)

        assert limiter.max_requests_per_minute == 12
        assert limiter.error_threshold == 7

    def test_statistics_report_state(self):
        clock = FakeClock()
        limiter = make_limiter(clock, max_requests_per_minute=3)
        limiter.record_request()
        limiter.record_error("blocked", {"blocked": True})

        stats = limiter.get_statistics()
        assert stats["requests_last_minute"] == 1
        assert stats["remaining_slots"] == 2
        assert stats["circuit_state"] == "open"
        assert stats["circuit_opens"] == 1
        assert stats["total_errors"] == 1
