"""
Property-based tests for the adaptive concurrency controller.
"""

import pytest
from hypothesis import given, strategies as st
from pathlib import Path
import sys

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from profile_crawler.concurrent.adaptive import ConcurrencyController
from profile_crawler.concurrent.models import CrawlMode, MODE_PRESETS, PerformanceGoal
from profile_crawler.concurrent.rate_controller import RateLimiter
from config import ConcurrencyConfig
from fakes import FakeClock


def make_controller(clock, mode=CrawlMode.BALANCED, target=20.0, limiter=None, **kwargs):
    goal = PerformanceGoal(target_profiles_per_min=target, mode=mode)
    return ConcurrencyController(goal, rate_limiter=limiter, time_func=clock, **kwargs)


def feed(controller, clock, successes_per_step, failures_per_step=0, steps=4, step_seconds=15):
    """Record evenly spaced chunk outcomes."""
    total = 0
    controller.record_sample(total)
    for _ in range(steps):
        clock.advance(step_seconds)
        total += successes_per_step
        controller.record_sample(total)
        controller.record_outcomes(successes_per_step, failures_per_step)


class TestInitialState:
    """Defaults derived from the mode preset."""

    @pytest.mark.parametrize("mode", list(CrawlMode))
    def test_starts_at_preset_minimum(self, mode):
        controller = make_controller(FakeClock(), mode=mode)
        preset = MODE_PRESETS[mode]

        assert controller.concurrency == preset.min_concurrency
        assert controller.max_concurrency == min(preset.max_concurrency, 12)
        assert controller.profile_delay_ms == pytest.approx(2500 * preset.profile_delay_multiplier)
        assert controller.rpm_limit == pytest.approx(20 * preset.rpm_multiplier)

    def test_requested_concurrency_is_clamped(self):
        controller = make_controller(FakeClock(), mode=CrawlMode.CONSERVATIVE, requested_concurrency=9)
        assert controller.concurrency == 3

    def test_global_cap_limits_fast_mode(self):
        controller = make_controller(FakeClock(), mode=CrawlMode.FAST, global_max_concurrency=4)
        assert controller.max_concurrency == 4

    def test_requested_delay_wins_over_preset(self):
        controller = make_controller(FakeClock(), requested_profile_delay_ms=1200)
        assert controller.profile_delay_ms == 1200

    def test_rpm_limit_pushed_into_limiter(self):
        clock = FakeClock()
        limiter = RateLimiter(time_func=clock, sleep_func=clock.sleep)
        make_controller(clock, mode=CrawlMode.FAST, target=10, limiter=limiter)
        assert limiter.max_requests_per_minute == pytest.approx(20)

    def test_from_config(self):
        config = ConcurrencyConfig(global_max_concurrency=5, requested_concurrency=4)
        goal = PerformanceGoal(mode=CrawlMode.FAST)
        controller = ConcurrencyController.from_config(goal, None, config, time_func=FakeClock())

        assert controller.max_concurrency == 5
        assert controller.concurrency == 4


class TestFeedbackLoop:
    """Decision rule applied by maybe_adjust."""

    def test_slow_clean_run_scales_up(self):
        clock = FakeClock()
        controller = make_controller(clock, target=20)
        # 2 successes per 15s = 8/min
        feed(controller, clock, successes_per_step=2)

        assert controller.maybe_adjust() is True
        assert controller.concurrency == 3
        assert controller.profile_delay_ms == pytest.approx(2250)

    def test_high_error_rate_scales_down_and_slows(self):
        clock = FakeClock()
        controller = make_controller(clock, target=20, requested_concurrency=4)
        feed(controller, clock, successes_per_step=3, failures_per_step=2)

        controller.maybe_adjust()

        assert controller.concurrency == 3
        assert controller.profile_delay_ms == pytest.approx(3000)

    def test_overshooting_target_scales_down(self):
        clock = FakeClock()
        controller = make_controller(clock, target=10, requested_concurrency=4)
        # 10 per 15s = 40/min > 1.25 * 10
        feed(controller, clock, successes_per_step=10)

        controller.maybe_adjust()
        assert controller.concurrency == 3

    def test_adjustments_are_debounced(self):
        clock = FakeClock()
        controller = make_controller(clock, target=20)
        feed(controller, clock, successes_per_step=1)

        assert controller.maybe_adjust() is True
        clock.advance(10)
        assert controller.maybe_adjust() is False
        clock.advance(5)
        assert controller.maybe_adjust() is True

    def test_single_sample_has_no_throughput(self):
        clock = FakeClock()
        controller = make_controller(clock)
        controller.record_sample(5)

        assert controller.get_throughput() is None
        controller.maybe_adjust()
        assert controller.concurrency == controller.min_concurrency

    def test_delay_never_below_floor(self):
        clock = FakeClock()
        controller = make_controller(clock, target=100, requested_profile_delay_ms=900)
        for _ in range(10):
            feed(controller, clock, successes_per_step=1, steps=1)
            controller.maybe_adjust()

        assert controller.profile_delay_ms >= 700

    @given(
        mode=st.sampled_from(list(CrawlMode)),
        outcomes=st.lists(
            st.tuples(st.integers(min_value=0, max_value=30), st.integers(min_value=0, max_value=30)),
            min_size=1,
            max_size=20,
        ),
        target=st.floats(min_value=1, max_value=200),
    )
    def test_concurrency_and_delay_stay_in_bounds(self, mode, outcomes, target):
        """Whatever the feedback, concurrency and delay stay inside their bounds."""
        clock = FakeClock()
        controller = make_controller(clock, mode=mode, target=target)
        preset = MODE_PRESETS[mode]
        total = 0
        controller.record_sample(total)

        for succeeded, failed in outcomes:
            clock.advance(15)
            total += succeeded
            controller.record_sample(total)
            controller.record_outcomes(succeeded, failed)
            controller.maybe_adjust()

            assert preset.min_concurrency <= controller.concurrency <= min(preset.max_concurrency, 12)
            assert 700 <= controller.profile_delay_ms <= 8000

    def test_snapshot_reports_metrics(self):
        clock = FakeClock()
        controller = make_controller(clock, target=20)
        feed(controller, clock, successes_per_step=5, failures_per_step=5)

        metrics = controller.snapshot()
        assert metrics.current_profiles_per_min == pytest.approx(20)
        assert metrics.error_rate == pytest.approx(0.5)
        assert metrics.current_concurrency == controller.concurrency
