"""
Adaptive concurrency controller.

Closed feedback loop over a sliding window of throughput and error samples:
observe, compare against the performance goal, actuate concurrency, per-item
delay and the RPM ceiling of the session's rate limiter, then re-observe.
"""

import time
import threading
from collections import deque
from typing import Callable, Optional

from profile_crawler.utils.logging import get_business_logger
from profile_crawler.concurrent.models import ConcurrencyMetrics, PerformanceGoal
from profile_crawler.concurrent.rate_controller import RateLimiter


class ConcurrencyController:
    """
    Tunes concurrency, profile delay and RPM limit for one session.

    Samples are recorded by the orchestrating thread at chunk boundaries, so
    ``maybe_adjust`` never races with a running chunk.
    """

    def __init__(
        self,
        goal: PerformanceGoal,
        rate_limiter: Optional[RateLimiter] = None,
        global_max_concurrency: int = 12,
        requested_concurrency: Optional[int] = None,
        base_profile_delay_ms: float = 2500,
        requested_profile_delay_ms: Optional[float] = None,
        min_profile_delay_ms: float = 700,
        max_profile_delay_ms: float = 8000,
        adjust_interval_seconds: float = 15.0,
        window_seconds: float = 60.0,
        time_func: Callable[[], float] = time.monotonic,
    ):
        self.goal = goal
        self.rate_limiter = rate_limiter
        self.adjust_interval_seconds = adjust_interval_seconds
        self.window_seconds = window_seconds
        self.min_profile_delay_ms = min_profile_delay_ms
        self.max_profile_delay_ms = max_profile_delay_ms
        self._time = time_func
        self._lock = threading.Lock()

        preset = goal.preset
        self.max_concurrency = max(1, min(preset.max_concurrency, global_max_concurrency))
        self.min_concurrency = min(preset.min_concurrency, self.max_concurrency)

        if requested_concurrency is not None:
            self.concurrency = self._clamp_concurrency(requested_concurrency)
        else:
            self.concurrency = self.min_concurrency

        if requested_profile_delay_ms is not None:
            self.profile_delay_ms = float(requested_profile_delay_ms)
        else:
            self.profile_delay_ms = base_profile_delay_ms * preset.profile_delay_multiplier

        self.rpm_limit = goal.target_profiles_per_min * preset.rpm_multiplier
        self.last_adjustment: Optional[float] = None
        self.adjustments = 0

        # (timestamp, cumulative successes)
        self._samples = deque()
        # (timestamp, succeeded, failed)
        self._outcomes = deque()

        self.logger = get_business_logger("concurrency")

        if self.rate_limiter is not None:
            self.rate_limiter.set_max_requests_per_minute(self.rpm_limit)

        self.logger.info(
            f"Controller initialized: mode={goal.mode.value}, "
            f"concurrency={self.concurrency} [{self.min_concurrency}, {self.max_concurrency}], "
            f"delay={self.profile_delay_ms:.0f}ms, rpm={self.rpm_limit:.1f}"
        )

    @classmethod
    def from_config(cls, goal: PerformanceGoal, rate_limiter: Optional[RateLimiter], config,
                    requested_concurrency: Optional[int] = None,
                    requested_profile_delay_ms: Optional[float] = None,
                    **kwargs) -> "ConcurrencyController":
        """Build a controller from a ``ConcurrencyConfig``."""
        if requested_concurrency is None:
            requested_concurrency = config.requested_concurrency
        return cls(
            goal,
            rate_limiter=rate_limiter,
            global_max_concurrency=config.global_max_concurrency,
            requested_concurrency=requested_concurrency,
            base_profile_delay_ms=config.base_profile_delay_ms,
            requested_profile_delay_ms=requested_profile_delay_ms,
            min_profile_delay_ms=config.min_profile_delay_ms,
            max_profile_delay_ms=config.max_profile_delay_ms,
            adjust_interval_seconds=config.adjust_interval_seconds,
            window_seconds=config.window_seconds,
            **kwargs
        )

    def _clamp_concurrency(self, value: int) -> int:
        return max(self.min_concurrency, min(self.max_concurrency, int(value)))

    def record_sample(self, cumulative_successes: int) -> None:
        """Record the cumulative success count at the current time."""
        with self._lock:
            now = self._time()
            self._samples.append((now, cumulative_successes))
            self._prune(now)

    def record_outcomes(self, succeeded: int, failed: int) -> None:
        """Record the outcome counts of a finished chunk."""
        with self._lock:
            now = self._time()
            self._outcomes.append((now, succeeded, failed))
            self._prune(now)

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        # Keep one sample older than the window as the baseline
        while len(self._samples) > 2 and self._samples[1][0] <= cutoff:
            self._samples.popleft()
        while self._outcomes and self._outcomes[0][0] < cutoff:
            self._outcomes.popleft()

    def get_throughput(self) -> Optional[float]:
        """Successes per minute across the window, or None without two samples."""
        with self._lock:
            if len(self._samples) < 2:
                return None
            first_time, first_count = self._samples[0]
            last_time, last_count = self._samples[-1]
            elapsed = last_time - first_time
            if elapsed <= 0:
                return None
            return (last_count - first_count) * 60.0 / elapsed

    def get_error_rate(self) -> float:
        with self._lock:
            succeeded = sum(s for _, s, _ in self._outcomes)
            failed = sum(f for _, _, f in self._outcomes)
            total = succeeded + failed
            return failed / total if total else 0.0

    def maybe_adjust(self) -> bool:
        """
        Apply the decision rule if the debounce interval has elapsed.

        Returns:
            True when an adjustment pass ran
        """
        now = self._time()
        if self.last_adjustment is not None and now - self.last_adjustment < self.adjust_interval_seconds:
            return False

        throughput = self.get_throughput()
        error_rate = self.get_error_rate()
        target = self.goal.target_profiles_per_min

        with self._lock:
            self.last_adjustment = now
            self.adjustments += 1
            old_concurrency = self.concurrency
            old_delay = self.profile_delay_ms

            if throughput is not None and throughput < 0.9 * target and error_rate < 0.05:
                self.concurrency = self._clamp_concurrency(self.concurrency + 1)
            elif error_rate > 0.10 or (throughput is not None and throughput > 1.25 * target):
                self.concurrency = self._clamp_concurrency(self.concurrency - 1)

            if error_rate > 0.12:
                self.profile_delay_ms = min(self.profile_delay_ms * 1.2, self.max_profile_delay_ms)
            elif throughput is not None and throughput < target and self.profile_delay_ms > 800:
                self.profile_delay_ms = max(self.profile_delay_ms * 0.9, self.min_profile_delay_ms)

            desired_rpm = target * self.goal.preset.rpm_multiplier
            rpm_changed = desired_rpm != self.rpm_limit
            self.rpm_limit = desired_rpm

        if rpm_changed and self.rate_limiter is not None:
            self.rate_limiter.set_max_requests_per_minute(desired_rpm)

        if old_concurrency != self.concurrency or old_delay != self.profile_delay_ms:
            throughput_text = f"{throughput:.1f}" if throughput is not None else "n/a"
            self.logger.info(
                f"Adjusted: throughput={throughput_text}/min target={target} "
                f"error_rate={error_rate:.2f} concurrency {old_concurrency}->{self.concurrency} "
                f"delay {old_delay:.0f}->{self.profile_delay_ms:.0f}ms"
            )
        return True

    def snapshot(self) -> ConcurrencyMetrics:
        throughput = self.get_throughput()
        error_rate = self.get_error_rate()
        with self._lock:
            return ConcurrencyMetrics(
                current_profiles_per_min=round(throughput or 0.0, 2),
                current_concurrency=self.concurrency,
                current_profile_delay_ms=round(self.profile_delay_ms, 1),
                rpm_limit=self.rpm_limit,
                error_rate=round(error_rate, 4),
                last_adjustment=self.last_adjustment,
                samples=len(self._samples),
            )
