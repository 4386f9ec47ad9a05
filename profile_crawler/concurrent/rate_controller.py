"""
Rate limiter with a circuit breaker.

Admission is bounded by a sliding one-minute window of successful requests and
by a three-state breaker (closed, open, half-open). One limiter is owned by
each crawl session and is shared by every worker of that session; workers
record requests and errors from their own threads, so every state change and
every read that decides admission or delay happens under the limiter's lock.
"""

import time
import threading
from typing import Any, Callable, Dict, Optional
from collections import deque

from profile_crawler.utils.logging import get_logger
from profile_crawler.concurrent.models import CircuitState
from profile_crawler.concurrent.thread_safe import ThreadSafeCounter


class RateLimiter:
    """
    Sliding-window rate limiter with circuit breaker and backoff penalty.

    Breaker rules:
    - closed: opens once ``error_threshold`` consecutive-ish errors accumulate,
      or immediately on a rate-limit signal (429/403/block/login redirect)
    - open: rejects everything until ``circuit_reset_time_ms`` has elapsed,
      then moves to half-open
    - half-open: admits a single trial request; success closes, failure reopens
    """

    def __init__(
        self,
        max_requests_per_minute: float = 30,
        min_delay_ms: int = 1000,
        max_delay_ms: int = 10000,
        error_threshold: int = 5,
        circuit_reset_time_ms: int = 60000,
        window_seconds: float = 60.0,
        poll_interval_seconds: float = 1.0,
        max_backoff_penalty: float = 5.0,
        time_func: Callable[[], float] = time.monotonic,
        sleep_func: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            max_requests_per_minute: Admissions allowed inside the window
            min_delay_ms: Lower clamp for adaptive delays
            max_delay_ms: Upper clamp for adaptive delays
            error_threshold: Errors that open the circuit
            circuit_reset_time_ms: How long the circuit stays open
            window_seconds: Length of the request history window
            poll_interval_seconds: Poll interval of ``wait_for_slot``
            max_backoff_penalty: Cap for the rate-limit-signal penalty
            time_func: Clock, replaceable in tests
            sleep_func: Sleep function, replaceable in tests
        """
        self.max_requests_per_minute = max_requests_per_minute
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms
        self.error_threshold = error_threshold
        self.circuit_reset_time_ms = circuit_reset_time_ms
        self.window_seconds = window_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.max_backoff_penalty = max_backoff_penalty

        self._time = time_func
        self._sleep = sleep_func
        self._lock = threading.RLock()

        self._request_history = deque()
        self.error_count = 0
        self.backoff_penalty = 0.0
        self.circuit_state = CircuitState.CLOSED
        self.last_circuit_open: Optional[float] = None
        self._trial_started: Optional[float] = None

        self._total_requests = ThreadSafeCounter()
        self._total_errors = ThreadSafeCounter()
        self._circuit_opens = ThreadSafeCounter()

        self.logger = get_logger(__name__)
        self.logger.info(
            f"Rate limiter initialized: {max_requests_per_minute} req/min, "
            f"error threshold {error_threshold}"
        )

    @classmethod
    def from_config(cls, config, **kwargs) -> "RateLimiter":
        """Build a limiter from a ``RateLimitConfig``."""
        return cls(
            max_requests_per_minute=config.max_requests_per_minute,
            min_delay_ms=config.min_delay_ms,
            max_delay_ms=config.max_delay_ms,
            error_threshold=config.error_threshold,
            circuit_reset_time_ms=config.circuit_reset_time_ms,
            window_seconds=config.window_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
            max_backoff_penalty=config.max_backoff_penalty,
            **kwargs
        )

    def can_request(self) -> bool:
        """
        Check whether a request may be issued now.

        Moves an open circuit to half-open once the reset time has passed. In
        half-open state only one trial request is admitted until it is resolved.
        """
        with self._lock:
            now = self._time()

            if self.circuit_state == CircuitState.OPEN:
                elapsed_ms = (now - self.last_circuit_open) * 1000
                if elapsed_ms < self.circuit_reset_time_ms:
                    self.logger.debug(
                        f"Circuit open, {(self.circuit_reset_time_ms - elapsed_ms) / 1000:.0f}s left"
                    )
                    return False
                self.circuit_state = CircuitState.HALF_OPEN
                self._trial_started = None
                self.logger.info("Circuit breaker: HALF-OPEN (testing)")

            self._prune_history(now)
            if len(self._request_history) >= self.max_requests_per_minute:
                self.logger.debug(
                    f"Rate limit reached: {len(self._request_history)}/{self.max_requests_per_minute}"
                )
                return False

            if self.circuit_state == CircuitState.HALF_OPEN:
                trial_timeout = self.circuit_reset_time_ms / 1000
                if self._trial_started is not None and now - self._trial_started < trial_timeout:
                    return False
                self._trial_started = now

            return True

    def wait_for_slot(self, should_stop: Optional[Callable[[], bool]] = None) -> bool:
        """
        Block until ``can_request`` admits a request.

        Args:
            should_stop: Optional cancellation check evaluated between polls

        Returns:
            True when a slot was granted, False when cancelled
        """
        while True:
            if should_stop is not None and should_stop():
                return False
            if self.can_request():
                return True
            self._sleep(self.poll_interval_seconds)

    def record_request(self, meta: Optional[Dict[str, Any]] = None) -> None:
        """Record a successful request."""
        with self._lock:
            self._request_history.append(self._time())
            self._total_requests.increment()

            if self.error_count > 0:
                self.error_count -= 1
            self.backoff_penalty = max(0.0, self.backoff_penalty - 0.5)

            if self.circuit_state == CircuitState.HALF_OPEN:
                self.circuit_state = CircuitState.CLOSED
                self.error_count = 0
                self._trial_started = None
                self.logger.info("Circuit breaker: CLOSED (recovered)")

    def record_error(self, error: Any = None, meta: Optional[Dict[str, Any]] = None) -> None:
        """
        Record a failed request.

        Args:
            error: The error or message, for logging
            meta: Fetch metadata; ``status`` 429/403, ``blocked`` or
                ``login_redirect`` count as rate-limit signals
        """
        meta = meta or {}
        rate_signal = (
            meta.get("status") in (403, 429)
            or bool(meta.get("blocked"))
            or bool(meta.get("login_redirect"))
        )

        with self._lock:
            self.error_count += 1
            self._total_errors.increment()

            if rate_signal:
                self.backoff_penalty = min(self.max_backoff_penalty, self.backoff_penalty + 1)

            if self.circuit_state == CircuitState.HALF_OPEN:
                self._open_circuit(f"trial request failed: {error}")
            elif self.circuit_state == CircuitState.CLOSED:
                if rate_signal:
                    self._open_circuit(f"rate limit signal {meta.get('status') or ''}".strip())
                elif self.error_count >= self.error_threshold:
                    self._open_circuit(f"{self.error_count} errors")

    def _open_circuit(self, reason: str) -> None:
        self.circuit_state = CircuitState.OPEN
        self.last_circuit_open = self._time()
        self._trial_started = None
        self._circuit_opens.increment()
        self.logger.warning(f"Circuit breaker: OPEN ({reason})")

    def get_adaptive_delay(self, base_delay_ms: float) -> float:
        """
        Scale a base delay by the current error pressure.

        Returns:
            Delay in milliseconds, clamped to ``[min_delay_ms, max_delay_ms]``
        """
        with self._lock:
            multiplier = 1 + self.error_count * 0.2
            if self.circuit_state == CircuitState.HALF_OPEN:
                multiplier *= 2
            multiplier *= 1 + self.backoff_penalty * 0.5

            delay = min(base_delay_ms * multiplier, self.max_delay_ms)
            return max(delay, self.min_delay_ms)

    def set_max_requests_per_minute(self, value: float) -> None:
        with self._lock:
            if value != self.max_requests_per_minute:
                self.logger.info(
                    f"RPM limit adjusted from {self.max_requests_per_minute} to {value}"
                )
                self.max_requests_per_minute = value

    def get_requests_in_window(self) -> int:
        with self._lock:
            self._prune_history(self._time())
            return len(self._request_history)

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get rate limiter statistics.

        Returns:
            Dictionary with window usage, breaker state and totals
        """
        with self._lock:
            recent = self.get_requests_in_window()
            return {
                "requests_last_minute": recent,
                "max_requests_per_minute": self.max_requests_per_minute,
                "remaining_slots": max(0, int(self.max_requests_per_minute - recent)),
                "error_count": self.error_count,
                "backoff_penalty": self.backoff_penalty,
                "circuit_state": self.circuit_state.value,
                "is_throttled": recent >= self.max_requests_per_minute,
                "total_requests": self._total_requests.get_value(),
                "total_errors": self._total_errors.get_value(),
                "circuit_opens": self._circuit_opens.get_value(),
            }

    def reset(self) -> None:
        """Clear history, errors and penalty and close the circuit."""
        with self._lock:
            self._request_history.clear()
            self.error_count = 0
            self.backoff_penalty = 0.0
            self.circuit_state = CircuitState.CLOSED
            self.last_circuit_open = None
            self._trial_started = None
            self.logger.info("Rate limiter reset")

    def _prune_history(self, now: float) -> None:
        while self._request_history and now - self._request_history[0] >= self.window_seconds:
            self._request_history.popleft()

    def __repr__(self) -> str:
        return (
            f"RateLimiter(rpm={self.max_requests_per_minute}, "
            f"circuit={self.circuit_state.value}, errors={self.error_count})"
        )
