"""
Cooperative control signals for a running session.

Pause and stop are delivered through a condition variable: a paused control
thread sleeps until ``request_resume`` or ``request_stop`` wakes it, and every
interruptible delay returns early when a stop is requested.
"""

import threading
from typing import Dict, Optional


class ControlSignals:
    """Stop/pause flags with immediate wake-up of waiters."""

    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._stop_requested = False
        self._pause_requested = False

    def request_stop(self) -> None:
        with self._condition:
            self._stop_requested = True
            self._condition.notify_all()

    def request_pause(self) -> None:
        with self._condition:
            self._pause_requested = True
            self._condition.notify_all()

    def request_resume(self) -> None:
        with self._condition:
            self._pause_requested = False
            self._condition.notify_all()

    def reset(self) -> None:
        with self._condition:
            self._stop_requested = False
            self._pause_requested = False
            self._condition.notify_all()

    @property
    def stop_requested(self) -> bool:
        with self._condition:
            return self._stop_requested

    @property
    def pause_requested(self) -> bool:
        with self._condition:
            return self._pause_requested

    def snapshot(self) -> Dict[str, bool]:
        with self._condition:
            return {
                "stop_requested": self._stop_requested,
                "pause_requested": self._pause_requested,
            }

    def wait_while_paused(self, timeout: Optional[float] = None) -> bool:
        """
        Block while a pause is requested.

        Returns:
            True if the caller may continue, False if a stop was requested
        """
        with self._condition:
            self._condition.wait_for(
                lambda: self._stop_requested or not self._pause_requested,
                timeout=timeout
            )
            return not self._stop_requested

    def wait(self, seconds: float) -> bool:
        """
        Sleep up to ``seconds``, returning early on stop.

        Returns:
            True if the full delay elapsed, False if interrupted by a stop
        """
        if seconds <= 0:
            return not self.stop_requested
        with self._condition:
            stopped = self._condition.wait_for(lambda: self._stop_requested, timeout=seconds)
            return not stopped
