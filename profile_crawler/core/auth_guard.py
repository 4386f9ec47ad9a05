"""
Auth-loss recovery and guarded navigation.

Re-authentication is single-flight: the first caller that sees a login
redirect starts it and publishes a shared future, every concurrent caller
waits on that same future instead of logging in again. A successful login
only bumps the session generation. Browser pages are bound to the thread that
drives them, so each page is brought up to date by its own thread: worker
contexts compare their generation before each item, and the control thread
syncs the main page before every navigation and at chunk boundaries.
"""

import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Optional

from profile_crawler.concurrent.models import ExecutionContext, NavigationResult
from profile_crawler.concurrent.rate_controller import RateLimiter
from profile_crawler.crawlers.base import AuthSession
from profile_crawler.utils.errors import (
    AuthExpiredError,
    RateLimitSignal,
    TransientNetworkError,
    UnrecoverableNavigationError,
)
from profile_crawler.utils.logging import get_business_logger


class AuthRecoveryGuard:
    """Single-flight re-authentication plus a bounded-retry navigation wrapper."""

    def __init__(
        self,
        auth: AuthSession,
        rate_limiter: RateLimiter,
        reauth_retry_limit: int = 3,
        reauth_backoff_ms: float = 5000,
        max_auth_retries: int = 2,
        navigation_retry_attempts: int = 3,
        navigation_retry_delay_ms: float = 1000,
        should_stop: Optional[Callable[[], bool]] = None,
        sleep_func: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            auth: Site authentication collaborator
            rate_limiter: Session limiter, reset after a successful login
            reauth_retry_limit: Login attempts per re-authentication
            reauth_backoff_ms: Base backoff between login attempts
            max_auth_retries: Login-redirect recoveries allowed per navigation
            navigation_retry_attempts: Attempts for transient or blocked navigations
            navigation_retry_delay_ms: Base backoff between navigation attempts
            should_stop: Cancellation check used while waiting for a slot
            sleep_func: Sleep function, replaceable in tests
        """
        self.auth = auth
        self.rate_limiter = rate_limiter
        self.reauth_retry_limit = max(1, reauth_retry_limit)
        self.reauth_backoff_ms = reauth_backoff_ms
        self.max_auth_retries = max_auth_retries
        self.navigation_retry_attempts = max(1, navigation_retry_attempts)
        self.navigation_retry_delay_ms = navigation_retry_delay_ms
        self.should_stop = should_stop
        self._sleep = sleep_func

        self._lock = threading.Lock()
        self._inflight: Optional[Future] = None
        self.session_generation = 0
        self._main_page_generation = 0
        self.reauth_count = 0
        self.logger = get_business_logger("auth")

    @classmethod
    def from_config(cls, auth: AuthSession, rate_limiter: RateLimiter, auth_config,
                    navigation_config, **kwargs) -> "AuthRecoveryGuard":
        return cls(
            auth,
            rate_limiter,
            reauth_retry_limit=auth_config.reauth_retry_limit,
            reauth_backoff_ms=auth_config.reauth_backoff_ms,
            max_auth_retries=auth_config.max_auth_retries_per_item,
            navigation_retry_attempts=navigation_config.navigation_retry_attempts,
            navigation_retry_delay_ms=navigation_config.navigation_retry_delay_ms,
            **kwargs
        )

    def reauthenticate(self, reason: str) -> bool:
        """
        Re-authenticate once for all concurrent callers.

        Returns:
            True when the session was recovered
        """
        with self._lock:
            future = self._inflight
            leader = future is None
            if leader:
                future = Future()
                self._inflight = future

        if not leader:
            self.logger.debug(f"Joining in-flight re-authentication ({reason})")
            return future.result()

        try:
            success = self._run_reauthentication(reason)
            future.set_result(success)
        except BaseException as e:
            future.set_exception(e)
            raise
        finally:
            with self._lock:
                self._inflight = None

        return success

    def _run_reauthentication(self, reason: str) -> bool:
        self.logger.warning(f"Re-authenticating: {reason}")

        for attempt in range(1, self.reauth_retry_limit + 1):
            try:
                if self.auth.reauthenticate(reason):
                    self._on_recovered()
                    self.logger.info(f"Re-authentication succeeded on attempt {attempt}")
                    return True
                self.logger.warning(f"Re-authentication attempt {attempt} was rejected")
            except Exception as e:
                self.logger.error(f"Re-authentication attempt {attempt} failed: {e}")

            if attempt < self.reauth_retry_limit and self.reauth_backoff_ms > 0:
                self._sleep(self.reauth_backoff_ms * attempt / 1000)

        self.logger.error(f"Re-authentication gave up after {self.reauth_retry_limit} attempts")
        return False

    def _on_recovered(self) -> None:
        with self._lock:
            self.session_generation += 1
            self.reauth_count += 1
        self.rate_limiter.reset()

    def sync_page_session(self, page: Any) -> None:
        """
        Reapply the session to the main page if it predates the last login.

        Must be called from the control thread, which owns the main page.
        """
        generation = self.session_generation
        if self._main_page_generation != generation:
            if page is not None:
                self.auth.apply_session_to(page)
            self._main_page_generation = generation

    def ensure_context_session(self, context: ExecutionContext) -> None:
        """Reapply the session to ``context`` if it predates the last login."""
        if context.page is not None and context.page is self.auth.get_page():
            self.sync_page_session(context.page)
            context.session_generation = self._main_page_generation
            return

        generation = self.session_generation
        if context.session_generation != generation:
            if context.page is not None:
                self.auth.apply_session_to(context.page)
            context.session_generation = generation

    def navigate(self, page: Any, action: Callable[[], NavigationResult],
                 description: str = "navigation") -> NavigationResult:
        """
        Run a navigation of the main page with auth recovery and bounded retries.

        Called from the control thread. ``action`` may raise
        ``TransientNetworkError`` or ``RateLimitSignal``; both are handled like
        the equivalent failed ``NavigationResult``.

        Raises:
            AuthExpiredError: Login redirects persisted or re-authentication failed
            UnrecoverableNavigationError: Retries exhausted for blocks or transient errors
        """
        attempts = 0
        auth_retries = 0
        last_error = None

        while True:
            attempts += 1
            self.sync_page_session(page)
            try:
                result = action()
            except RateLimitSignal as e:
                result = NavigationResult(success=False, error=str(e), blocked=True, status=e.status)
            except TransientNetworkError as e:
                result = NavigationResult(success=False, error=str(e))

            if result.success and not result.login_redirect and not result.blocked:
                self.rate_limiter.record_request({"status": result.status})
                return result

            if result.login_redirect:
                auth_retries += 1
                if auth_retries > self.max_auth_retries:
                    raise AuthExpiredError(
                        f"{description}: still redirected to login after {self.max_auth_retries} recoveries",
                        {"url": result.url}
                    )
                if not self.reauthenticate(f"login redirect during {description}"):
                    raise AuthExpiredError(
                        f"{description}: re-authentication failed",
                        {"url": result.url}
                    )
                attempts -= 1
                continue

            last_error = result.error or (f"HTTP {result.status}" if result.status else "blocked")

            if attempts >= self.navigation_retry_attempts:
                raise UnrecoverableNavigationError(
                    f"{description} failed after {attempts} attempts: {last_error}",
                    {"url": result.url, "status": result.status, "blocked": result.blocked}
                )

            if result.is_rate_limit_signal:
                self.rate_limiter.record_error(
                    last_error, {"status": result.status, "blocked": result.blocked}
                )
                self.logger.warning(f"{description} blocked ({last_error}), waiting for a slot")
                if not self.rate_limiter.wait_for_slot(self.should_stop):
                    return result
            else:
                delay_ms = self.navigation_retry_delay_ms * (2 ** (attempts - 1))
                self.logger.warning(
                    f"{description} attempt {attempts} failed ({last_error}), retrying in {delay_ms:.0f}ms"
                )
                if delay_ms > 0:
                    self._sleep(delay_ms / 1000)
