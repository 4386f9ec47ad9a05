"""
Session facade.

``CrawlRunner`` is the entry point callers use: it creates or resumes the
checkpoint of a query, seeds the session state from persisted rows, makes sure
the main page is logged in and hands the session to the orchestrator. It also
exposes the pause/resume/stop surface and a separate pass over profiles that
failed in earlier sessions.
"""

import random
import time
from typing import Any, Callable, Dict, List, Optional

from config import SystemConfig, get_config
from profile_crawler.concurrent.models import (
    BatchResult,
    CrawlOptions,
    ExecutionContext,
    FetchResult,
    OrchestrationResult,
)
from profile_crawler.concurrent.rate_controller import RateLimiter
from profile_crawler.concurrent.strategies import SequentialStrategy
from profile_crawler.concurrent.thread_pool import BatchHooks
from profile_crawler.core.control import ControlSignals
from profile_crawler.core.events import EventBus, EventType
from profile_crawler.core.orchestrator import CANCELLED, CrawlOrchestrator
from profile_crawler.crawlers.base import (
    AuthSession,
    DetailExtractor,
    ListingExtractor,
    PageNavigator,
    ProfileStore,
    ResumeStore,
)
from profile_crawler.services.checkpoint import CheckpointStore
from profile_crawler.services.session_state import SessionState
from profile_crawler.utils.errors import AuthExpiredError
from profile_crawler.utils.logging import get_business_logger


class CrawlRunner:
    """Creates, resumes and controls crawl sessions."""

    def __init__(
        self,
        auth: AuthSession,
        navigator: PageNavigator,
        listing_extractor: ListingExtractor,
        detail_extractor: DetailExtractor,
        resume_store: ResumeStore,
        profile_store: ProfileStore,
        checkpoint_store: CheckpointStore,
        event_bus: Optional[EventBus] = None,
        config: Optional[SystemConfig] = None,
        time_func: Callable[[], float] = time.time,
        clock_func: Callable[[], float] = time.monotonic,
        sleep_func: Optional[Callable[[float], Any]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.auth = auth
        self.detail_extractor = detail_extractor
        self.resume_store = resume_store
        self.profile_store = profile_store
        self.checkpoint_store = checkpoint_store
        self.event_bus = event_bus or EventBus()
        self.config = config or get_config()
        self.control = ControlSignals()
        self._time = time_func
        self._clock = clock_func
        self._sleep = sleep_func or self.control.wait
        self._rng = rng

        self.orchestrator = CrawlOrchestrator(
            auth=auth,
            navigator=navigator,
            listing_extractor=listing_extractor,
            detail_extractor=detail_extractor,
            resume_store=resume_store,
            profile_store=profile_store,
            checkpoint_store=checkpoint_store,
            event_bus=self.event_bus,
            control=self.control,
            config=self.config,
            time_func=time_func,
            clock_func=clock_func,
            sleep_func=self._sleep,
            rng=rng,
        )
        self.session_id: Optional[str] = None
        self.logger = get_business_logger("runner")

    def scrape(self, search_query: str, search_url: str,
               options: Optional[CrawlOptions] = None) -> OrchestrationResult:
        """
        Run a crawl for ``search_query``, resuming its latest incomplete session when allowed.

        Args:
            search_query: Query the listing is opened for
            search_url: Listing URL handed to the navigator
            options: Crawl options; ``resume_session`` controls resumption

        Returns:
            Final outcome of the session

        Raises:
            AuthExpiredError: If the main page cannot be authenticated
        """
        options = options or CrawlOptions()
        self.control.reset()

        checkpoint = None
        if options.resume_session:
            checkpoint = self.checkpoint_store.get_latest_incomplete_checkpoint(search_query)

        if self.checkpoint_store.can_resume(checkpoint):
            session_id = checkpoint.session_id
            position = self.checkpoint_store.get_resume_position(checkpoint)
            start_page = position["start_page"]

            state = SessionState(session_id, search_query, options.to_dict(), time_func=self._time)
            state.seed(
                self.resume_store.get_session_urls(session_id),
                self.resume_store.get_session_urls(session_id, scraped_only=True),
            )
            self.checkpoint_store.resume_checkpoint(session_id)
            resumed = True
            self.logger.info(
                f"Resuming session {session_id} at page {start_page}: "
                f"{state.resumes_scraped} resumes, {state.profiles_scraped} profiles already stored"
            )
        else:
            session_id = self.checkpoint_store.generate_session_id(search_query)
            self.checkpoint_store.create_checkpoint(session_id, search_query, options.to_dict())
            state = None
            start_page = 1
            resumed = False
            self.logger.info(f"Starting session {session_id} for '{search_query}'")

        self.session_id = session_id
        self.event_bus.publish(
            EventType.SESSION, session_id,
            search_query=search_query, resumed=resumed, start_page=start_page,
            options=options.to_dict()
        )

        if not self.auth.ensure_authenticated(self.auth.get_page()):
            self.checkpoint_store.fail_checkpoint(session_id)
            raise AuthExpiredError("Not authenticated", {"session_id": session_id})

        return self.orchestrator.orchestrate(
            session_id, search_query, search_url, options,
            state=state, start_page=start_page
        )

    # Control surface

    def request_pause(self) -> None:
        self.control.request_pause()
        self._emit_control("pause_requested")

    def request_resume(self) -> None:
        self.control.request_resume()
        self._emit_control("resume_requested")

    def request_stop(self) -> None:
        self.control.request_stop()
        self._emit_control("stop_requested")

    def _emit_control(self, action: str) -> None:
        self.logger.info(f"Control: {action}")
        if self.session_id is not None:
            self.event_bus.publish(EventType.CONTROL, self.session_id, action=action)

    def get_control_signals(self) -> Dict[str, bool]:
        return self.control.snapshot()

    def get_state(self) -> Optional[Dict[str, Any]]:
        return self.orchestrator.get_state()

    def get_progress(self) -> Optional[Dict[str, Any]]:
        return self.get_state()

    def get_stats(self) -> Dict[str, Any]:
        stats = self.orchestrator.get_stats()
        stats["control"] = self.get_control_signals()
        return stats

    # Failed profile pass

    def retry_failed_profiles(self, max_retries: int = 3, limit: int = 50) -> BatchResult:
        """
        Refetch profiles that failed fewer than ``max_retries`` times.

        Runs sequentially on the main page with its own rate limiter.

        Returns:
            Counts of the retry pass
        """
        failed = self.resume_store.get_failed_profiles(max_retries, limit)
        urls: List[str] = [row["profile_url"] for row in failed]
        if not urls:
            self.logger.info("No failed profiles to retry")
            return BatchResult()

        queries = {row["profile_url"]: row.get("search_query") for row in failed}
        limiter = RateLimiter.from_config(
            self.config.rate_limit, time_func=self._clock, sleep_func=self._sleep
        )
        context = ExecutionContext(worker_id="retry", page=self.auth.get_page())
        strategy = SequentialStrategy(
            context,
            delay_provider=lambda: self.config.concurrency.base_profile_delay_ms,
            rate_limiter=limiter,
            sleep_func=self._sleep,
            rng=self._rng,
        )

        def scrape(ctx: ExecutionContext, url: str) -> FetchResult:
            if not limiter.wait_for_slot(lambda: self.control.stop_requested):
                return FetchResult.failure(CANCELLED)
            result = self.detail_extractor.extract(ctx.page, {"profile_url": url})
            if result.success:
                limiter.record_request(result.meta())
            else:
                limiter.record_error(result.error, result.meta())
            return result

        def save(url: str, result: FetchResult) -> None:
            self.profile_store.save_full_profile(url, result.data or {}, queries.get(url))
            self.resume_store.update_scrape_attempt(url, True)

        def on_failure(url: str, result: FetchResult) -> None:
            if result.error != CANCELLED:
                self.resume_store.update_scrape_attempt(url, False, result.error)

        self.logger.info(f"Retrying {len(urls)} failed profiles")
        result = strategy.process(urls, scrape, BatchHooks(
            save=save,
            on_failure=on_failure,
            should_stop=lambda: self.control.stop_requested,
        ))
        self.logger.info(f"Retry pass finished: {result.succeeded}/{result.processed} recovered")
        return result
