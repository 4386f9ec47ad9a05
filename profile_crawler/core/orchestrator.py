"""
Crawl orchestrator.

Drives one crawl session through its pages on a single control thread:

    idle -> running <-> paused -> completed | stopped | failed
                                  | time_budget_exceeded | target_reached

Every page is extracted, persisted and deduplicated before the profile phase
fans the new profile URLs out to a fetch strategy. The concurrency controller
is retuned at chunk boundaries, and the checkpoint is updated after each page
and each chunk so an interrupted session can resume where it stopped.
"""

import random
import time
from typing import Any, Callable, Dict, List, Optional

from config import SystemConfig, get_config
from profile_crawler.concurrent.adaptive import ConcurrencyController
from profile_crawler.concurrent.models import (
    BatchResult,
    CrawlOptions,
    ExecutionContext,
    FetchResult,
    OrchestrationResult,
    REASON_TO_STATUS,
    SessionStatus,
    TerminationReason,
)
from profile_crawler.concurrent.rate_controller import RateLimiter
from profile_crawler.concurrent.strategies import (
    ParallelStrategy,
    SequentialStrategy,
    humanized_delay_ms,
    should_run_parallel,
)
from profile_crawler.concurrent.task_queue import TaskQueue
from profile_crawler.concurrent.thread_pool import BatchExecutor, BatchHooks
from profile_crawler.concurrent.thread_safe import ThreadSafeCounter
from profile_crawler.core.auth_guard import AuthRecoveryGuard
from profile_crawler.core.control import ControlSignals
from profile_crawler.core.events import EventBus, EventType
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
from profile_crawler.utils.errors import (
    AuthExpiredError,
    CheckpointError,
    DatabaseError,
    ExtractionValidationError,
    RateLimitSignal,
    handle_error,
)
from profile_crawler.utils.logging import get_business_logger


CANCELLED = "cancelled"

# Checkpoint store transition applied for each terminal session status
CHECKPOINT_FINALIZERS = {
    SessionStatus.COMPLETED: "complete_checkpoint",
    SessionStatus.TARGET_REACHED: "complete_checkpoint",
    SessionStatus.TIME_BUDGET_EXCEEDED: "complete_checkpoint",
    SessionStatus.STOPPED: "stop_checkpoint",
    SessionStatus.FAILED: "fail_checkpoint",
}


class _SessionContext:
    """Everything owned by one running session."""

    def __init__(self, session_id: str, search_query: str, search_url: str,
                 options: CrawlOptions, state: SessionState, rate_limiter: RateLimiter,
                 controller: ConcurrencyController, guard: AuthRecoveryGuard,
                 executor: Optional[BatchExecutor]):
        self.session_id = session_id
        self.search_query = search_query
        self.search_url = search_url
        self.options = options
        self.goal = controller.goal
        self.state = state
        self.rate_limiter = rate_limiter
        self.controller = controller
        self.guard = guard
        self.executor = executor
        self.task_queue = TaskQueue()

        self.profiles_failed = ThreadSafeCounter()
        self.pages_processed = 0
        self.stalled_pages = 0
        self.last_processed_url: Optional[str] = None
        self.fatal_error: Optional[Exception] = None


class CrawlOrchestrator:
    """Runs crawl sessions against the site collaborators."""

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
        control: Optional[ControlSignals] = None,
        config: Optional[SystemConfig] = None,
        time_func: Callable[[], float] = time.time,
        clock_func: Callable[[], float] = time.monotonic,
        sleep_func: Optional[Callable[[float], Any]] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            auth: Authentication collaborator, also owner of the main page
            navigator: Listing pagination collaborator
            listing_extractor: Extracts listing records from a page
            detail_extractor: Fetches one profile
            resume_store: Listing record persistence
            profile_store: Profile persistence
            checkpoint_store: Session checkpoints
            event_bus: Event surface; a private bus is created when omitted
            control: Pause/stop signals shared with the caller
            config: System configuration; the global config when omitted
            time_func: Wall clock for session timestamps
            clock_func: Monotonic clock for the rate limiter and controller
            sleep_func: Sleep used for every delay; defaults to a sleep that
                returns early on stop
            rng: Random source for delay jitter
        """
        self.auth = auth
        self.navigator = navigator
        self.listing_extractor = listing_extractor
        self.detail_extractor = detail_extractor
        self.resume_store = resume_store
        self.profile_store = profile_store
        self.checkpoint_store = checkpoint_store
        self.event_bus = event_bus or EventBus()
        self.control = control or ControlSignals()
        self.config = config or get_config()
        self._time = time_func
        self._clock = clock_func
        self._sleep = sleep_func or self.control.wait
        self._rng = rng

        self._session: Optional[_SessionContext] = None
        self.logger = get_business_logger("orchestrator")

    # Session setup

    def _build_session(self, session_id: str, search_query: str, search_url: str,
                       options: CrawlOptions, state: Optional[SessionState]) -> _SessionContext:
        config = self.config

        if state is None:
            state = SessionState(session_id, search_query, options.to_dict(), time_func=self._time)

        rate_limiter = RateLimiter.from_config(
            config.rate_limit, time_func=self._clock, sleep_func=self._sleep
        )
        goal = options.to_goal(config.concurrency.default_target_profiles_per_min)
        controller = ConcurrencyController.from_config(
            goal,
            rate_limiter,
            config.concurrency,
            requested_concurrency=options.requested_concurrency,
            requested_profile_delay_ms=options.requested_profile_delay_ms,
            time_func=self._clock,
        )
        guard = AuthRecoveryGuard.from_config(
            self.auth,
            rate_limiter,
            config.auth,
            config.navigation,
            should_stop=lambda: self.control.stop_requested,
            sleep_func=self._sleep,
        )

        executor = None
        context_factory = self.auth.get_context_factory()
        if context_factory is not None:
            executor = BatchExecutor(
                context_factory,
                concurrency=controller.concurrency,
                max_batch_size=options.max_batch_size or config.batch.max_batch_size,
                item_delay_ms=config.batch.item_delay_ms,
                chunk_cooldown_ms=config.batch.chunk_cooldown_ms,
                rate_limiter=rate_limiter,
                delay_provider=lambda: controller.profile_delay_ms,
                sleep_func=self._sleep,
            )

        session = _SessionContext(
            session_id, search_query, search_url, options, state,
            rate_limiter, controller, guard, executor
        )
        # Profiles discovered by an earlier run but never fetched
        session.task_queue.add_tasks(state.get_unprocessed_urls())
        return session

    # Public surface

    def orchestrate(self, session_id: str, search_query: str, search_url: str,
                    options: Optional[CrawlOptions] = None,
                    state: Optional[SessionState] = None,
                    start_page: int = 1) -> OrchestrationResult:
        """
        Run one session to a terminal status.

        Args:
            session_id: Session identifier, also the checkpoint key
            search_query: Query the listing was opened for
            search_url: Listing URL handed to the navigator
            options: Crawl options; defaults when omitted
            state: Pre-seeded state when resuming a session
            start_page: First listing page to process

        Returns:
            Final outcome of the session
        """
        options = options or CrawlOptions()
        session = self._build_session(session_id, search_query, search_url, options, state)
        self._session = session
        state = session.state
        state.set_total_pages(options.max_pages)
        state.start()

        self.logger.info(
            f"Session {session_id} started: query='{search_query}', start page {start_page}, "
            f"max pages {options.max_pages}, mode {options.mode.value}"
        )

        reason = TerminationReason.COMPLETED
        error: Optional[Exception] = None
        try:
            reason = self._run_pages(session, start_page)
        except Exception as e:
            error = e
            reason = TerminationReason.FAILED
            handle_error(
                e, self.logger,
                {"session_id": session_id, "page": state.current_page},
                reraise=False
            )

        return self._finish(session, reason, error)

    def has_reached_goal(self) -> Optional[str]:
        """Reason string once the target count or time budget is reached, else None."""
        if self._session is None:
            return None
        reason = self._goal_reason(self._session)
        return reason.value if reason else None

    def get_state(self) -> Optional[Dict[str, Any]]:
        if self._session is None:
            return None
        return self._session.state.get_progress()

    def get_stats(self) -> Dict[str, Any]:
        session = self._session
        if session is None:
            return {}
        return {
            "session": session.state.get_summary(),
            "task_queue": session.task_queue.get_stats(),
            "rate_limiter": session.rate_limiter.get_statistics(),
            "concurrency": session.controller.snapshot().to_dict(),
            "executor": session.executor.get_stats() if session.executor else None,
            "pages_processed": session.pages_processed,
            "profiles_failed": session.profiles_failed.get_value(),
            "reauth_count": session.guard.reauth_count,
            "error_count": session.state.error_total,
        }

    # Page loop

    def _run_pages(self, session: _SessionContext, start_page: int) -> TerminationReason:
        state = session.state
        options = session.options
        page = self.auth.get_page()
        page_number = start_page

        if not self._open_listing(session, page, page_number):
            return TerminationReason.STOP_REQUESTED

        # The listing is opened with the search filters applied, so its count
        # is also the filtered count
        total = self.navigator.get_total_results(page)
        state.set_total_results(total)
        state.set_filtered_count(total)
        self._emit(session, EventType.COUNT, total=total, filtered=total)

        while True:
            reason = self._check_control(session)
            if reason:
                return reason

            reason = self._goal_reason(session)
            if reason:
                return reason

            state.set_current_page(page_number)
            new_count = self._process_listing_page(session, page, page_number)
            session.pages_processed += 1

            if new_count == 0:
                session.stalled_pages += 1
                if session.stalled_pages >= self.config.navigation.stall_page_limit:
                    self.logger.warning(
                        f"No new profiles on {session.stalled_pages} consecutive pages, stopping"
                    )
                    return TerminationReason.STALLED
            else:
                session.stalled_pages = 0

            is_last_page = page_number >= options.max_pages

            if options.scrape_full_profiles:
                if self.control.stop_requested:
                    return TerminationReason.STOP_REQUESTED

                used_main_page = self._run_profile_phase(session, page)
                if session.fatal_error is not None:
                    raise session.fatal_error
                if self.control.stop_requested:
                    return TerminationReason.STOP_REQUESTED
                reason = self._goal_reason(session)
                if reason:
                    return reason

                if used_main_page and not is_last_page:
                    if not self._open_listing(session, page, page_number):
                        return TerminationReason.STOP_REQUESTED

            if is_last_page:
                self.logger.info(f"Page cap {options.max_pages} reached")
                return TerminationReason.COMPLETED

            if not self.navigator.has_next_page(page):
                self.logger.info(f"No page after {page_number}")
                return TerminationReason.COMPLETED

            base_delay = options.page_delay_ms
            if base_delay is None:
                base_delay = self.config.navigation.page_delay_ms
            delay_ms = humanized_delay_ms(
                session.rate_limiter.get_adaptive_delay(base_delay), rng=self._rng
            )
            self._sleep(delay_ms / 1000)
            if self.control.stop_requested:
                return TerminationReason.STOP_REQUESTED

            next_number = page_number + 1
            result = session.guard.navigate(
                page, lambda: self.navigator.go_to_next_page(page), f"listing page {next_number}"
            )
            if not result.success:
                return TerminationReason.STOP_REQUESTED
            page_number = next_number
            self._emit(session, EventType.NAVIGATION, url=result.url, page=page_number)

    def _open_listing(self, session: _SessionContext, page: Any, page_number: int) -> bool:
        result = session.guard.navigate(
            page,
            lambda: self.navigator.go_to_search(page, session.search_url, page_number),
            f"listing page {page_number}"
        )
        if not result.success:
            return False
        self._emit(session, EventType.NAVIGATION, url=result.url, page=page_number)
        return True

    def _check_control(self, session: _SessionContext) -> Optional[TerminationReason]:
        if self.control.stop_requested:
            return TerminationReason.STOP_REQUESTED

        if self.control.pause_requested:
            session.state.pause()
            self._transition_checkpoint(session, self.checkpoint_store.pause_checkpoint)
            self._emit(session, EventType.CONTROL, action="paused")
            self.logger.info(f"Session {session.session_id} paused")

            if not self.control.wait_while_paused():
                return TerminationReason.STOP_REQUESTED

            session.state.resume()
            self._transition_checkpoint(session, self.checkpoint_store.resume_checkpoint)
            self._emit(session, EventType.CONTROL, action="resumed")
            self.logger.info(f"Session {session.session_id} resumed")

        return None

    def _goal_reason(self, session: _SessionContext) -> Optional[TerminationReason]:
        goal = session.goal
        state = session.state
        if goal.target_profiles is not None and state.profiles_scraped >= goal.target_profiles:
            return TerminationReason.TARGET_PROFILES_REACHED
        if goal.time_budget_minutes is not None and state.get_duration() >= goal.time_budget_minutes * 60:
            return TerminationReason.TIME_BUDGET_EXCEEDED
        return None

    def _process_listing_page(self, session: _SessionContext, page: Any, page_number: int) -> int:
        """Extract, persist and deduplicate one listing page; returns the new URL count."""
        state = session.state
        self._emit(session, EventType.PAGE, page=page_number, total_pages=state.total_pages)

        records = self.listing_extractor.extract(page, {
            "session_id": session.session_id,
            "search_query": session.search_query,
            "page_number": page_number,
        })
        for record in records:
            record["session_id"] = session.session_id
            record.setdefault("search_query", session.search_query)

        if records:
            self.resume_store.batch_insert(records, session.session_id)

        new_urls: List[str] = []
        for record in records:
            url = record.get("profile_url")
            if url and state.add_resume_url(url):
                new_urls.append(url)
                self._emit(session, EventType.RESUME, url=url, name=record.get("name"), page=page_number)

        session.task_queue.add_tasks(new_urls)
        self.logger.info(
            f"Page {page_number}: {len(records)} records, {len(new_urls)} new "
            f"({state.resumes_scraped} total)"
        )

        self._emit(session, EventType.PROGRESS, **self._progress_payload(state))
        self._save_checkpoint(session)
        return len(new_urls)

    # Profile phase

    def _run_profile_phase(self, session: _SessionContext, page: Any) -> bool:
        """
        Fetch every queued profile.

        Returns:
            True when the main page was used for detail fetches
        """
        urls = session.task_queue.drain()
        if not urls:
            return False

        controller = session.controller
        parallel = should_run_parallel(
            session.options.enable_parallel,
            len(urls),
            controller.concurrency,
            session.executor is not None,
            self.config.batch.parallel_min_items,
        )

        if parallel:
            session.executor.set_concurrency(controller.concurrency)
            strategy = ParallelStrategy(session.executor)
        else:
            main_context = ExecutionContext(
                worker_id="main", page=page, session_generation=session.guard.session_generation
            )
            strategy = SequentialStrategy(
                main_context,
                delay_provider=lambda: controller.profile_delay_ms,
                rate_limiter=session.rate_limiter,
                sleep_func=self._sleep,
                rng=self._rng,
            )

        self.logger.info(
            f"Profile phase: {len(urls)} profiles, {strategy.name} strategy, "
            f"concurrency {controller.concurrency}, delay {controller.profile_delay_ms:.0f}ms"
        )
        result = strategy.process(urls, self._make_scrape_fn(session), self._make_hooks(session))
        self.logger.info(f"Profile phase finished: {result.to_dict()}")
        return not parallel

    def _should_stop_items(self, session: _SessionContext) -> bool:
        return (
            self.control.stop_requested
            or session.fatal_error is not None
            or self._goal_reason(session) is not None
        )

    def _make_scrape_fn(self, session: _SessionContext):
        auth_config = self.config.auth
        limiter = session.rate_limiter
        guard = session.guard

        def should_stop() -> bool:
            return self._should_stop_items(session)

        def scrape(context: ExecutionContext, url: str) -> FetchResult:
            auth_attempts = 0
            validation_attempts = 0
            session.task_queue.mark_processing(url)

            while True:
                if should_stop():
                    return FetchResult.failure(CANCELLED)
                guard.ensure_context_session(context)
                if not limiter.wait_for_slot(should_stop):
                    return FetchResult.failure(CANCELLED)

                target = {
                    "profile_url": url,
                    "session_id": session.session_id,
                    "search_query": session.search_query,
                }
                try:
                    result = self.detail_extractor.extract(context.page, target)
                except RateLimitSignal as e:
                    result = FetchResult.failure(str(e), blocked=True, status=e.status)
                except ExtractionValidationError as e:
                    limiter.record_error(e)
                    validation_attempts += 1
                    if validation_attempts <= auth_config.max_validation_retries_per_item:
                        self.logger.debug(f"Validation failed for {url}, retrying: {e}")
                        continue
                    return FetchResult.failure(f"validation failed: {e}")
                except Exception as e:
                    limiter.record_error(e)
                    return FetchResult.failure(f"{type(e).__name__}: {e}")

                if result.success:
                    limiter.record_request(result.meta())
                    return result

                limiter.record_error(result.error, result.meta())

                if result.login_redirect:
                    auth_attempts += 1
                    if auth_attempts > auth_config.max_auth_retries_per_item:
                        return result
                    if not guard.reauthenticate(f"login redirect on {url}"):
                        session.fatal_error = AuthExpiredError(
                            "Session lost and re-authentication failed", {"url": url}
                        )
                        return result
                    continue

                return result

        return scrape

    def _make_hooks(self, session: _SessionContext) -> BatchHooks:
        state = session.state

        def save(url: str, result: FetchResult) -> None:
            self.profile_store.save_full_profile(url, result.data or {}, session.search_query)
            self.resume_store.update_scrape_attempt(url, True)

        def on_success(url: str, result: FetchResult) -> None:
            state.mark_profile_scraped(url)
            session.task_queue.mark_completed(url)
            session.last_processed_url = url
            self._emit(
                session, EventType.PROFILE,
                url=url, success=True, profiles_scraped=state.profiles_scraped
            )

        def on_failure(url: str, result: FetchResult) -> None:
            if result.error == CANCELLED:
                return
            session.profiles_failed.increment()
            session.task_queue.mark_failed(url)
            state.add_error(result.error, {"url": url})
            try:
                self.resume_store.update_scrape_attempt(url, False, result.error)
            except DatabaseError as e:
                handle_error(e, self.logger, {"url": url}, reraise=False)
            self._emit(session, EventType.ERROR, scope="profile", url=url, error=result.error)

        def on_chunk_complete(index: int, chunk_result: BatchResult) -> None:
            self._on_chunk_complete(session, chunk_result)

        return BatchHooks(
            save=save,
            on_success=on_success,
            on_failure=on_failure,
            should_stop=lambda: self._should_stop_items(session),
            on_chunk_complete=on_chunk_complete,
        )

    def _on_chunk_complete(self, session: _SessionContext, chunk_result: BatchResult) -> None:
        # Control thread; picks up a login a worker led during the chunk
        session.guard.sync_page_session(self.auth.get_page())

        controller = session.controller
        controller.record_sample(session.state.profiles_scraped)
        controller.record_outcomes(chunk_result.succeeded, chunk_result.failed)

        if controller.maybe_adjust() and session.executor is not None:
            session.executor.set_concurrency(controller.concurrency)

        metrics = controller.snapshot().to_dict()
        session.state.set_metrics(**metrics)
        self._emit(session, EventType.METRICS, **metrics)
        self._save_checkpoint(session)

    # Bookkeeping

    def _progress_payload(self, state: SessionState) -> Dict[str, Any]:
        progress = state.get_progress()
        progress.pop("session_id", None)
        progress.pop("recent_errors", None)
        return progress

    def _checkpoint_fields(self, session: _SessionContext) -> Dict[str, Any]:
        state = session.state
        return {
            "current_page": state.current_page,
            "total_pages": state.total_pages,
            "last_processed_url": session.last_processed_url,
            "last_processed_index": state.profiles_scraped,
            "profiles_scraped": state.profiles_scraped,
            "profiles_failed": session.profiles_failed.get_value(),
            "error_count": state.error_total,
        }

    def _save_checkpoint(self, session: _SessionContext) -> None:
        try:
            self.checkpoint_store.update_checkpoint(session.session_id, **self._checkpoint_fields(session))
        except CheckpointError as e:
            handle_error(e, self.logger, {"session_id": session.session_id}, reraise=False)

    def _transition_checkpoint(self, session: _SessionContext,
                               transition: Callable[..., None], **updates) -> None:
        """Apply one of the store's status transitions, logging instead of raising."""
        try:
            transition(session.session_id, **updates)
        except CheckpointError as e:
            handle_error(e, self.logger, {"session_id": session.session_id}, reraise=False)

    def _emit(self, session: _SessionContext, event_type: EventType, **payload) -> None:
        self.event_bus.publish(event_type, session.session_id, **payload)

    def _finish(self, session: _SessionContext, reason: TerminationReason,
                error: Optional[Exception]) -> OrchestrationResult:
        state = session.state
        status = REASON_TO_STATUS[reason]

        if error is not None:
            state.fail(error)
            self._emit(session, EventType.ERROR, scope="session", error=str(error))
        else:
            state.finish(status, reason.value)

        finalizer = getattr(self.checkpoint_store, CHECKPOINT_FINALIZERS[status])
        self._transition_checkpoint(session, finalizer, **self._checkpoint_fields(session))

        errors = [entry["message"] for entry in state.get_recent_errors()]
        result = OrchestrationResult(
            success=status != SessionStatus.FAILED,
            session_id=session.session_id,
            status=status,
            reason=reason,
            total=state.total_results,
            resumes_scraped=state.resumes_scraped,
            profiles_scraped=state.profiles_scraped,
            profiles_failed=session.profiles_failed.get_value(),
            pages_processed=session.pages_processed,
            duration_seconds=state.get_duration(),
            error=str(error) if error is not None else None,
            errors=errors,
        )

        self._emit(
            session, EventType.DONE,
            status=status.value,
            reason=reason.value,
            profiles_scraped=result.profiles_scraped,
            profiles_failed=result.profiles_failed,
            pages_processed=result.pages_processed,
            duration_seconds=result.duration_seconds,
        )
        self.logger.info(
            f"Session {session.session_id} finished: {status.value} ({reason.value}), "
            f"{result.resumes_scraped} resumes, {result.profiles_scraped} profiles, "
            f"{result.profiles_failed} failed, {result.pages_processed} pages"
        )
        return result
