"""
Integration tests for the crawl orchestrator against in-memory collaborators.
"""

import random
import threading
import pytest
from pathlib import Path
import sys

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from profile_crawler.concurrent.models import (
    CrawlOptions,
    FetchResult,
    SessionStatus,
    TerminationReason,
)
from profile_crawler.core.control import ControlSignals
from profile_crawler.core.events import EventBus, EventType
from profile_crawler.core.orchestrator import CrawlOrchestrator
from profile_crawler.data.repository import ProfileRepository, ResumeRepository
from profile_crawler.services.checkpoint import CheckpointStore
from profile_crawler.services.session_state import SessionState
from profile_crawler.utils.errors import ExtractionValidationError, RateLimitSignal
from fakes import (
    FakeAuthSession,
    FakeClock,
    FakeDetailExtractor,
    FakeListingExtractor,
    FakeNavigator,
    FakeSite,
    RecordingContextFactory,
    make_pages,
    no_sleep,
)


SESSION_ID = "python_1700000000000_abc1234"
SEARCH_URL = "https://site.test/search?q=python"


def make_options(**kwargs):
    params = dict(max_pages=5, enable_parallel=False, target_profiles_per_min=600)
    params.update(kwargs)
    return CrawlOptions(**params)


class Harness:
    """Wires an orchestrator to fakes and a real SQLite database."""

    def __init__(self, db_manager, config, pages, parallel=False, on_extract=None,
                 reauth_results=None, time_func=None):
        self.site = FakeSite(pages)
        self.factory = RecordingContextFactory() if parallel else None
        self.auth = FakeAuthSession(context_factory=self.factory, reauth_results=reauth_results)
        self.navigator = FakeNavigator(self.site)
        self.listing = FakeListingExtractor(self.site)
        self.detail = FakeDetailExtractor(self.site, on_extract=on_extract)
        self.resume_repo = ResumeRepository(db_manager)
        self.profile_repo = ProfileRepository(db_manager)
        self.checkpoints = CheckpointStore(db_manager)
        self.bus = EventBus()
        self.control = ControlSignals()
        self.events = []
        self.bus.subscribe(self.events.append)

        extra = {"time_func": time_func} if time_func is not None else {}
        self.orchestrator = CrawlOrchestrator(
            auth=self.auth,
            navigator=self.navigator,
            listing_extractor=self.listing,
            detail_extractor=self.detail,
            resume_store=self.resume_repo,
            profile_store=self.profile_repo,
            checkpoint_store=self.checkpoints,
            event_bus=self.bus,
            control=self.control,
            config=config,
            sleep_func=no_sleep,
            rng=random.Random(3),
            **extra
        )

    def run(self, options=None, state=None, start_page=1, session_id=SESSION_ID):
        if self.checkpoints.get_checkpoint(session_id) is None:
            self.checkpoints.create_checkpoint(session_id, "python", (options or make_options()).to_dict())
        return self.orchestrator.orchestrate(
            session_id, "python", SEARCH_URL, options or make_options(),
            state=state, start_page=start_page
        )

    def event_types(self):
        return [event.type for event in self.events]

    def events_of(self, event_type):
        return [event for event in self.events if event.type == event_type]


@pytest.fixture
def build(db_manager, system_config):
    def factory(pages, **kwargs):
        return Harness(db_manager, system_config, pages, **kwargs)
    return factory


class TestPagination:
    """Page loop and termination reasons."""

    def test_crawls_every_page_to_completion(self, build):
        harness = build(make_pages(3, 4))

        result = harness.run()

        assert result.success
        assert result.status == SessionStatus.COMPLETED
        assert result.reason == TerminationReason.COMPLETED
        assert result.pages_processed == 3
        assert result.resumes_scraped == 12
        assert result.profiles_scraped == 12
        assert result.profiles_failed == 0
        assert result.total == 12
        assert harness.listing.calls == [1, 2, 3]
        assert harness.resume_repo.count_all() == 12
        assert harness.profile_repo.count_all() == 12
        assert harness.checkpoints.get_checkpoint(SESSION_ID).status == "completed"

    def test_page_cap_stops_pagination(self, build):
        harness = build(make_pages(5, 2))

        result = harness.run(make_options(max_pages=2))

        assert result.reason == TerminationReason.COMPLETED
        assert result.pages_processed == 2
        assert harness.listing.calls == [1, 2]

    def test_stalls_after_two_pages_without_new_urls(self, build):
        pages = make_pages(1, 3)
        pages[2] = list(pages[1])
        pages[3] = list(pages[1])
        pages[4] = make_pages(1, 3, prefix="https://site.test/other")[1]
        harness = build(pages)

        result = harness.run()

        assert result.reason == TerminationReason.STALLED
        assert result.status == SessionStatus.COMPLETED
        assert result.pages_processed == 3
        assert result.resumes_scraped == 3
        assert 4 not in harness.listing.calls

    def test_sequential_phase_reopens_listing(self, build):
        harness = build(make_pages(2, 2))

        harness.run()

        assert harness.navigator.calls == [("search", 1), ("search", 1), ("next", 2), ("search", 2)]
        assert all(page is harness.auth.page for page in harness.detail.pages_used)

    def test_listing_only_mode_skips_profiles(self, build):
        harness = build(make_pages(2, 3))

        result = harness.run(make_options(scrape_full_profiles=False))

        assert result.resumes_scraped == 6
        assert result.profiles_scraped == 0
        assert harness.detail.calls == []

    def test_events_are_published_in_order(self, build):
        harness = build(make_pages(1, 2))

        harness.run()

        types = harness.event_types()
        assert types[:3] == [EventType.NAVIGATION, EventType.COUNT, EventType.PAGE]
        assert types[-1] == EventType.DONE
        assert len(harness.events_of(EventType.RESUME)) == 2
        assert len(harness.events_of(EventType.PROFILE)) == 2
        assert harness.events_of(EventType.METRICS)
        assert all(event.session_id == SESSION_ID for event in harness.events)
        done = harness.events_of(EventType.DONE)[0]
        assert done.payload["status"] == "completed"
        assert done.payload["reason"] == "completed"

    def test_progress_reports_filtered_count_and_page_cap(self, build):
        harness = build(make_pages(2, 3))

        harness.run(make_options(max_pages=4))

        count = harness.events_of(EventType.COUNT)[0]
        assert count.payload == {"total": 6, "filtered": 6}
        progress = harness.events_of(EventType.PROGRESS)[-1].payload
        assert progress["filtered_count"] == 6
        assert progress["total_pages"] == 4
        state = harness.orchestrator.get_state()
        assert state["filtered_count"] == 6
        assert state["total_pages"] == 4
        assert harness.checkpoints.get_checkpoint(SESSION_ID).total_pages == 4

    def test_seeded_state_takes_page_cap_from_options(self, build):
        harness = build(make_pages(1, 2))
        state = SessionState(SESSION_ID, "python")

        harness.run(make_options(max_pages=3), state=state)

        assert state.total_pages == 3
        assert harness.checkpoints.get_checkpoint(SESSION_ID).total_pages == 3


class TestGoals:
    """Target count and time budget end the session."""

    def test_stops_at_target_profile_count(self, build):
        harness = build(make_pages(3, 4))

        result = harness.run(make_options(target_profiles=5))

        assert result.reason == TerminationReason.TARGET_PROFILES_REACHED
        assert result.status == SessionStatus.TARGET_REACHED
        assert result.profiles_scraped == 5
        assert harness.orchestrator.has_reached_goal() == "target_profiles_reached"
        assert harness.checkpoints.get_checkpoint(SESSION_ID).status == "completed"

    def test_stops_when_time_budget_spent(self, build):
        clock = FakeClock()
        harness = build(make_pages(2, 5), time_func=clock, on_extract=lambda url: clock.advance(30))

        result = harness.run(make_options(time_budget_minutes=1))

        assert result.reason == TerminationReason.TIME_BUDGET_EXCEEDED
        assert result.status == SessionStatus.TIME_BUDGET_EXCEEDED
        assert result.profiles_scraped == 2
        assert result.duration_seconds == 60


class TestControl:
    """Stop and pause requests."""

    def test_stop_during_profile_phase(self, build):
        harness = build(make_pages(2, 5))
        harness.detail.on_extract = lambda url: (
            harness.control.request_stop() if len(harness.detail.calls) >= 3 else None
        )

        result = harness.run()

        assert result.reason == TerminationReason.STOP_REQUESTED
        assert result.status == SessionStatus.STOPPED
        assert result.success
        assert result.profiles_scraped == 3
        assert harness.listing.calls == [1]
        assert harness.checkpoints.get_checkpoint(SESSION_ID).status == "stopped"

    def test_pause_blocks_until_resume(self, build):
        harness = build(make_pages(1, 2))
        paused = threading.Event()
        harness.bus.subscribe(
            lambda event: paused.set() if event.payload.get("action") == "paused" else None,
            [EventType.CONTROL],
        )
        harness.control.request_pause()
        results = []

        runner = threading.Thread(target=lambda: results.append(harness.run()))
        runner.start()
        assert paused.wait(5)
        assert harness.checkpoints.get_checkpoint(SESSION_ID).status == "paused"
        assert harness.orchestrator.get_state()["status"] == "paused"

        harness.control.request_resume()
        runner.join(10)

        assert results[0].status == SessionStatus.COMPLETED
        assert results[0].profiles_scraped == 2
        actions = [event.payload["action"] for event in harness.events_of(EventType.CONTROL)]
        assert actions == ["paused", "resumed"]

    def test_stop_while_paused(self, build):
        harness = build(make_pages(1, 2))
        harness.bus.subscribe(
            lambda event: harness.control.request_stop() if event.payload.get("action") == "paused" else None,
            [EventType.CONTROL],
        )
        harness.control.request_pause()

        result = harness.run()

        assert result.reason == TerminationReason.STOP_REQUESTED
        assert result.pages_processed == 0


class TestResume:
    """Resuming never re-counts or re-fetches stored work."""

    def test_resume_is_idempotent(self, build, db_manager, system_config):
        pages = make_pages(2, 4)
        first = build(pages)
        first.run(make_options(max_pages=1))
        assert first.profile_repo.count_all() == 4

        second = build(pages)
        state = SessionState(SESSION_ID, "python")
        state.seed(
            second.resume_repo.get_session_urls(SESSION_ID),
            second.resume_repo.get_session_urls(SESSION_ID, scraped_only=True),
        )
        result = second.run(make_options(max_pages=2), state=state, start_page=1)

        assert result.resumes_scraped == 8
        assert result.profiles_scraped == 8
        assert len(second.detail.calls) == 4
        assert second.resume_repo.count_all() == 8
        assert second.profile_repo.count_all() == 8

    def test_unfetched_profiles_of_earlier_run_are_fetched(self, build):
        pages = make_pages(1, 3)
        harness = build(pages)
        state = SessionState(SESSION_ID, "python")
        state.seed(["https://site.test/in/old-1"], [])

        harness.run(make_options(max_pages=1), state=state)

        assert "https://site.test/in/old-1" in harness.detail.calls
        assert harness.orchestrator.get_state()["profiles_scraped"] == 4


class TestItemFailures:
    """Per-item failure handling inside the profile phase."""

    def test_failed_fetch_is_recorded_and_session_continues(self, build):
        harness = build(make_pages(1, 3))
        failing = "https://site.test/in/p1-1"
        harness.site.detail_script[failing] = [FetchResult.failure("HTTP 500", status=500)]

        result = harness.run()

        assert result.status == SessionStatus.COMPLETED
        assert result.profiles_scraped == 2
        assert result.profiles_failed == 1
        row = harness.resume_repo.get_by_profile_url(failing)
        assert row["scrape_status"] == "failed"
        assert row["profile_scrape_error"] == "HTTP 500"
        errors = harness.events_of(EventType.ERROR)
        assert errors[0].payload["url"] == failing

    def test_login_redirect_reauthenticates_once_and_retries(self, build):
        harness = build(make_pages(1, 2))
        url = "https://site.test/in/p1-0"
        harness.site.detail_script[url] = [FetchResult(success=False, login_redirect=True)]

        result = harness.run()

        assert result.profiles_scraped == 2
        assert len(harness.auth.reauth_calls) == 1
        assert harness.detail.calls.count(url) == 2

    def test_raised_rate_limit_signal_fails_item_and_opens_circuit(self, build):
        harness = build(make_pages(1, 3))
        throttled = "https://site.test/in/p1-0"
        harness.site.detail_script[throttled] = [RateLimitSignal("Too Many Requests", status=429)]

        result = harness.run()

        assert result.status == SessionStatus.COMPLETED
        assert result.profiles_scraped == 2
        assert result.profiles_failed == 1
        assert harness.detail.calls.count(throttled) == 1
        row = harness.resume_repo.get_by_profile_url(throttled)
        assert row["profile_scrape_error"] == "Too Many Requests"
        limiter_stats = harness.orchestrator.get_stats()["rate_limiter"]
        assert limiter_stats["circuit_opens"] == 1
        assert limiter_stats["circuit_state"] == "closed"

    def test_failed_reauthentication_fails_session(self, build):
        harness = build(make_pages(1, 3), reauth_results=[False, False, False])
        harness.site.detail_script["https://site.test/in/p1-0"] = [
            FetchResult(success=False, login_redirect=True)
        ]

        result = harness.run()

        assert result.status == SessionStatus.FAILED
        assert not result.success
        assert "re-authentication failed" in result.error
        assert harness.checkpoints.get_checkpoint(SESSION_ID).status == "failed"

    def test_validation_error_gets_one_retry(self, build):
        harness = build(make_pages(1, 2))
        flaky = "https://site.test/in/p1-0"
        broken = "https://site.test/in/p1-1"
        harness.site.detail_script[flaky] = [ExtractionValidationError("partial page")]
        harness.site.detail_script[broken] = [
            ExtractionValidationError("partial page"),
            ExtractionValidationError("partial page"),
        ]

        result = harness.run()

        assert result.profiles_scraped == 1
        assert result.profiles_failed == 1
        assert harness.detail.calls.count(flaky) == 2
        assert harness.detail.calls.count(broken) == 2

    def test_navigation_crash_fails_session(self, build):
        harness = build(make_pages(2, 2))
        harness.site.navigation_script.append(RuntimeError("browser crashed"))

        result = harness.run()

        assert result.status == SessionStatus.FAILED
        assert result.reason == TerminationReason.FAILED
        assert "browser crashed" in result.error
        assert harness.events_of(EventType.ERROR)[-1].payload["scope"] == "session"
        assert harness.events_of(EventType.DONE)[0].payload["status"] == "failed"


class TestParallelPhase:
    """Fan-out over worker contexts."""

    def test_parallel_fetch_uses_worker_contexts(self, build):
        harness = build(make_pages(2, 6), parallel=True)

        result = harness.run(make_options(enable_parallel=True, requested_concurrency=3, max_batch_size=4))

        assert result.profiles_scraped == 12
        assert all(page is not harness.auth.page for page in harness.detail.pages_used)
        creates = [event for event in harness.factory.events if event[0] == "create"]
        closes = [event for event in harness.factory.events if event[0] == "close"]
        assert len(creates) == len(closes) > 0
        assert ("search", 1) in harness.navigator.calls
        assert harness.navigator.calls.count(("search", 1)) == 1

    def test_worker_led_login_reapplied_to_main_page_on_control_thread(self, build):
        harness = build(make_pages(2, 4), parallel=True)
        harness.site.detail_script["https://site.test/in/p1-0"] = [
            FetchResult(success=False, login_redirect=True)
        ]

        result = harness.run(make_options(enable_parallel=True, requested_concurrency=2, max_batch_size=4))

        assert result.profiles_scraped == 8
        assert len(harness.auth.reauth_calls) == 1
        main_page = harness.auth.page
        assert main_page.applied_threads == [threading.current_thread().name]
        worker_threads = [
            name for page in set(harness.detail.pages_used) if page is not main_page
            for name in page.applied_threads
        ]
        assert worker_threads
        assert all(name.startswith("ProfileWorker-") for name in worker_threads)
        assert harness.listing.calls == [1, 2]

    def test_stats_after_run(self, build):
        harness = build(make_pages(1, 4), parallel=True)
        harness.run(make_options(enable_parallel=True))

        stats = harness.orchestrator.get_stats()
        assert stats["task_queue"]["completed"] == 4
        assert stats["executor"]["chunks_run"] >= 1
        assert stats["rate_limiter"]["total_requests"] >= 4
        assert stats["concurrency"]["current_concurrency"] >= 2
        assert stats["error_count"] == 0
