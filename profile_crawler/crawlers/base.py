"""
Abstract interfaces for the site-specific collaborators.

The orchestration core never parses pages or logs in by itself; it talks to
these interfaces. Implementations must be idempotent and tolerant of partial
pages.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from profile_crawler.concurrent.models import ExecutionContext, FetchResult, NavigationResult


class ListingExtractor(ABC):
    """Extracts listing records from a rendered search results page."""

    @abstractmethod
    def extract(self, page: Any, context: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Extract the records shown on ``page``.

        Args:
            page: Rendered browser page
            context: Session details such as ``session_id``, ``search_query``
                and ``page_number``

        Returns:
            Records carrying at least ``profile_url``; ``name`` when available
        """


class DetailExtractor(ABC):
    """Fetches and extracts one profile detail record."""

    @abstractmethod
    def extract(self, page: Any, target: Dict[str, Any]) -> FetchResult:
        """
        Load ``target['profile_url']`` in ``page`` and extract the profile.

        Implementations report login redirects, block pages and HTTP statuses
        through the returned ``FetchResult``. They may instead raise
        ``RateLimitSignal`` when a throttle is only detected mid-extraction,
        ``ExtractionValidationError`` for malformed data or
        ``TransientNetworkError`` for retryable network failures.
        """


class PageNavigator(ABC):
    """
    Moves the main page through the paginated listing.

    Navigation methods may raise ``TransientNetworkError`` or
    ``RateLimitSignal`` instead of returning a failed ``NavigationResult``.
    """

    @abstractmethod
    def go_to_search(self, page: Any, search_url: str, page_number: int = 1) -> NavigationResult:
        """Open the listing at ``page_number``."""

    @abstractmethod
    def go_to_next_page(self, page: Any) -> NavigationResult:
        """Advance to the next listing page."""

    @abstractmethod
    def has_next_page(self, page: Any) -> bool:
        """Whether the listing has another page after the current one."""

    def get_total_results(self, page: Any) -> Optional[int]:
        """Total result count shown on the listing, if the site exposes it."""
        return None


class ExecutionContextFactory(ABC):
    """Creates and tears down isolated browser contexts for workers."""

    @abstractmethod
    def create(self, worker_id: str) -> ExecutionContext:
        """Create a ready-to-use context; called from the worker's own thread."""

    @abstractmethod
    def close(self, context: ExecutionContext) -> None:
        """Release every resource held by ``context``."""


class AuthSession(ABC):
    """Authentication mechanics of the target site."""

    @abstractmethod
    def ensure_authenticated(self, page: Any, force_check: bool = False) -> bool:
        """Make sure ``page`` has a logged-in session."""

    @abstractmethod
    def apply_session_to(self, page: Any) -> None:
        """
        Copy the current session (cookies, storage) into ``page``.

        Called only from the thread that owns ``page``.
        """

    @abstractmethod
    def reauthenticate(self, reason: str) -> bool:
        """
        Log in again; return True on success.

        May run on a worker thread when a profile fetch hits a login redirect
        during a parallel phase, so it must not drive the main page. The
        control thread reapplies the new session to the main page itself.
        """

    @abstractmethod
    def get_page(self) -> Any:
        """The main page driven by the control thread."""

    def get_context_factory(self) -> Optional[ExecutionContextFactory]:
        """Factory for worker contexts, or None when only the main page exists."""
        return None


class ResumeStore(ABC):
    """Persistence of listing records and per-profile scrape attempts."""

    @abstractmethod
    def batch_insert(self, records: List[Dict[str, Any]], session_id: str) -> int:
        """Upsert listing records by ``profile_url``."""

    @abstractmethod
    def update_scrape_attempt(self, profile_url: str, success: bool,
                              error: Optional[str] = None) -> None:
        """Record one detail fetch attempt."""

    @abstractmethod
    def get_failed_profiles(self, max_attempts: int = 3, limit: int = 50) -> List[Dict[str, Any]]:
        """Profiles whose fetch failed fewer than ``max_attempts`` times."""

    @abstractmethod
    def get_session_urls(self, session_id: str, scraped_only: bool = False) -> List[str]:
        """URLs recorded for a session, optionally only fully scraped ones."""


class ProfileStore(ABC):
    """Persistence of full profile records."""

    @abstractmethod
    def save_full_profile(self, profile_url: str, data: Dict[str, Any],
                          search_query: Optional[str] = None) -> None:
        """Upsert a profile by ``profile_url``."""
