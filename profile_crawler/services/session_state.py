"""
In-memory state of one crawl session.

Progress counts are cardinalities of deduplication sets, so delivering the same
URL twice (a retried page, a resumed session) never inflates them.
"""

import threading
import time
from collections import deque
from typing import Any, Callable, Dict, Iterable, List, Optional

from profile_crawler.concurrent.models import SessionStatus, TERMINAL_STATUSES
from profile_crawler.concurrent.thread_safe import ThreadSafeSet


MAX_RECENT_ERRORS = 50


class SessionState:
    """Status, dedup sets, error ring buffer and derived progress of a session."""

    def __init__(self, session_id: str, search_query: str,
                 options: Optional[Dict[str, Any]] = None,
                 time_func: Callable[[], float] = time.time):
        self.session_id = session_id
        self.search_query = search_query
        self.options = dict(options or {})
        self._time = time_func
        self._lock = threading.RLock()

        self.status = SessionStatus.IDLE
        self.current_page = 0
        self.total_pages = self.options.get("max_pages") or 0
        self.total_results: Optional[int] = None
        self.profiles_total = 0
        self.filtered_count: Optional[int] = None
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self.stop_reason: Optional[str] = None

        # Insertion-ordered so unprocessed URLs come back in discovery order
        self._resume_urls: Dict[str, None] = {}
        self._processed_urls = ThreadSafeSet()
        self._errors = deque(maxlen=MAX_RECENT_ERRORS)
        self._error_total = 0
        self.metrics: Dict[str, Any] = {}

    # Lifecycle

    def start(self) -> None:
        with self._lock:
            self.status = SessionStatus.RUNNING
            if self.start_time is None:
                self.start_time = self._time()
            self.end_time = None
            self.stop_reason = None

    def pause(self) -> None:
        with self._lock:
            if self.status == SessionStatus.RUNNING:
                self.status = SessionStatus.PAUSED

    def resume(self) -> None:
        with self._lock:
            if self.status == SessionStatus.PAUSED:
                self.status = SessionStatus.RUNNING

    def finish(self, status: SessionStatus, reason: Optional[str] = None) -> None:
        """Move to a terminal status and stamp the end time."""
        with self._lock:
            self.status = status
            self.stop_reason = reason
            self.end_time = self._time()

    def complete(self, reason: str = "completed") -> None:
        self.finish(SessionStatus.COMPLETED, reason)

    def fail(self, error: Any) -> None:
        self.add_error(error)
        self.finish(SessionStatus.FAILED, "failed")

    def stop(self, reason: str = "stopped") -> None:
        self.finish(SessionStatus.STOPPED, reason)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # Progress

    def set_current_page(self, page: int) -> None:
        with self._lock:
            self.current_page = page

    def set_total_pages(self, total: Optional[int]) -> None:
        if total is None:
            return
        with self._lock:
            self.total_pages = max(0, int(total))

    def set_total_results(self, total: Optional[int]) -> None:
        with self._lock:
            self.total_results = total

    def set_filtered_count(self, count: Optional[int]) -> None:
        with self._lock:
            self.filtered_count = count

    def add_resume_url(self, url: str) -> bool:
        """Record a discovered profile URL; True when it was not seen before."""
        with self._lock:
            if url in self._resume_urls:
                return False
            self._resume_urls[url] = None
            self.profiles_total = len(self._resume_urls)
            return True

    def mark_profile_scraped(self, url: str) -> bool:
        """Record a fully scraped profile; True when it was not seen before."""
        return self._processed_urls.add(url)

    def seed(self, resume_urls: Iterable[str], scraped_urls: Iterable[str] = ()) -> None:
        """Restore dedup sets from persisted rows when resuming a session."""
        for url in resume_urls:
            self.add_resume_url(url)
        self._processed_urls.update(scraped_urls)

    def get_unprocessed_urls(self) -> List[str]:
        with self._lock:
            return [url for url in self._resume_urls if url not in self._processed_urls]

    @property
    def resumes_scraped(self) -> int:
        with self._lock:
            return len(self._resume_urls)

    @property
    def profiles_scraped(self) -> int:
        return self._processed_urls.size()

    def add_error(self, error: Any, context: Optional[Dict[str, Any]] = None) -> None:
        message = getattr(error, "message", None) or str(error)
        with self._lock:
            self._errors.append({
                "message": message,
                "context": context or {},
                "timestamp": self._time(),
            })
            self._error_total += 1

    def get_recent_errors(self, limit: int = MAX_RECENT_ERRORS) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._errors)[-limit:]

    @property
    def error_total(self) -> int:
        with self._lock:
            return self._error_total

    def set_metrics(self, **metrics) -> None:
        with self._lock:
            self.metrics.update(metrics)

    def get_duration(self) -> float:
        """Seconds elapsed: end-start when finished, now-start while running."""
        with self._lock:
            if self.start_time is None:
                return 0.0
            end = self.end_time if self.end_time is not None else self._time()
            return max(0.0, end - self.start_time)

    def get_progress(self) -> Dict[str, Any]:
        with self._lock:
            duration = self.get_duration()
            profiles_scraped = self.profiles_scraped
            completion_rate = (
                profiles_scraped / self.profiles_total * 100 if self.profiles_total > 0 else 0.0
            )
            return {
                "session_id": self.session_id,
                "search_query": self.search_query,
                "status": self.status.value,
                "current_page": self.current_page,
                "total_pages": self.total_pages,
                "total_results": self.total_results,
                "resumes_scraped": len(self._resume_urls),
                "profiles_scraped": profiles_scraped,
                "profiles_total": self.profiles_total,
                "filtered_count": self.filtered_count,
                "start_time": self.start_time,
                "end_time": self.end_time,
                "stop_reason": self.stop_reason,
                "duration": duration,
                "completion_rate": completion_rate,
                "error_count": self._error_total,
                "recent_errors": list(self._errors),
                "metrics": {**self.metrics, "elapsed_seconds": duration},
            }

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "session_id": self.session_id,
                "search_query": self.search_query,
                "progress": self.get_progress(),
                "resumes_collected": len(self._resume_urls),
                "profiles_scraped": self.profiles_scraped,
                "error_count": self._error_total,
                "recent_errors": list(self._errors)[-5:],
            }
