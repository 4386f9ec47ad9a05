"""
Profile task queue.

Each profile URL moves through pending -> processing -> completed, or into the
failed map with a failure count. A URL is never queued twice while it is
pending, processing or completed.
"""

import threading
from collections import deque
from typing import Dict, Iterable, List, Optional


class TaskQueue:
    """Thread-safe FIFO of profile URLs with failure bookkeeping."""

    def __init__(self):
        self._queue = deque()
        self._queued = set()
        self._processing = set()
        self._completed = set()
        self._failed: Dict[str, int] = {}
        self._lock = threading.RLock()

    def add_tasks(self, urls: Iterable[str]) -> int:
        """
        Queue URLs that are not already known.

        Returns:
            Number of URLs added
        """
        added = 0
        with self._lock:
            for url in urls:
                if self._has_task(url):
                    continue
                self._queue.append(url)
                self._queued.add(url)
                added += 1
        return added

    def get_next(self) -> Optional[str]:
        with self._lock:
            if not self._queue:
                return None
            url = self._queue.popleft()
            self._queued.discard(url)
            return url

    def get_next_batch(self, count: int) -> List[str]:
        with self._lock:
            batch = []
            while self._queue and len(batch) < count:
                url = self._queue.popleft()
                self._queued.discard(url)
                batch.append(url)
            return batch

    def drain(self) -> List[str]:
        """Remove and return every pending URL."""
        with self._lock:
            return self.get_next_batch(len(self._queue))

    def mark_processing(self, url: str) -> None:
        with self._lock:
            self._processing.add(url)

    def mark_completed(self, url: str) -> None:
        with self._lock:
            self._processing.discard(url)
            self._completed.add(url)

    def mark_failed(self, url: str) -> int:
        """
        Record a failed attempt.

        Returns:
            Total failures recorded for the URL
        """
        with self._lock:
            self._processing.discard(url)
            self._failed[url] = self._failed.get(url, 0) + 1
            return self._failed[url]

    def _has_task(self, url: str) -> bool:
        return url in self._queued or url in self._processing or url in self._completed

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "pending": len(self._queue),
                "processing": len(self._processing),
                "completed": len(self._completed),
                "failed": len(self._failed),
                "total": len(self._queue) + len(self._processing) + len(self._completed),
            }

    def is_empty(self) -> bool:
        with self._lock:
            return not self._queue and not self._processing

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)
