"""
Lock-guarded primitives shared between the control thread and worker threads.
"""

import threading
from typing import Any, Iterable, List, Optional, Set
from collections import deque


class ThreadSafeCounter:
    """Integer counter with atomic updates."""

    def __init__(self, initial_value: int = 0):
        self._value = initial_value
        self._lock = threading.Lock()

    def increment(self, amount: int = 1) -> int:
        """
        Atomically increment the counter.

        Args:
            amount: Amount to add

        Returns:
            New counter value
        """
        with self._lock:
            self._value += amount
            return self._value

    def get_value(self) -> int:
        with self._lock:
            return self._value

    def set_value(self, value: int) -> int:
        with self._lock:
            self._value = value
            return self._value

    def reset(self) -> int:
        """Reset to zero and return the previous value."""
        with self._lock:
            old_value = self._value
            self._value = 0
            return old_value

    def __repr__(self) -> str:
        return f"ThreadSafeCounter(value={self.get_value()})"


class ThreadSafeSet:
    """Set whose membership changes are atomic; used for URL deduplication."""

    def __init__(self, initial_items: Optional[Iterable[Any]] = None):
        self._set: Set[Any] = set(initial_items) if initial_items else set()
        self._lock = threading.RLock()

    def add(self, item: Any) -> bool:
        """
        Add an item.

        Args:
            item: Item to add

        Returns:
            True if the item was not present before
        """
        with self._lock:
            if item in self._set:
                return False
            self._set.add(item)
            return True

    def update(self, items: Iterable[Any]) -> int:
        """Add many items and return how many were new."""
        with self._lock:
            old_size = len(self._set)
            self._set.update(items)
            return len(self._set) - old_size

    def discard(self, item: Any) -> None:
        with self._lock:
            self._set.discard(item)

    def contains(self, item: Any) -> bool:
        with self._lock:
            return item in self._set

    def __contains__(self, item: Any) -> bool:
        return self.contains(item)

    def size(self) -> int:
        with self._lock:
            return len(self._set)

    def __len__(self) -> int:
        return self.size()

    def copy(self) -> Set[Any]:
        with self._lock:
            return self._set.copy()

    def clear(self) -> int:
        with self._lock:
            count = len(self._set)
            self._set.clear()
            return count

    def __repr__(self) -> str:
        return f"ThreadSafeSet(size={self.size()})"


class ThreadSafeDeque:
    """
    Shared work queue that several workers pull from.

    ``pop_next`` is atomic, so each item is handed to exactly one worker.
    """

    def __init__(self, items: Optional[Iterable[Any]] = None):
        self._deque = deque(items or ())
        self._lock = threading.Lock()

    def append(self, item: Any) -> None:
        with self._lock:
            self._deque.append(item)

    def extend(self, items: Iterable[Any]) -> None:
        with self._lock:
            self._deque.extend(items)

    def popleft(self) -> Any:
        """
        Remove and return the leftmost item.

        Raises:
            IndexError: If the deque is empty
        """
        with self._lock:
            return self._deque.popleft()

    def pop_next(self) -> Optional[Any]:
        """Remove and return the leftmost item, or None when drained."""
        with self._lock:
            if not self._deque:
                return None
            return self._deque.popleft()

    def clear(self) -> int:
        with self._lock:
            count = len(self._deque)
            self._deque.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._deque)

    def __bool__(self) -> bool:
        with self._lock:
            return bool(self._deque)

    def copy(self) -> List[Any]:
        with self._lock:
            return list(self._deque)
