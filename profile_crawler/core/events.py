"""
Event surface of the orchestrator.

The orchestrator publishes ``CrawlEvent`` objects on an ``EventBus``; callers
(a progress stream, logs, tests) subscribe without the orchestrator knowing
how events are delivered.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from profile_crawler.utils.errors import handle_error
from profile_crawler.utils.logging import get_business_logger, get_structured_logger


class EventType(Enum):
    """Named events published during a session."""
    SESSION = "session"
    NAVIGATION = "navigation"
    COUNT = "count"
    PAGE = "page"
    RESUME = "resume"
    PROFILE = "profile"
    PROGRESS = "progress"
    METRICS = "metrics"
    ERROR = "error"
    CONTROL = "control"
    DONE = "done"


@dataclass
class CrawlEvent:
    """One published event, always tagged with its session."""
    type: EventType
    session_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            **self.payload,
        }


EventHandler = Callable[[CrawlEvent], None]


class EventBus:
    """Thread-safe publish/subscribe hub."""

    def __init__(self):
        self._subscribers: List[tuple] = []
        self._lock = threading.Lock()
        self._published = 0
        self.logger = get_business_logger("events")

    def subscribe(self, handler: EventHandler,
                  event_types: Optional[Iterable[EventType]] = None) -> Callable[[], None]:
        """
        Register ``handler`` for ``event_types`` (all events when None).

        Returns:
            Callable that removes the subscription
        """
        types = frozenset(event_types) if event_types is not None else None
        entry = (handler, types)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event_type: EventType, session_id: str, **payload) -> CrawlEvent:
        """Deliver an event to matching subscribers; handler errors are logged, not raised."""
        event = CrawlEvent(type=event_type, session_id=session_id, payload=payload)

        with self._lock:
            subscribers = list(self._subscribers)
            self._published += 1

        for handler, types in subscribers:
            if types is not None and event_type not in types:
                continue
            try:
                handler(event)
            except Exception as e:
                handle_error(
                    e, self.logger,
                    {"event_type": event_type.value, "session_id": session_id},
                    reraise=False
                )

        return event

    @property
    def published_count(self) -> int:
        with self._lock:
            return self._published

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


class LoggingEventListener:
    """Mirrors every event into the structured log."""

    QUIET_EVENTS = frozenset({EventType.RESUME, EventType.PROFILE, EventType.PROGRESS})

    def __init__(self, name: str = "profile_crawler.events"):
        self.logger = get_structured_logger(name)

    def __call__(self, event: CrawlEvent) -> None:
        fields = {k: v for k, v in event.payload.items() if not isinstance(v, (dict, list))}
        if event.type == EventType.ERROR:
            self.logger.error(event.type.value, session_id=event.session_id, **fields)
        elif event.type in self.QUIET_EVENTS:
            self.logger.debug(event.type.value, session_id=event.session_id, **fields)
        else:
            self.logger.info(event.type.value, session_id=event.session_id, **fields)

    def attach(self, bus: EventBus) -> Callable[[], None]:
        return bus.subscribe(self)
