"""
Crawl orchestration core.

Main Components:
- CrawlRunner: Session facade (create or resume, control surface, retry pass)
- CrawlOrchestrator: Page-iteration state machine
- AuthRecoveryGuard: Single-flight re-authentication and guarded navigation
- ControlSignals: Pause/stop signalling
- EventBus: Event surface with a logging listener
"""

from .events import EventType, CrawlEvent, EventBus, LoggingEventListener
from .control import ControlSignals
from .auth_guard import AuthRecoveryGuard
from .orchestrator import CrawlOrchestrator
from .runner import CrawlRunner

__all__ = [
    'EventType',
    'CrawlEvent',
    'EventBus',
    'LoggingEventListener',
    'ControlSignals',
    'AuthRecoveryGuard',
    'CrawlOrchestrator',
    'CrawlRunner'
]
