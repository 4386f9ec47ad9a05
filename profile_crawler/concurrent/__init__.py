"""
Concurrency building blocks of the crawl engine.

Main Components:
- RateLimiter: Sliding-window admission with circuit breaker
- ConcurrencyController: Feedback loop tuning concurrency, delay and RPM
- TaskQueue: Profile URL lifecycle with failure counts
- ThreadSafeCounter / ThreadSafeSet / ThreadSafeDeque: Locked primitives

The worker pool and fetch strategies live in ``thread_pool`` and
``strategies`` and are imported from there.
"""

from .models import (
    SessionStatus,
    TerminationReason,
    CircuitState,
    CrawlMode,
    ModePreset,
    MODE_PRESETS,
    PerformanceGoal,
    CrawlOptions,
    FetchResult,
    NavigationResult,
    BatchResult,
    ConcurrencyMetrics,
    ExecutionContext,
    OrchestrationResult
)

from .thread_safe import (
    ThreadSafeCounter,
    ThreadSafeSet,
    ThreadSafeDeque
)

from .rate_controller import RateLimiter
from .adaptive import ConcurrencyController
from .task_queue import TaskQueue

__all__ = [
    # Models
    'SessionStatus',
    'TerminationReason',
    'CircuitState',
    'CrawlMode',
    'ModePreset',
    'MODE_PRESETS',
    'PerformanceGoal',
    'CrawlOptions',
    'FetchResult',
    'NavigationResult',
    'BatchResult',
    'ConcurrencyMetrics',
    'ExecutionContext',
    'OrchestrationResult',

    # Thread-safe utilities
    'ThreadSafeCounter',
    'ThreadSafeSet',
    'ThreadSafeDeque',

    # Components
    'RateLimiter',
    'ConcurrencyController',
    'TaskQueue'
]
