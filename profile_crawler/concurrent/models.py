"""
Data models for the crawl orchestration engine.
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, Any, Optional, List
from enum import Enum

from profile_crawler.utils.errors import ValidationError


class SessionStatus(Enum):
    """Lifecycle status of a crawl session."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"
    TIME_BUDGET_EXCEEDED = "time_budget_exceeded"
    TARGET_REACHED = "target_reached"


TERMINAL_STATUSES = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.STOPPED,
    SessionStatus.TIME_BUDGET_EXCEEDED,
    SessionStatus.TARGET_REACHED,
})


class TerminationReason(Enum):
    """Machine-readable reason a session ended."""
    STOP_REQUESTED = "stop_requested"
    TIME_BUDGET_EXCEEDED = "time_budget_exceeded"
    TARGET_PROFILES_REACHED = "target_profiles_reached"
    COMPLETED = "completed"
    STOPPED = "stopped"
    STALLED = "stalled"
    FAILED = "failed"


REASON_TO_STATUS = {
    TerminationReason.STOP_REQUESTED: SessionStatus.STOPPED,
    TerminationReason.STOPPED: SessionStatus.STOPPED,
    TerminationReason.TIME_BUDGET_EXCEEDED: SessionStatus.TIME_BUDGET_EXCEEDED,
    TerminationReason.TARGET_PROFILES_REACHED: SessionStatus.TARGET_REACHED,
    TerminationReason.COMPLETED: SessionStatus.COMPLETED,
    TerminationReason.STALLED: SessionStatus.COMPLETED,
    TerminationReason.FAILED: SessionStatus.FAILED,
}


class CircuitState(Enum):
    """Rate limiter circuit breaker state."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CrawlMode(Enum):
    """Performance mode selecting a preset of concurrency bounds and multipliers."""
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    FAST = "fast"


@dataclass(frozen=True)
class ModePreset:
    """Concurrency bounds and multipliers for a crawl mode."""
    min_concurrency: int
    max_concurrency: int
    rpm_multiplier: float
    profile_delay_multiplier: float


MODE_PRESETS: Dict[CrawlMode, ModePreset] = {
    CrawlMode.CONSERVATIVE: ModePreset(1, 3, 1.2, 1.5),
    CrawlMode.BALANCED: ModePreset(2, 6, 1.5, 1.0),
    CrawlMode.FAST: ModePreset(3, 12, 2.0, 0.7),
}


@dataclass
class PerformanceGoal:
    """Throughput target and optional termination goals for a session."""
    target_profiles_per_min: float = 20.0
    target_profiles: Optional[int] = None
    time_budget_minutes: Optional[float] = None
    mode: CrawlMode = CrawlMode.BALANCED

    @property
    def preset(self) -> ModePreset:
        return MODE_PRESETS[self.mode]


@dataclass
class CrawlOptions:
    """Options for one crawl session."""
    max_pages: int = 5
    page_delay_ms: Optional[int] = None
    scrape_full_profiles: bool = True
    enable_parallel: bool = True
    mode: CrawlMode = CrawlMode.BALANCED
    target_profiles: Optional[int] = None
    target_profiles_per_min: Optional[float] = None
    time_budget_minutes: Optional[float] = None
    requested_concurrency: Optional[int] = None
    requested_profile_delay_ms: Optional[int] = None
    max_batch_size: Optional[int] = None
    resume_session: bool = True

    def __post_init__(self):
        if isinstance(self.mode, str):
            try:
                self.mode = CrawlMode(self.mode)
            except ValueError:
                raise ValidationError(
                    "Crawl options validation failed",
                    {"errors": [f"unknown mode: {self.mode}"]}
                )
        self.validate()

    def validate(self) -> None:
        """
        Validate option values.

        Raises:
            ValidationError: If any option is out of range
        """
        errors = []

        if self.max_pages < 1:
            errors.append("max_pages must be at least 1")

        if self.page_delay_ms is not None and self.page_delay_ms < 0:
            errors.append("page_delay_ms must not be negative")

        if self.target_profiles is not None and self.target_profiles < 1:
            errors.append("target_profiles must be at least 1")

        if self.target_profiles_per_min is not None and self.target_profiles_per_min <= 0:
            errors.append("target_profiles_per_min must be positive")

        if self.time_budget_minutes is not None and self.time_budget_minutes <= 0:
            errors.append("time_budget_minutes must be positive")

        if self.requested_concurrency is not None and self.requested_concurrency < 1:
            errors.append("requested_concurrency must be at least 1")

        if self.requested_profile_delay_ms is not None and self.requested_profile_delay_ms < 0:
            errors.append("requested_profile_delay_ms must not be negative")

        if self.max_batch_size is not None and self.max_batch_size < 1:
            errors.append("max_batch_size must be at least 1")

        if errors:
            raise ValidationError(
                "Crawl options validation failed",
                {"errors": errors}
            )

    def to_goal(self, default_target_per_min: float) -> PerformanceGoal:
        """Build the performance goal these options describe."""
        return PerformanceGoal(
            target_profiles_per_min=self.target_profiles_per_min or default_target_per_min,
            target_profiles=self.target_profiles,
            time_budget_minutes=self.time_budget_minutes,
            mode=self.mode,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CrawlOptions":
        """Build options from a stored dict, ignoring unknown keys."""
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class FetchResult:
    """Normalized outcome of one detail fetch."""
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    login_redirect: bool = False
    blocked: bool = False
    status: Optional[int] = None
    request_time: float = 0.0
    extraction_time: float = 0.0

    @classmethod
    def failure(cls, error: str, **kwargs) -> "FetchResult":
        return cls(success=False, error=error, **kwargs)

    @property
    def is_rate_limit_signal(self) -> bool:
        """True when the failure means the site is pushing back."""
        return self.blocked or self.login_redirect or self.status in (403, 429)

    def meta(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "blocked": self.blocked,
            "login_redirect": self.login_redirect,
            "request_time": self.request_time,
            "extraction_time": self.extraction_time,
        }


@dataclass
class NavigationResult:
    """Outcome of one navigation step."""
    success: bool
    url: Optional[str] = None
    error: Optional[str] = None
    login_redirect: bool = False
    blocked: bool = False
    status: Optional[int] = None

    @property
    def is_rate_limit_signal(self) -> bool:
        return self.blocked or self.status in (403, 429)


@dataclass
class BatchResult:
    """Counts for one batch run."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0

    def merge(self, other: "BatchResult") -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class ConcurrencyMetrics:
    """Snapshot of the adaptive concurrency controller."""
    current_profiles_per_min: float = 0.0
    current_concurrency: int = 1
    current_profile_delay_ms: float = 0.0
    rpm_limit: float = 0.0
    error_rate: float = 0.0
    last_adjustment: Optional[float] = None
    samples: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionContext:
    """Browser context owned by a single worker for the length of one chunk."""
    worker_id: str
    page: Any = None
    handles: Dict[str, Any] = field(default_factory=dict)
    session_generation: int = 0
    items_processed: int = 0


@dataclass
class OrchestrationResult:
    """Final outcome of an orchestrated session."""
    success: bool
    session_id: str
    status: SessionStatus
    reason: TerminationReason
    total: Optional[int] = None
    resumes_scraped: int = 0
    profiles_scraped: int = 0
    profiles_failed: int = 0
    pages_processed: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["reason"] = self.reason.value
        return data
