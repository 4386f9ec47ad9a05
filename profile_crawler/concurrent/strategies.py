"""
Profile fetch strategies.

``SequentialStrategy`` fetches on a single context, one item at a time, with a
jittered adaptive delay between items. ``ParallelStrategy`` hands the list to
the chunked ``BatchExecutor``.
"""

import random
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from profile_crawler.utils.logging import get_business_logger
from profile_crawler.concurrent.models import BatchResult, ExecutionContext, FetchResult
from profile_crawler.concurrent.rate_controller import RateLimiter
from profile_crawler.concurrent.thread_pool import BatchExecutor, BatchHooks, ScrapeFunction


def humanized_delay_ms(base_ms: float, variance: float = 0.4,
                       rng: Optional[random.Random] = None) -> float:
    """Uniformly jitter ``base_ms`` within ``±variance``."""
    if base_ms <= 0:
        return 0.0
    rng = rng or random
    return rng.uniform(base_ms * (1 - variance), base_ms * (1 + variance))


class BaseStrategy(ABC):
    """Common statistics for all strategies."""

    name = "base"

    def __init__(self):
        self.stats = BatchResult()
        self.logger = get_business_logger("worker_pool")

    @abstractmethod
    def process(self, urls: List[str], scrape_fn: ScrapeFunction,
                hooks: Optional[BatchHooks] = None) -> BatchResult:
        """Fetch every URL and return the aggregated counts."""

    def get_stats(self):
        return self.stats.to_dict()

    def reset_stats(self) -> None:
        self.stats = BatchResult()


class SequentialStrategy(BaseStrategy):
    """One context, one item at a time."""

    name = "sequential"

    def __init__(
        self,
        context: ExecutionContext,
        delay_provider: Callable[[], float],
        rate_limiter: Optional[RateLimiter] = None,
        variance: float = 0.4,
        sleep_func: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            context: Context wrapping the main page
            delay_provider: Returns the currently tuned profile delay in ms
            rate_limiter: Scales the delay by error pressure when given
            variance: Jitter applied to the delay
            sleep_func: Sleep function, replaceable in tests
            rng: Random source for the jitter
        """
        super().__init__()
        self.context = context
        self.delay_provider = delay_provider
        self.rate_limiter = rate_limiter
        self.variance = variance
        self._sleep = sleep_func
        self._rng = rng

    def process(self, urls: List[str], scrape_fn: ScrapeFunction,
                hooks: Optional[BatchHooks] = None) -> BatchResult:
        hooks = hooks or BatchHooks()
        self.reset_stats()
        self.logger.info(f"Sequential fetch of {len(urls)} profiles")

        for index, url in enumerate(urls):
            if hooks.stop_requested():
                self.logger.info(f"Stop requested after {index}/{len(urls)} profiles")
                break

            item_result = BatchResult(processed=1)
            try:
                result = scrape_fn(self.context, url)
            except Exception as e:
                result = FetchResult.failure(f"{type(e).__name__}: {e}")

            if result.success and hooks.save is not None:
                try:
                    hooks.save(url, result)
                except Exception as e:
                    self.logger.error(f"Failed to save {url}: {e}")
                    result = FetchResult.failure(f"save failed: {e}", status=result.status)

            if result.success:
                item_result.succeeded = 1
                if hooks.on_success is not None:
                    hooks.on_success(url, result)
            else:
                item_result.failed = 1
                if hooks.on_failure is not None:
                    hooks.on_failure(url, result)

            self.stats.merge(item_result)
            self.context.items_processed += 1

            if hooks.on_chunk_complete is not None:
                hooks.on_chunk_complete(index, item_result)

            if index < len(urls) - 1 and not hooks.stop_requested():
                base = self.delay_provider()
                if self.rate_limiter is not None:
                    base = self.rate_limiter.get_adaptive_delay(base)
                delay_ms = humanized_delay_ms(base, self.variance, self._rng)
                if delay_ms > 0:
                    self._sleep(delay_ms / 1000)

        self.logger.info(
            f"Sequential fetch finished: {self.stats.succeeded}/{self.stats.processed} ok"
        )
        return BatchResult(self.stats.processed, self.stats.succeeded, self.stats.failed)


class ParallelStrategy(BaseStrategy):
    """Chunked fan-out over worker threads."""

    name = "parallel"

    def __init__(self, executor: BatchExecutor):
        super().__init__()
        self.executor = executor

    def process(self, urls: List[str], scrape_fn: ScrapeFunction,
                hooks: Optional[BatchHooks] = None) -> BatchResult:
        self.reset_stats()
        self.logger.info(
            f"Parallel fetch of {len(urls)} profiles with {self.executor.concurrency} workers"
        )
        result = self.executor.process(urls, scrape_fn, hooks)
        self.stats.merge(result)
        return result


def should_run_parallel(enable_parallel: bool, item_count: int, concurrency: int,
                        has_context_factory: bool, min_items: int = 3) -> bool:
    """Parallel fan-out needs it enabled, enough items, more than one worker and a factory."""
    return enable_parallel and has_context_factory and item_count >= min_items and concurrency > 1
