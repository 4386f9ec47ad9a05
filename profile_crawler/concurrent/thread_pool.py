"""
Chunked worker pool for profile detail fetches.

A URL list is split into chunks of ``max_batch_size``. For every chunk the
executor starts ``min(concurrency, len(chunk))`` worker threads that greedily
pull from one shared queue. Each worker owns a browser context for the length
of the chunk and tears it down before exiting; the executor joins every worker
before the next chunk starts, so chunks never overlap.
"""

import time
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import psutil

from profile_crawler.utils.logging import get_business_logger
from profile_crawler.concurrent.models import BatchResult, ExecutionContext, FetchResult
from profile_crawler.concurrent.thread_safe import ThreadSafeCounter, ThreadSafeDeque
from profile_crawler.concurrent.rate_controller import RateLimiter
from profile_crawler.crawlers.base import ExecutionContextFactory


ScrapeFunction = Callable[[ExecutionContext, str], FetchResult]
SaveFunction = Callable[[str, FetchResult], None]
ItemCallback = Callable[[str, FetchResult], None]


@dataclass
class BatchHooks:
    """Callbacks the executor invokes while processing a batch."""
    save: Optional[SaveFunction] = None
    on_success: Optional[ItemCallback] = None
    on_failure: Optional[ItemCallback] = None
    should_stop: Optional[Callable[[], bool]] = None
    # Runs on the calling thread after a chunk's workers are joined
    on_chunk_complete: Optional[Callable[[int, BatchResult], None]] = None

    def stop_requested(self) -> bool:
        return self.should_stop is not None and self.should_stop()


class WorkerThread(threading.Thread):
    """Worker that drains the shared queue for one chunk."""

    def __init__(
        self,
        worker_id: str,
        work_queue: ThreadSafeDeque,
        context_factory: ExecutionContextFactory,
        scrape_fn: ScrapeFunction,
        hooks: BatchHooks,
        error_counter: ThreadSafeCounter,
        item_delay_ms: float = 300,
        delay_provider: Optional[Callable[[], float]] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep_func: Callable[[float], None] = time.sleep,
    ):
        super().__init__(name=f"ProfileWorker-{worker_id}", daemon=True)

        self.worker_id = worker_id
        self.work_queue = work_queue
        self.context_factory = context_factory
        self.scrape_fn = scrape_fn
        self.hooks = hooks
        self.error_counter = error_counter
        self.item_delay_ms = item_delay_ms
        self.delay_provider = delay_provider
        self.rate_limiter = rate_limiter
        self._sleep = sleep_func

        self.result = BatchResult()
        self.context_error: Optional[str] = None
        self.logger = get_business_logger("worker_pool")

    def run(self) -> None:
        """Create the context, drain the queue, always tear the context down."""
        try:
            context = self.context_factory.create(self.worker_id)
        except Exception as e:
            self.context_error = str(e)
            self.logger.error(f"Worker {self.worker_id} could not create its context: {e}")
            return

        try:
            while not self.hooks.stop_requested():
                url = self.work_queue.pop_next()
                if url is None:
                    break

                succeeded = self._process_item(context, url)
                context.items_processed += 1

                if self.work_queue and not self.hooks.stop_requested():
                    delay_ms = self._next_delay_ms(succeeded)
                    if delay_ms > 0:
                        self._sleep(delay_ms / 1000)
        finally:
            try:
                self.context_factory.close(context)
            except Exception as e:
                self.logger.warning(f"Worker {self.worker_id} failed to close its context: {e}")
            self.logger.debug(
                f"Worker {self.worker_id} finished: {self.result.succeeded} ok, "
                f"{self.result.failed} failed"
            )

    def _next_delay_ms(self, succeeded: bool) -> float:
        """Fixed item delay, or the error backoff after a failed item."""
        if succeeded or self.delay_provider is None:
            return self.item_delay_ms

        backoff = self.delay_provider() * 1.5
        if self.rate_limiter is not None:
            backoff = self.rate_limiter.get_adaptive_delay(backoff)
        return max(self.item_delay_ms, backoff)

    def _process_item(self, context: ExecutionContext, url: str) -> bool:
        """Scrape and save one URL; no exception escapes this method."""
        self.result.processed += 1

        try:
            result = self.scrape_fn(context, url)
        except Exception as e:
            result = FetchResult.failure(f"{type(e).__name__}: {e}")

        if result.success and self.hooks.save is not None:
            try:
                self.hooks.save(url, result)
            except Exception as e:
                self.logger.error(f"Worker {self.worker_id} failed to save {url}: {e}")
                result = FetchResult.failure(f"save failed: {e}", status=result.status)

        if result.success:
            self.result.succeeded += 1
            callback = self.hooks.on_success
        else:
            self.result.failed += 1
            self.error_counter.increment()
            callback = self.hooks.on_failure

        if callback is not None:
            try:
                callback(url, result)
            except Exception as e:
                self.logger.error(f"Worker {self.worker_id} callback failed for {url}: {e}")

        return result.success


class BatchExecutor:
    """Runs chunks of detail fetches over a bounded set of worker threads."""

    def __init__(
        self,
        context_factory: ExecutionContextFactory,
        concurrency: int = 2,
        max_batch_size: int = 50,
        item_delay_ms: float = 300,
        chunk_cooldown_ms: float = 2000,
        rate_limiter: Optional[RateLimiter] = None,
        delay_provider: Optional[Callable[[], float]] = None,
        sleep_func: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize batch executor.

        Args:
            context_factory: Creates one execution context per worker
            concurrency: Upper bound of workers per chunk
            max_batch_size: Chunk size
            item_delay_ms: Fixed delay between items of one worker
            chunk_cooldown_ms: Base cooldown between chunks, scaled by the
                rate limiter's error pressure
            rate_limiter: Session limiter used for the adaptive cooldown and
                the workers' error backoff
            delay_provider: Returns the currently tuned profile delay in ms;
                a worker backs off by 1.5x of it after a failed item
            sleep_func: Sleep function, replaceable in tests
        """
        self.context_factory = context_factory
        self.concurrency = max(1, concurrency)
        self.max_batch_size = max(1, max_batch_size)
        self.item_delay_ms = item_delay_ms
        self.chunk_cooldown_ms = chunk_cooldown_ms
        self.rate_limiter = rate_limiter
        self.delay_provider = delay_provider
        self._sleep = sleep_func

        self._error_counter = ThreadSafeCounter()
        self._chunks_run = ThreadSafeCounter()
        self._workers_started = ThreadSafeCounter()
        self._totals = BatchResult()
        self._lock = threading.Lock()
        self.logger = get_business_logger("worker_pool")

    def set_concurrency(self, concurrency: int) -> None:
        """Takes effect from the next chunk."""
        self.concurrency = max(1, int(concurrency))

    @staticmethod
    def chunk(urls: List[str], size: int) -> List[List[str]]:
        return [urls[i:i + size] for i in range(0, len(urls), size)]

    def process(self, urls: List[str], scrape_fn: ScrapeFunction,
                hooks: Optional[BatchHooks] = None) -> BatchResult:
        """
        Process ``urls`` chunk by chunk.

        Args:
            urls: Profile URLs to fetch
            scrape_fn: Called with the worker's context and a URL
            hooks: Save function, item callbacks, cancellation and the
                chunk-boundary hook

        Returns:
            Counts aggregated across all chunks
        """
        hooks = hooks or BatchHooks()
        total = BatchResult()
        chunks = self.chunk(list(urls), self.max_batch_size)

        self.logger.info(
            f"Processing {len(urls)} URLs in {len(chunks)} chunks "
            f"(batch size {self.max_batch_size}, concurrency {self.concurrency})"
        )

        for index, chunk_urls in enumerate(chunks):
            if hooks.stop_requested():
                self.logger.info(f"Stop requested before chunk {index + 1}/{len(chunks)}")
                break

            chunk_result = self._run_chunk(index, chunk_urls, scrape_fn, hooks)
            total.merge(chunk_result)

            if hooks.on_chunk_complete is not None:
                hooks.on_chunk_complete(index, chunk_result)

            if index < len(chunks) - 1 and not hooks.stop_requested():
                cooldown_ms = self._get_cooldown_ms()
                if cooldown_ms > 0:
                    self.logger.debug(f"Cooling down {cooldown_ms:.0f}ms before next chunk")
                    self._sleep(cooldown_ms / 1000)

        with self._lock:
            self._totals.merge(total)

        self.logger.info(
            f"Batch finished: {total.processed} processed, {total.succeeded} ok, {total.failed} failed"
        )
        return total

    def _run_chunk(self, index: int, chunk_urls: List[str], scrape_fn: ScrapeFunction,
                   hooks: BatchHooks) -> BatchResult:
        work_queue = ThreadSafeDeque(chunk_urls)
        # A short final chunk gets one worker per item, not idle contexts
        worker_count = min(self.concurrency, len(chunk_urls))

        workers = [
            WorkerThread(
                worker_id=f"{index}-{i}",
                work_queue=work_queue,
                context_factory=self.context_factory,
                scrape_fn=scrape_fn,
                hooks=hooks,
                error_counter=self._error_counter,
                item_delay_ms=self.item_delay_ms,
                delay_provider=self.delay_provider,
                rate_limiter=self.rate_limiter,
                sleep_func=self._sleep,
            )
            for i in range(worker_count)
        ]

        for worker in workers:
            worker.start()
            self._workers_started.increment()
        for worker in workers:
            worker.join()

        chunk_result = BatchResult()
        for worker in workers:
            chunk_result.merge(worker.result)

        # Items left behind when every worker failed to get a context
        if not hooks.stop_requested():
            context_errors = [w.context_error for w in workers if w.context_error]
            while True:
                url = work_queue.pop_next()
                if url is None:
                    break
                result = FetchResult.failure(
                    f"no execution context available: {context_errors[0] if context_errors else 'unknown'}"
                )
                chunk_result.processed += 1
                chunk_result.failed += 1
                self._error_counter.increment()
                if hooks.on_failure is not None:
                    hooks.on_failure(url, result)

        self._chunks_run.increment()
        self.logger.info(
            f"Chunk {index + 1}: {worker_count} workers, {chunk_result.succeeded} ok, "
            f"{chunk_result.failed} failed"
        )
        return chunk_result

    def _get_cooldown_ms(self) -> float:
        if self.rate_limiter is not None:
            return self.rate_limiter.get_adaptive_delay(self.chunk_cooldown_ms)
        return self.chunk_cooldown_ms * (1 + min(self._error_counter.get_value(), 10) * 0.1)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get executor statistics.

        Returns:
            Dictionary with totals, configuration and process memory
        """
        with self._lock:
            totals = self._totals.to_dict()

        try:
            memory_mb = psutil.Process().memory_info().rss / (1024 * 1024)
        except psutil.Error as e:
            self.logger.warning(f"Could not read process memory: {e}")
            memory_mb = None

        return {
            "concurrency": self.concurrency,
            "max_batch_size": self.max_batch_size,
            "chunks_run": self._chunks_run.get_value(),
            "workers_started": self._workers_started.get_value(),
            "errors": self._error_counter.get_value(),
            "totals": totals,
            "memory_rss_mb": round(memory_mb, 1) if memory_mb is not None else None,
        }
