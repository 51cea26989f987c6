"""
Crawler scheduler that coordinates crawling tasks and manages the overall crawl process.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .analyzers import AnalyzerSet
from .external_checker import ExternalLinkChecker, ExternalLinkResult
from .fetcher import WebFetcher
from .links import normalize_url, registrable_domain
from .processor import PageProcessor, PageOutcome, PROCESSING_ERROR
from .url_frontier import URLFrontier
from ..storage.checkpoint import CheckpointStore, FileStateBackend, RedisStateBackend, StateBackend
from ..storage.page_store import ChunkedPageStore, StorageError
from ..storage.state import CrawlState
from ..utils.config import Config, ConfigError
from ..utils.logger import get_crawler_logger, get_memory_usage_mb
from ..utils.monitoring import CrawlerMonitor


@dataclass
class ProgressEvent:
    """Emitted each time a worker dequeues a URL."""
    worker_id: int
    sequence: int
    remaining: int
    url: str


@dataclass
class CrawlStats:
    """Statistics for crawl operations."""
    start_time: float
    outcomes: Dict[str, int] = field(default_factory=dict)
    errors: int = 0

    def record(self, outcome: PageOutcome):
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1

    @property
    def pages_completed(self) -> int:
        return sum(self.outcomes.values())

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time

    @property
    def pages_per_minute(self) -> float:
        elapsed_minutes = self.elapsed_time / 60
        return self.pages_completed / elapsed_minutes if elapsed_minutes > 0 else 0


@dataclass
class CrawlReport:
    """What the caller gets back when a crawl ends."""
    processed: int
    remaining_frontier: int
    limit_reached: bool
    stopped: bool
    visited: int
    pages_stored: int
    elapsed_time: float
    counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'processed': self.processed,
            'remaining_frontier': self.remaining_frontier,
            'limit_reached': self.limit_reached,
            'stopped': self.stopped,
            'visited': self.visited,
            'pages_stored': self.pages_stored,
            'elapsed_time': self.elapsed_time,
            'counts': dict(self.counts)
        }


class CrawlerScheduler:
    """
    Main scheduler that coordinates all crawler components.

    Runs a fixed pool of crawl workers over one frontier while the external
    link checker drains its own queue, and checkpoints the crawl state every
    ``checkpoint_every`` completed pages and once more at the end.
    """

    def __init__(self, config: Config, analyzers: Optional[AnalyzerSet] = None,
                 monitor: Optional[CrawlerMonitor] = None,
                 backend: Optional[StateBackend] = None,
                 progress_callback: Optional[Callable[[ProgressEvent], None]] = None):
        self.config = config
        self.analyzers = AnalyzerSet() if analyzers is None else analyzers
        self.monitor = monitor or CrawlerMonitor()
        self.backend = backend
        self.progress_callback = progress_callback
        self.logger = logging.getLogger(__name__)

        seed = normalize_url(config.crawler.seed_url)
        if not seed:
            raise ConfigError(f"Invalid seed URL: {config.crawler.seed_url}")
        self.seed_url = seed
        self.base_url = normalize_url(config.crawler.base_url) if config.crawler.base_url else seed
        self.domain = registrable_domain(self.base_url)
        if not self.domain:
            raise ConfigError(f"Could not determine the site domain for {self.base_url}")

        # Components
        self.fetcher: Optional[WebFetcher] = None
        self.page_store: Optional[ChunkedPageStore] = None
        self.checkpoint_store: Optional[CheckpointStore] = None
        self.state: Optional[CrawlState] = None
        self.frontier: Optional[URLFrontier] = None
        self.checker: Optional[ExternalLinkChecker] = None
        self.processor: Optional[PageProcessor] = None

        # Crawl state
        self.stats = CrawlStats(start_time=time.time())
        self.is_running = False
        self.resumed = False
        self.workers: List[asyncio.Task] = []
        self._stopping = False
        self._completed_since_checkpoint = 0

    async def initialize(self, resume: Optional[bool] = None):
        """
        Initialize all crawler components, restoring the last checkpoint when
        ``resume`` (default: storage.resume) is set and one exists.
        """
        crawler_config = self.config.crawler
        storage_config = self.config.storage
        resume = storage_config.resume if resume is None else resume

        output_dir = f"{storage_config.output_dir}/{self.domain}"
        self.page_store = ChunkedPageStore(
            output_dir,
            chunk_max_records=storage_config.chunk_max_records,
            chunk_max_bytes=storage_config.chunk_max_bytes
        )

        if self.backend is None:
            if storage_config.backend == 'redis':
                self.backend = RedisStateBackend.from_config(
                    self.config.redis, self.domain, storage_config.compression_threshold
                )
            else:
                self.backend = FileStateBackend(
                    output_dir, storage_config.state_file, storage_config.compression_threshold
                )
        self.checkpoint_store = CheckpointStore(self.backend, self.page_store, self.monitor)

        state = await self.checkpoint_store.load() if resume else None
        if state is not None and state.domain != self.domain:
            self.logger.warning(f"Checkpoint belongs to {state.domain}, not {self.domain}; starting fresh")
            state = None

        if state is None:
            await self.checkpoint_store.clear()
            self.state = CrawlState(self.base_url, self.domain)
            self.frontier = URLFrontier(max_pages=crawler_config.max_pages, frontier=[self.seed_url])
        else:
            self.resumed = True
            self.state = state
            self.frontier = URLFrontier(
                max_pages=crawler_config.max_pages,
                frontier=state.frontier,
                visited=state.visited,
                processed_count=state.processed_count
            )
            self.logger.info(f"Resuming crawl of {self.domain}: {state.processed_count} processed, "
                             f"{len(self.frontier)} queued, {len(self.page_store)} page records")

        self.fetcher = WebFetcher(
            user_agent=crawler_config.user_agent,
            request_timeout=crawler_config.request_timeout,
            retries=crawler_config.retry_attempts,
            retry_backoff=crawler_config.retry_backoff,
            max_connections=crawler_config.max_parallel_crawl + crawler_config.max_parallel_checks,
            oversized_response_bytes=crawler_config.oversized_response_bytes,
            oversized_hard_multiple=crawler_config.oversized_hard_multiple
        )
        await self.fetcher.start()

        self.checker = ExternalLinkChecker(
            self.fetcher,
            self.state.external_links,
            max_parallel_checks=crawler_config.max_parallel_checks,
            max_redirects=crawler_config.max_redirects_external,
            max_links=crawler_config.max_external_links,
            on_result=self._on_external_result
        )
        requeued = self.checker.enqueue_many(self.state.pending_external)
        if requeued:
            self.logger.info(f"Re-queued {requeued} unchecked external links from checkpoint")
        self.state.pending_external = []

        self.processor = PageProcessor(
            self.fetcher, self.frontier, self.state, self.page_store, self.checker,
            analyzers=self.analyzers,
            max_redirects=crawler_config.max_redirects_internal,
            monitor=self.monitor
        )

        self.logger.info(f"Crawler scheduler initialized for {self.domain} (seed {self.seed_url})")

    async def start_crawling(self) -> CrawlReport:
        """
        Run the crawl to completion, the page limit, or a stop request.

        Raises:
            StorageError: if page data or a checkpoint could not be written
        """
        if self.is_running:
            raise RuntimeError("Crawler is already running")

        self.is_running = True
        self.stats = CrawlStats(start_time=time.time())
        num_workers = self.config.crawler.max_parallel_crawl

        try:
            self.checker.start()
            self.workers = [
                asyncio.create_task(self._worker(worker_id))
                for worker_id in range(1, num_workers + 1)
            ]
            stats_task = asyncio.create_task(self._stats_reporter())

            self.logger.info(f"Started crawling with {num_workers} workers")

            results = await asyncio.gather(*self.workers, return_exceptions=True)
            stats_task.cancel()

            fatal = next((r for r in results if isinstance(r, BaseException)), None)
            if fatal is not None:
                await self.checker.stop()
                raise fatal

            if self._stopping:
                # Unchecked pairs stay pending in the checkpoint
                await self.checker.stop()
            else:
                await self.checker.join()

            await self.save_checkpoint()

            report = self._build_report()
            self._log_final_stats(report)
            return report

        finally:
            self.is_running = False
            await self._cleanup_workers()

    async def _worker(self, worker_id: int):
        """
        Worker coroutine that processes URLs from the frontier.
        """
        logger = get_crawler_logger(__name__, worker_id=worker_id)
        logger.debug(f"Worker {worker_id} started")

        while True:
            task = await self.frontier.get_next_url()
            if task is None:
                break

            self._emit_progress(logger, ProgressEvent(
                worker_id=worker_id,
                sequence=task.sequence,
                remaining=self.frontier.remaining,
                url=task.url
            ))

            try:
                outcome = await self.processor.process(task.url)
                self.stats.record(outcome)
            except StorageError as e:
                logger.error(f"Fatal storage error while processing {task.url}: {e}")
                await self.frontier.close()
                raise
            except Exception as e:
                self.stats.errors += 1
                self.state.record_bad_request(task.url, PROCESSING_ERROR,
                                              self.state.first_referrer(task.url) or task.url,
                                              f"{type(e).__name__}: {e}")
                logger.error(f"Error processing {task.url}: {type(e).__name__}: {e}")
            finally:
                await self.frontier.task_done(task.url)

            self._completed_since_checkpoint += 1
            if self._completed_since_checkpoint >= self.config.crawler.checkpoint_every:
                self._completed_since_checkpoint = 0
                try:
                    await self.save_checkpoint()
                except StorageError:
                    await self.frontier.close()
                    raise

        logger.debug(f"Worker {worker_id} finished")

    def _emit_progress(self, logger, event: ProgressEvent):
        logger.info(f"[{event.worker_id}] #{event.sequence} ({event.remaining} queued) {event.url}")
        if self.progress_callback:
            try:
                self.progress_callback(event)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def _on_external_result(self, result: ExternalLinkResult):
        self.monitor.record_external_check(result.status)

    async def save_checkpoint(self):
        """Write a full crawl state snapshot."""
        await self.checkpoint_store.save(self.state, self.frontier, self.checker)

    async def _stats_reporter(self):
        """Periodically log crawl statistics."""
        while self.is_running:
            try:
                await asyncio.sleep(self.config.monitoring.stats_interval)
                self._log_current_stats()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in stats reporter: {e}")

    def _log_current_stats(self):
        """Log current crawl statistics."""
        frontier_stats = self.frontier.get_stats()
        self.monitor.update_queue_size(frontier_stats['total_queued'])
        self.monitor.update_active_workers(frontier_stats['active_workers'])

        self.logger.info(
            f"Crawl Progress: "
            f"Processed={frontier_stats['processed_count']}, "
            f"Queued={frontier_stats['total_queued']}, "
            f"Active={frontier_stats['active_workers']}, "
            f"BadRequests={len(self.state.bad_requests)}, "
            f"ExternalChecked={self.checker.checked}, "
            f"ExternalPending={len(self.checker.pending_pairs())}, "
            f"Rate={self.stats.pages_per_minute:.1f} pages/min, "
            f"Memory={get_memory_usage_mb():.0f}MB"
        )

    def _build_report(self) -> CrawlReport:
        return CrawlReport(
            processed=self.frontier.processed_count,
            remaining_frontier=self.frontier.remaining,
            limit_reached=self.frontier.limit_reached,
            stopped=self._stopping,
            visited=len(self.frontier.visited),
            pages_stored=len(self.page_store),
            elapsed_time=self.stats.elapsed_time,
            counts=self.state.counts()
        )

    def _log_final_stats(self, report: CrawlReport):
        """Log final crawl statistics."""
        self.logger.info("=== CRAWL COMPLETED ===")
        self.logger.info(f"Pages processed: {report.processed}")
        self.logger.info(f"Page records stored: {report.pages_stored}")
        self.logger.info(f"Outcomes: {self.stats.outcomes}")
        self.logger.info(f"Bad requests: {report.counts.get('bad_requests', 0)}")
        self.logger.info(f"External links checked: {report.counts.get('external_links', 0)} "
                         f"({report.counts.get('broken_external_links', 0)} broken)")
        self.logger.info(f"Total time: {report.elapsed_time:.2f} seconds")
        self.logger.info(f"Average rate: {self.stats.pages_per_minute:.1f} pages/min")
        if report.limit_reached:
            self.logger.info(f"Page limit reached; URLs remaining in queue: {report.remaining_frontier}")
        elif report.stopped:
            self.logger.info(f"Crawl stopped; URLs remaining in queue: {report.remaining_frontier}")
        self.logger.info(f"Fetcher stats: {self.fetcher.get_stats()}")
        self.logger.info(f"Page store stats: {self.page_store.get_stats()}")

    async def stop_crawling(self):
        """Stop handing out URLs; in-flight pages finish and a final checkpoint is written."""
        self.logger.info("Stopping crawler...")
        self._stopping = True
        if self.frontier is not None:
            await self.frontier.close()

    async def _cleanup_workers(self):
        """Cancel and cleanup worker tasks."""
        if self.workers:
            for worker in self.workers:
                if not worker.done():
                    worker.cancel()

            await asyncio.gather(*self.workers, return_exceptions=True)
            self.workers.clear()

    async def close(self):
        """Close all connections and cleanup resources."""
        try:
            if self.checker and self.checker.is_running:
                await self.checker.stop()

            if self.fetcher:
                await self.fetcher.close()

            if self.checkpoint_store:
                await self.checkpoint_store.close()

            self.logger.info("Crawler scheduler closed")

        except Exception as e:
            self.logger.error(f"Error during cleanup: {e}")

    def get_stats(self) -> Dict:
        """Get current crawl statistics."""
        return {
            'domain': self.domain,
            'outcomes': dict(self.stats.outcomes),
            'errors': self.stats.errors,
            'elapsed_time': self.stats.elapsed_time,
            'pages_per_minute': self.stats.pages_per_minute,
            'frontier': self.frontier.get_stats() if self.frontier is not None else {},
            'is_running': self.is_running
        }
