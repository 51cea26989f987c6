"""
Bounded pool verifying links that point outside the audited site.

Every (url, source page) pair is checked and recorded on its own, so a broken
external URL can be traced back to each page that links to it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .fetcher import WebFetcher, RedirectChain, Status, NETWORK_FAILURES

CHECK_ERROR = "CHECK_ERROR"

LinkPair = Tuple[str, str]


@dataclass
class ExternalLinkResult:
    """Outcome of checking one external link from one source page."""
    url: str
    source: str
    status: Status
    headers: Dict[str, str] = field(default_factory=dict)
    redirect_chain: Optional[RedirectChain] = None
    checked_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    error: Optional[str] = None

    @property
    def is_broken(self) -> bool:
        return not isinstance(self.status, int) or self.status >= 400

    def to_dict(self) -> dict:
        return {
            'url': self.url,
            'source': self.source,
            'status': self.status,
            'headers': self.headers,
            'redirect_chain': self.redirect_chain.to_dict() if self.redirect_chain else None,
            'checked_at': self.checked_at,
            'error': self.error
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ExternalLinkResult':
        chain = data.get('redirect_chain')
        return cls(
            url=data['url'],
            source=data['source'],
            status=data['status'],
            headers=data.get('headers') or {},
            redirect_chain=RedirectChain.from_dict(chain) if chain else None,
            checked_at=data.get('checked_at') or datetime.now(timezone.utc).isoformat(),
            error=data.get('error')
        )


class ExternalLinkChecker:
    """
    Drains a queue of (external url, source page) pairs with a fixed number
    of workers, independently of the crawl workers.
    """

    def __init__(self, fetcher: WebFetcher, results: Dict[LinkPair, ExternalLinkResult],
                 max_parallel_checks: int = 10, max_redirects: int = 3,
                 max_links: int = 0, retries: Optional[int] = None,
                 on_result: Optional[Callable[[ExternalLinkResult], None]] = None):
        self.fetcher = fetcher
        self.results = results
        self.max_parallel_checks = max_parallel_checks
        self.max_redirects = max_redirects
        self.max_links = max_links
        self.retries = retries
        self.on_result = on_result
        self.logger = logging.getLogger(__name__)

        self.queue: Optional[asyncio.Queue] = None
        self.workers: List[asyncio.Task] = []
        self._seen = set(results)
        self._pending: Dict[LinkPair, None] = {}
        self.skipped = 0
        self.checked = 0

    @property
    def is_running(self) -> bool:
        return bool(self.workers)

    def pending_pairs(self) -> List[LinkPair]:
        """Pairs accepted but not yet recorded, in arrival order."""
        return list(self._pending)

    def start(self):
        """Start the worker pool."""
        if self.workers:
            return
        if self.queue is None:
            self.queue = asyncio.Queue()
        self.workers = [
            asyncio.create_task(self._worker(f"checker-{i}"))
            for i in range(self.max_parallel_checks)
        ]
        self.logger.info(f"Started external link checker with {self.max_parallel_checks} workers")

    def enqueue(self, url: str, source: str) -> bool:
        """
        Queue a pair for checking.
        Returns False if the pair was already queued or checked, or the cap was hit.
        """
        pair = (url, source)
        if pair in self._seen:
            return False

        if self.max_links and len(self._seen) >= self.max_links:
            self.skipped += 1
            if self.skipped == 1 or self.skipped % 100 == 0:
                self.logger.warning(f"External link cap of {self.max_links} reached, "
                                    f"{self.skipped} links skipped so far")
            return False

        if self.queue is None:
            self.queue = asyncio.Queue()

        self._seen.add(pair)
        self._pending[pair] = None
        self.queue.put_nowait(pair)
        return True

    def enqueue_many(self, pairs: Iterable[LinkPair]) -> int:
        return sum(1 for url, source in pairs if self.enqueue(url, source))

    async def join(self):
        """Wait until every queued pair is checked, then stop the workers."""
        if not self.workers:
            if self._pending:
                self.start()
            else:
                return

        await self.queue.join()
        for _ in self.workers:
            self.queue.put_nowait(None)
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []

        if self.skipped:
            self.logger.info(f"Skipped {self.skipped} external links over the cap of {self.max_links}")
        self.logger.info(f"External link checks complete: {self.checked} checked")

    async def run(self, pairs: Iterable[LinkPair]) -> Dict[LinkPair, ExternalLinkResult]:
        """Check a batch of pairs and wait for all of them."""
        self.enqueue_many(pairs)
        self.start()
        await self.join()
        return self.results

    async def stop(self):
        """Cancel the workers, leaving unchecked pairs pending."""
        for worker in self.workers:
            if not worker.done():
                worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []

    async def _worker(self, worker_id: str):
        self.logger.debug(f"External link worker {worker_id} started")
        while True:
            pair = await self.queue.get()
            try:
                if pair is None:
                    break
                url, source = pair
                result = await self.check_link(url, source)
                self.results[pair] = result
                self._pending.pop(pair, None)
                self.checked += 1
                if self.on_result:
                    self.on_result(result)
            finally:
                self.queue.task_done()
        self.logger.debug(f"External link worker {worker_id} finished")

    async def check_link(self, url: str, source: str) -> ExternalLinkResult:
        """
        HEAD the link with retries, then trace its redirects.

        The redirect trace is skipped when the probe ended in a network failure.
        Any unexpected error is recorded as CHECK_ERROR for this pair only.
        """
        try:
            probe = await self.fetcher.fetch_with_retry(url, retries=self.retries, method='HEAD')
            result = ExternalLinkResult(url=url, source=source, status=probe.status,
                                        headers=probe.headers, error=probe.error)

            if probe.status not in NETWORK_FAILURES:
                result.redirect_chain = await self.fetcher.check_redirect_chain(
                    url, max_redirects=self.max_redirects, method='HEAD'
                )

            if result.is_broken:
                self.logger.info(f"Broken external link {url} (status {result.status}) on {source}")
            return result

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Error checking external link {url} from {source}: {e}")
            return ExternalLinkResult(url=url, source=source, status=CHECK_ERROR,
                                      error=f"{type(e).__name__}: {e}")
