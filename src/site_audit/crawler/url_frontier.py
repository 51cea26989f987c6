"""
URL Frontier shared by the crawl workers.

Holds the discovered-but-not-dequeued URLs, the visited set and the
processed-page counter, and implements the termination rule: a worker asking
for work blocks while the frontier is empty but other workers are still
mid-page, and is released with ``None`` once the frontier is empty and no
worker is active, or once the page limit has been reached.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Set, Optional, Iterable, List


@dataclass
class URLTask:
    """A URL handed to a worker."""
    url: str
    sequence: int
    dequeued_time: float = field(default_factory=time.time)


class URLFrontier:
    """
    Insertion-ordered frontier guarded by an asyncio.Condition.

    ``get_next_url`` and ``task_done`` bracket every page a worker processes;
    ``mark_visited`` is synchronous so the visited mark can never be split
    from the caller by a suspension point.
    """

    def __init__(self, max_pages: int = 0, frontier: Optional[Iterable[str]] = None,
                 visited: Optional[Iterable[str]] = None, processed_count: int = 0):
        self.max_pages = max_pages
        self.logger = logging.getLogger(__name__)

        self.visited: Set[str] = set(visited or ())
        self.pending: Dict[str, None] = {}
        self.in_flight: Set[str] = set()
        self.processed_count = processed_count
        self.active = 0
        self.limit_reached = False
        self.closed = False

        self._condition = asyncio.Condition()

        for url in frontier or ():
            if url not in self.visited:
                self.pending[url] = None

    def __len__(self) -> int:
        return len(self.pending)

    @property
    def remaining(self) -> int:
        """URLs discovered but not dequeued."""
        return len(self.pending)

    def is_known(self, url: str) -> bool:
        return url in self.visited or url in self.pending or url in self.in_flight

    async def add_url(self, url: str) -> bool:
        """
        Add a URL to the frontier.
        Returns True if URL was added, False if already visited or queued.
        """
        async with self._condition:
            added = self._add(url)
            if added:
                self._condition.notify()
            return added

    async def add_urls(self, urls: Iterable[str]) -> int:
        """Add multiple URLs to the frontier. Returns count of added URLs."""
        async with self._condition:
            added_count = sum(1 for url in urls if self._add(url))
            if added_count:
                self._condition.notify(added_count)
            return added_count

    def _add(self, url: str) -> bool:
        if self.is_known(url):
            return False
        self.pending[url] = None
        return True

    async def get_next_url(self) -> Optional[URLTask]:
        """
        Dequeue the next URL, incrementing the processed count.

        Returns None when the crawl is over for this worker: the frontier was
        closed, the page limit was reached, or the frontier is empty with no
        worker left that could add to it.
        """
        async with self._condition:
            while True:
                if self.closed:
                    return None

                if self.max_pages and self.processed_count >= self.max_pages:
                    if not self.limit_reached:
                        self.limit_reached = True
                        self.logger.info(f"Reached max pages limit: {self.max_pages} "
                                         f"({len(self.pending)} URLs left in frontier)")
                    self._condition.notify_all()
                    return None

                if self.pending:
                    url = next(iter(self.pending))
                    del self.pending[url]
                    self.processed_count += 1
                    self.active += 1
                    self.in_flight.add(url)
                    return URLTask(url=url, sequence=self.processed_count)

                if self.active == 0:
                    self._condition.notify_all()
                    return None

                await self._condition.wait()

    async def task_done(self, url: str):
        """Signal that the worker holding ``url`` has finished with it."""
        async with self._condition:
            self.active -= 1
            self.in_flight.discard(url)
            self._condition.notify_all()

    def mark_visited(self, url: str) -> bool:
        """
        Add a URL to the visited set.
        Returns False if it had already been visited.
        """
        if url in self.visited:
            return False
        self.visited.add(url)
        self.pending.pop(url, None)
        return True

    async def close(self):
        """
        Stop handing out URLs and wake every waiting worker.

        Pages still in flight may keep adding links; they stay pending and
        are carried by the next snapshot.
        """
        async with self._condition:
            self.closed = True
            self._condition.notify_all()

    def snapshot(self) -> Dict:
        """
        Serializable frontier/visited partition.

        URLs still in flight go back into the frontier and are dropped from
        the visited list and the processed count, so a resumed crawl processes
        them exactly once.
        """
        frontier: List[str] = list(self.pending)
        frontier.extend(url for url in sorted(self.in_flight) if url not in self.pending)
        return {
            'frontier': frontier,
            'visited': sorted(self.visited - self.in_flight),
            'processed_count': self.processed_count - len(self.in_flight)
        }

    def get_stats(self) -> Dict[str, int]:
        """Get frontier statistics."""
        return {
            'total_queued': len(self.pending),
            'total_visited': len(self.visited),
            'in_flight': len(self.in_flight),
            'active_workers': self.active,
            'processed_count': self.processed_count
        }
