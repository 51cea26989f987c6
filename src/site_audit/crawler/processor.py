"""
Per-page pipeline: fetch, parse, analyze, store, classify links.
"""

import logging
from enum import Enum
from typing import List, Optional

from bs4 import BeautifulSoup

from .analyzers import AnalyzerSet, PageContext
from .external_checker import ExternalLinkChecker
from .fetcher import WebFetcher, FetchResult
from .links import LinkKind, classify_link, functional_scheme
from .url_frontier import URLFrontier
from ..storage.page_store import ChunkedPageStore, PageRecord, StorageError
from ..storage.state import CrawlState

PROCESSING_ERROR = "PROCESSING_ERROR"

HTML_CONTENT_TYPES = ('text/html', 'application/xhtml+xml')


class PageOutcome(Enum):
    """How processing a page ended."""
    SKIPPED = "skipped"
    BAD_REQUEST = "bad_request"
    NON_HTML = "non_html"
    PROCESSED = "processed"
    FAILED = "failed"


class PageProcessor:
    """
    Processes one URL at a time on behalf of a crawl worker.

    Everything after the fetch runs without suspending, apart from handing
    the discovered internal URLs to the frontier at the very end.
    """

    def __init__(self, fetcher: WebFetcher, frontier: URLFrontier, state: CrawlState,
                 page_store: ChunkedPageStore, checker: ExternalLinkChecker,
                 analyzers: Optional[AnalyzerSet] = None, max_redirects: int = 5,
                 monitor=None):
        self.fetcher = fetcher
        self.frontier = frontier
        self.state = state
        self.page_store = page_store
        self.checker = checker
        self.analyzers = AnalyzerSet() if analyzers is None else analyzers
        self.max_redirects = max_redirects
        self.monitor = monitor
        self.logger = logging.getLogger(__name__)

    async def process(self, url: str) -> PageOutcome:
        """
        Process a dequeued URL.

        Per-page failures are recorded in the crawl state; only StorageError
        from the page store propagates.
        """
        # Must happen before the first await
        if not self.frontier.mark_visited(url):
            self.logger.debug(f"Already visited, skipping: {url}")
            return PageOutcome.SKIPPED

        source = self.state.first_referrer(url) or url
        result = await self.fetcher.fetch_page(url, max_redirects=self.max_redirects)

        if self.monitor:
            self.monitor.record_page(result.status, result.response_time, result.size)

        if not result.ok:
            self._record_failure(url, result.status, source, result.error or f"HTTP {result.status}")
            return PageOutcome.BAD_REQUEST

        if not self._is_html(result):
            self._store(PageRecord(url=url, status_code=result.status,
                                   response_time_ms=result.response_time, size=result.size,
                                   headers=result.headers, truncated=result.truncated))
            self.logger.debug(f"Stored non-HTML page without analysis: {url} ({result.content_type})")
            return PageOutcome.NON_HTML

        try:
            soup = BeautifulSoup(result.body or '', 'lxml')
            context = PageContext(url=url, status_code=result.status, headers=result.headers,
                                  site_domain=self.state.domain, truncated=result.truncated)
            analysis = self.analyzers.run(soup, context)
        except Exception as e:
            self._record_failure(url, PROCESSING_ERROR, source, f"{type(e).__name__}: {e}", level=logging.ERROR)
            return PageOutcome.FAILED

        self._store(PageRecord(url=url, status_code=result.status,
                               response_time_ms=result.response_time, size=result.size,
                               headers=result.headers, analysis=analysis,
                               truncated=result.truncated))

        try:
            internal_urls = self._classify_links(soup, url, result.final_url or url)
        except Exception as e:
            self._record_failure(url, PROCESSING_ERROR, source, f"{type(e).__name__}: {e}", level=logging.ERROR)
            return PageOutcome.FAILED

        added = await self.frontier.add_urls(internal_urls)
        self.logger.debug(f"Processed {url}: {len(internal_urls)} internal links, {added} new")
        return PageOutcome.PROCESSED

    def _classify_links(self, soup: BeautifulSoup, page_url: str, base_url: str) -> List[str]:
        """
        Walk every anchor once and route it by kind.

        Returns:
            Internal URLs to offer to the frontier, in document order
        """
        internal_urls = []

        for anchor in soup.find_all('a', href=True):
            kind, target = classify_link(anchor['href'], base_url, self.state.domain)

            if kind is LinkKind.INTERNAL:
                self.state.record_link(target, anchor.get_text(' ', strip=True), page_url)
                if not self.frontier.is_known(target):
                    internal_urls.append(target)

            elif kind is LinkKind.FUNCTIONAL:
                self.state.record_functional_link(functional_scheme(target), target, page_url)

            elif kind is LinkKind.EXTERNAL:
                self.checker.enqueue(target, page_url)

        return internal_urls

    def _store(self, record: PageRecord):
        try:
            self.page_store.put(record)
        except StorageError:
            self.logger.error(f"Failed to store page record for {record.url}")
            raise

    def _record_failure(self, url: str, status, source: str, reason: str, level: int = logging.WARNING):
        self.state.record_bad_request(url, status, source, reason)
        if self.monitor:
            self.monitor.record_bad_request(status)
        self.logger.log(level, f"Bad request {url} ({status}) linked from {source}: {reason}")

    @staticmethod
    def _is_html(result: FetchResult) -> bool:
        content_type = result.content_type
        return not content_type or any(t in content_type for t in HTML_CONTENT_TYPES)
