"""
Crawl state: link statistics, failures, external link results and functional
link registries, plus the serialized checkpoint format.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from ..crawler.external_checker import ExternalLinkResult, LinkPair

CHECKPOINT_VERSION = 1


@dataclass
class LinkStat:
    """How often an internal URL is linked, and from where."""
    count: int = 0
    # (anchor text, source page) -> None, kept in discovery order
    references: Dict[Tuple[str, str], None] = field(default_factory=dict)

    def add(self, anchor: str, source: str):
        self.count += 1
        self.references[(anchor, source)] = None

    @property
    def first_source(self) -> Optional[str]:
        for _, source in self.references:
            return source
        return None

    def to_dict(self) -> dict:
        return {
            'count': self.count,
            'references': [{'anchor': anchor, 'source': source} for anchor, source in self.references]
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LinkStat':
        stat = cls(count=data.get('count', 0))
        for ref in data.get('references', []):
            stat.references[(ref.get('anchor', ''), ref['source'])] = None
        return stat


@dataclass
class BadRequest:
    """A page that could not be fetched or processed."""
    status: Union[int, str]
    source: str
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {'status': self.status, 'source': self.source}
        if self.error:
            data['error'] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'BadRequest':
        return cls(status=data['status'], source=data.get('source', ''), error=data.get('error'))


class CrawlState:
    """
    Mutable aggregate written by the crawl workers and the external checker.

    The frontier and visited set live in URLFrontier; the values restored
    from a checkpoint are kept here until the frontier is rebuilt from them.
    """

    def __init__(self, base_url: str, domain: str):
        self.base_url = base_url
        self.domain = domain
        self.logger = logging.getLogger(__name__)

        self.link_stats: Dict[str, LinkStat] = {}
        self.bad_requests: Dict[str, BadRequest] = {}
        self.external_links: Dict[LinkPair, ExternalLinkResult] = {}
        self.mailto_links: Dict[str, Set[str]] = {}
        self.tel_links: Dict[str, Set[str]] = {}

        # Restored from a checkpoint
        self.frontier: List[str] = []
        self.visited: List[str] = []
        self.processed_count = 0
        self.pending_external: List[LinkPair] = []
        self.page_store_manifest: Optional[Dict[str, Any]] = None
        self.legacy_page_data: Dict[str, Any] = {}

    def record_link(self, url: str, anchor: str, source: str):
        """Record an internal link occurrence."""
        self.link_stats.setdefault(url, LinkStat()).add(anchor, source)

    def record_bad_request(self, url: str, status: Union[int, str], source: str,
                           error: Optional[str] = None):
        self.bad_requests[url] = BadRequest(status=status, source=source, error=error)

    def record_functional_link(self, scheme: str, target: str, source: str):
        """Record a mailto: or tel: link."""
        registry = self.mailto_links if scheme == 'mailto' else self.tel_links
        registry.setdefault(target, set()).add(source)

    def first_referrer(self, url: str) -> Optional[str]:
        stat = self.link_stats.get(url)
        return stat.first_source if stat else None

    def counts(self) -> Dict[str, int]:
        return {
            'internal_links': len(self.link_stats),
            'bad_requests': len(self.bad_requests),
            'external_links': len(self.external_links),
            'broken_external_links': sum(1 for r in self.external_links.values() if r.is_broken),
            'mailto_links': len(self.mailto_links),
            'tel_links': len(self.tel_links)
        }

    def to_dict(self, frontier: Dict[str, Any], pending_external: List[LinkPair],
                page_store: Dict[str, Any]) -> Dict[str, Any]:
        """
        Serialize the full state.

        Args:
            frontier: URLFrontier.snapshot() output
            pending_external: pairs queued for checking but not yet recorded
            page_store: ChunkedPageStore.manifest() output
        """
        return {
            'version': CHECKPOINT_VERSION,
            'base_url': self.base_url,
            'domain': self.domain,
            'saved_at': datetime.now(timezone.utc).isoformat(),
            'processed_count': frontier['processed_count'],
            'frontier': frontier['frontier'],
            'visited': frontier['visited'],
            'link_stats': {url: stat.to_dict() for url, stat in self.link_stats.items()},
            'bad_requests': {url: bad.to_dict() for url, bad in self.bad_requests.items()},
            'external_links': [result.to_dict() for result in self.external_links.values()],
            'mailto_links': {target: sorted(sources) for target, sources in self.mailto_links.items()},
            'tel_links': {target: sorted(sources) for target, sources in self.tel_links.items()},
            'pending_external': [{'url': url, 'source': source} for url, source in pending_external],
            'page_store': page_store
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrawlState':
        """Rebuild state from a checkpoint mapping."""
        version = data.get('version', CHECKPOINT_VERSION)
        if version > CHECKPOINT_VERSION:
            raise ValueError(f"Unsupported checkpoint version {version}")

        state = cls(base_url=data.get('base_url', ''), domain=data.get('domain', ''))
        state.frontier = list(data.get('frontier', data.get('queue', [])))
        state.visited = list(data.get('visited', []))
        state.processed_count = data.get('processed_count', len(state.visited))

        state.link_stats = {url: LinkStat.from_dict(stat) for url, stat in data.get('link_stats', {}).items()}
        state.bad_requests = {url: BadRequest.from_dict(bad) for url, bad in data.get('bad_requests', {}).items()}

        for item in data.get('external_links', []):
            result = ExternalLinkResult.from_dict(item)
            state.external_links[(result.url, result.source)] = result

        state.mailto_links = {target: set(sources) for target, sources in data.get('mailto_links', {}).items()}
        state.tel_links = {target: set(sources) for target, sources in data.get('tel_links', {}).items()}
        state.pending_external = [(item['url'], item['source']) for item in data.get('pending_external', [])]
        state.page_store_manifest = data.get('page_store')
        state.legacy_page_data = data.get('page_data') or {}

        state.logger.info(f"Loaded crawl state for {state.domain}: {state.processed_count} processed, "
                          f"{len(state.frontier)} queued, {len(state.external_links)} external results")
        return state
