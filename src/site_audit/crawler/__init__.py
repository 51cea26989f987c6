"""
Site audit crawler core components.

The processor and scheduler depend on the storage layer and are imported
from their modules directly.
"""

from .url_frontier import URLFrontier, URLTask
from .fetcher import WebFetcher, FetchResult, RedirectChain, RedirectHop
from .links import LinkKind, classify_link, normalize_url, registrable_domain
from .analyzers import AnalyzerSet, PageContext, DEFAULT_ANALYZERS
from .external_checker import ExternalLinkChecker, ExternalLinkResult

__all__ = [
    'URLFrontier', 'URLTask',
    'WebFetcher', 'FetchResult', 'RedirectChain', 'RedirectHop',
    'LinkKind', 'classify_link', 'normalize_url', 'registrable_domain',
    'AnalyzerSet', 'PageContext', 'DEFAULT_ANALYZERS',
    'ExternalLinkChecker', 'ExternalLinkResult'
]
