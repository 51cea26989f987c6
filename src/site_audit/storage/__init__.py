"""
Storage layer for crawl state and page records.
"""

from .page_store import ChunkedPageStore, PageRecord, StorageError
from .state import CrawlState, LinkStat, BadRequest
from .checkpoint import CheckpointStore, CheckpointError, FileStateBackend, RedisStateBackend

__all__ = [
    'ChunkedPageStore', 'PageRecord', 'StorageError',
    'CrawlState', 'LinkStat', 'BadRequest',
    'CheckpointStore', 'CheckpointError', 'FileStateBackend', 'RedisStateBackend'
]
