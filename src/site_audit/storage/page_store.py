"""
Chunked, memory-bounded store for page records.

Records accumulate in an in-memory working chunk. Once the chunk reaches
``chunk_max_records`` records or ``chunk_max_bytes`` of serialized JSON it is
spilled to ``page-data/chunk-NNNNN.jsonl.gz`` and recorded in the manifest,
together with a url -> chunk id index used for lookups.
"""

import gzip
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple


class StorageError(Exception):
    """Raised when page data cannot be written or read back."""
    pass


@dataclass(frozen=True)
class PageRecord:
    """One processed page. Never modified after it is stored."""
    url: str
    status_code: int
    response_time_ms: float
    size: int
    headers: Dict[str, str] = field(default_factory=dict)
    analysis: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    truncated: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'url': self.url,
            'status_code': self.status_code,
            'response_time_ms': self.response_time_ms,
            'size': self.size,
            'headers': self.headers,
            'analysis': self.analysis,
            'timestamp': self.timestamp,
            'truncated': self.truncated
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PageRecord':
        """Create PageRecord from dictionary."""
        return cls(
            url=data['url'],
            status_code=data.get('status_code', data.get('statusCode', 0)),
            response_time_ms=data.get('response_time_ms', data.get('responseTime', 0.0)),
            size=data.get('size', 0),
            headers=data.get('headers') or {},
            analysis=data.get('analysis') or {},
            timestamp=data.get('timestamp') or datetime.now(timezone.utc).isoformat(),
            truncated=data.get('truncated', False)
        )


class ChunkedPageStore:
    """
    Arena of page records: one working chunk in memory, spilled chunks on disk.
    """

    CHUNK_DIR = 'page-data'
    WORKING_FILE = 'working.jsonl.gz'

    def __init__(self, directory: str, chunk_max_records: int = 100,
                 chunk_max_bytes: int = 8 * 1024 * 1024):
        self.directory = Path(directory) / self.CHUNK_DIR
        self.chunk_max_records = chunk_max_records
        self.chunk_max_bytes = chunk_max_bytes
        self.logger = logging.getLogger(__name__)

        self.chunks: List[Dict[str, Any]] = []
        self.index: Dict[str, int] = {}
        self.working: Dict[str, PageRecord] = {}
        self.working_bytes = 0

        # Most recently decoded spilled chunk
        self._cache: Optional[Tuple[int, Dict[str, PageRecord]]] = None

    def __len__(self) -> int:
        return len(self.index) + len(self.working)

    def __contains__(self, url: str) -> bool:
        return url in self.working or url in self.index

    def __iter__(self) -> Iterator[PageRecord]:
        for chunk in self.chunks:
            yield from self._load_chunk(chunk['id']).values()
        yield from list(self.working.values())

    def put(self, record: PageRecord) -> bool:
        """
        Store a record.
        Returns False, leaving the store unchanged, if the URL already has one.
        """
        if record.url in self:
            self.logger.debug(f"Page record already stored, ignoring: {record.url}")
            return False

        self.working[record.url] = record
        self.working_bytes += len(json.dumps(record.to_dict(), ensure_ascii=False).encode('utf-8'))

        if len(self.working) >= self.chunk_max_records or self.working_bytes >= self.chunk_max_bytes:
            self.spill()
        return True

    def get(self, url: str) -> Optional[PageRecord]:
        """Get a record by URL from the working chunk or a spilled chunk."""
        if url in self.working:
            return self.working[url]
        chunk_id = self.index.get(url)
        if chunk_id is None:
            return None
        return self._load_chunk(chunk_id).get(url)

    def spill(self):
        """Write the working chunk to disk and start a new one."""
        if not self.working:
            return

        chunk_id = len(self.chunks)
        file_name = f"chunk-{chunk_id:05d}.jsonl.gz"
        size = self._write_records(self.directory / file_name, self.working.values())

        self.chunks.append({
            'id': chunk_id,
            'file': file_name,
            'records': len(self.working),
            'bytes': size
        })
        for url in self.working:
            self.index[url] = chunk_id

        self.logger.debug(f"Spilled {len(self.working)} page records to {file_name} ({size} bytes)")
        self.working = {}
        self.working_bytes = 0

    def persist_working(self):
        """Write the unspilled records so they survive a crash."""
        self._write_records(self.directory / self.WORKING_FILE, self.working.values())

    def manifest(self) -> Dict[str, Any]:
        """Manifest describing where every stored record lives."""
        return {
            'chunks': [dict(chunk) for chunk in self.chunks],
            'index': dict(self.index),
            'working_file': self.WORKING_FILE,
            'working_records': len(self.working)
        }

    def restore(self, manifest: Optional[Dict[str, Any]] = None,
                legacy_page_data: Optional[Dict[str, Any]] = None) -> int:
        """
        Rebuild the store from a checkpoint manifest.

        Records from the working file, and any inline ``page_data`` mapping
        written by older checkpoints, are migrated into the arena.

        Returns:
            Number of records migrated into the working chunk
        """
        self.chunks = []
        self.index = {}
        self.working = {}
        self.working_bytes = 0
        self._cache = None
        migrated = 0

        if manifest:
            for chunk in manifest.get('chunks', []):
                if not (self.directory / chunk['file']).exists():
                    raise StorageError(f"Page data chunk missing: {self.directory / chunk['file']}")
                self.chunks.append(dict(chunk))
            self.index = {url: int(chunk_id) for url, chunk_id in manifest.get('index', {}).items()}

            working_path = self.directory / manifest.get('working_file', self.WORKING_FILE)
            if working_path.exists():
                for data in self._read_lines(working_path):
                    if self.put(PageRecord.from_dict(data)):
                        migrated += 1

        for url, data in (legacy_page_data or {}).items():
            data = dict(data)
            data.setdefault('url', url)
            if self.put(PageRecord.from_dict(data)):
                migrated += 1

        if migrated or self.chunks:
            self.logger.info(f"Restored page store: {len(self.chunks)} chunks, "
                             f"{migrated} records migrated into working set")
        return migrated

    def reset(self):
        """Drop all records and delete chunk files from disk."""
        if self.directory.exists():
            for path in self.directory.glob('*.jsonl.gz'):
                try:
                    path.unlink()
                except OSError as e:
                    raise StorageError(f"Could not remove {path}: {e}")
        self.chunks = []
        self.index = {}
        self.working = {}
        self.working_bytes = 0
        self._cache = None

    def get_stats(self) -> Dict[str, int]:
        """Get storage statistics."""
        return {
            'total_records': len(self),
            'spilled_chunks': len(self.chunks),
            'working_records': len(self.working),
            'working_bytes': self.working_bytes,
            'spilled_bytes': sum(chunk['bytes'] for chunk in self.chunks)
        }

    def _load_chunk(self, chunk_id: int) -> Dict[str, PageRecord]:
        if self._cache and self._cache[0] == chunk_id:
            return self._cache[1]

        path = self.directory / self.chunks[chunk_id]['file']
        records = {}
        for data in self._read_lines(path):
            records[data['url']] = PageRecord.from_dict(data)

        self._cache = (chunk_id, records)
        return records

    def _write_records(self, path: Path, records) -> int:
        tmp_path = path.with_name(path.name + '.tmp')
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with gzip.open(tmp_path, 'wt', encoding='utf-8') as f:
                for record in records:
                    f.write(json.dumps(record.to_dict(), ensure_ascii=False))
                    f.write('\n')
            os.replace(tmp_path, path)
            return path.stat().st_size
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write page data to {path}: {e}")

    def _read_lines(self, path: Path) -> Iterator[dict]:
        try:
            with gzip.open(path, 'rt', encoding='utf-8') as f:
                lines = f.readlines()
        except (OSError, EOFError) as e:
            raise StorageError(f"Failed to read page data from {path}: {e}")

        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                raise StorageError(f"Corrupt page data in {path}: {e}")
