"""
Checkpointing of the full crawl state.
Supports both file-based and Redis storage.
"""

import asyncio
import gzip
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .page_store import ChunkedPageStore, StorageError
from .state import CrawlState
from ..utils.config import RedisConfig

GZIP_MAGIC = b'\x1f\x8b'


class CheckpointError(StorageError):
    """Raised when a checkpoint cannot be written or read."""
    pass


class StateBackend:
    """Abstract base class for checkpoint backends."""

    async def save(self, data: Dict[str, Any]) -> int:
        """Persist a serialized state. Returns bytes written."""
        raise NotImplementedError

    async def load(self) -> Optional[Dict[str, Any]]:
        """Return the last saved state, or None if there is none."""
        raise NotImplementedError

    async def clear(self):
        """Remove any saved state."""
        raise NotImplementedError

    async def close(self):
        """Close backend connections."""
        pass


def _encode(data: Dict[str, Any], compression_threshold: int) -> bytes:
    try:
        payload = json.dumps(data, ensure_ascii=False).encode('utf-8')
    except (TypeError, ValueError) as e:
        raise CheckpointError(f"Crawl state is not serializable: {e}")
    if compression_threshold and len(payload) > compression_threshold:
        return gzip.compress(payload)
    return payload


def _decode(payload: bytes, origin: str) -> Dict[str, Any]:
    try:
        if payload[:2] == GZIP_MAGIC:
            payload = gzip.decompress(payload)
        return json.loads(payload.decode('utf-8'))
    except (OSError, EOFError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CheckpointError(f"Corrupt checkpoint in {origin}: {e}")


class FileStateBackend(StateBackend):
    """Writes the state as JSON, gzip-compressed once it passes a size threshold."""

    def __init__(self, output_dir: str, state_file: str = 'crawl-state.json',
                 compression_threshold: int = 10 * 1024):
        self.output_dir = Path(output_dir)
        self.path = self.output_dir / state_file
        self.gz_path = self.output_dir / f"{state_file}.gz"
        self.compression_threshold = compression_threshold
        self.logger = logging.getLogger(__name__)

    async def save(self, data: Dict[str, Any]) -> int:
        payload = _encode(data, self.compression_threshold)
        target, stale = (self.gz_path, self.path) if payload[:2] == GZIP_MAGIC else (self.path, self.gz_path)
        tmp_path = target.with_name(target.name + '.tmp')

        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'wb') as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, target)
            if stale.exists():
                stale.unlink()
        except OSError as e:
            raise CheckpointError(f"Failed to write checkpoint {target}: {e}")

        self.logger.debug(f"Checkpoint written to {target} ({len(payload)} bytes)")
        return len(payload)

    async def load(self) -> Optional[Dict[str, Any]]:
        for path in (self.gz_path, self.path):
            if not path.exists():
                continue
            try:
                with open(path, 'rb') as f:
                    payload = f.read()
            except OSError as e:
                raise CheckpointError(f"Failed to read checkpoint {path}: {e}")
            return _decode(payload, str(path))
        return None

    async def clear(self):
        for path in (self.gz_path, self.path):
            try:
                if path.exists():
                    path.unlink()
            except OSError as e:
                raise CheckpointError(f"Failed to remove checkpoint {path}: {e}")


class RedisStateBackend(StateBackend):
    """Stores the state under ``<key_prefix>:checkpoint:<domain>``."""

    def __init__(self, redis_client: redis.Redis, domain: str, key_prefix: str = 'site_audit',
                 compression_threshold: int = 10 * 1024):
        self.redis_client = redis_client
        self.key = f"{key_prefix}:checkpoint:{domain}"
        self.compression_threshold = compression_threshold
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: RedisConfig, domain: str,
                    compression_threshold: int = 10 * 1024) -> 'RedisStateBackend':
        client = redis.Redis(
            host=config.host,
            port=config.port,
            db=config.db,
            password=config.password,
            decode_responses=False
        )
        return cls(client, domain, config.key_prefix, compression_threshold)

    async def ping(self):
        """Check the connection."""
        try:
            await self.redis_client.ping()
        except (RedisError, OSError) as e:
            raise CheckpointError(f"Redis is not reachable: {e}")

    async def save(self, data: Dict[str, Any]) -> int:
        payload = _encode(data, self.compression_threshold)
        try:
            await self.redis_client.set(self.key, payload)
        except (RedisError, OSError) as e:
            raise CheckpointError(f"Failed to write checkpoint to Redis key {self.key}: {e}")
        self.logger.debug(f"Checkpoint written to Redis key {self.key} ({len(payload)} bytes)")
        return len(payload)

    async def load(self) -> Optional[Dict[str, Any]]:
        try:
            payload = await self.redis_client.get(self.key)
        except (RedisError, OSError) as e:
            raise CheckpointError(f"Failed to read checkpoint from Redis key {self.key}: {e}")
        if payload is None:
            return None
        if isinstance(payload, str):
            payload = payload.encode('utf-8')
        return _decode(payload, f"Redis key {self.key}")

    async def clear(self):
        try:
            await self.redis_client.delete(self.key)
        except (RedisError, OSError) as e:
            raise CheckpointError(f"Failed to delete Redis key {self.key}: {e}")

    async def close(self):
        await self.redis_client.aclose()


class CheckpointStore:
    """
    Writes crawl state snapshots and restores them on resume.

    The page store's working chunk is persisted with every snapshot so that
    records not yet spilled are not lost in a crash.
    """

    def __init__(self, backend: StateBackend, page_store: ChunkedPageStore, monitor=None):
        self.backend = backend
        self.page_store = page_store
        self.monitor = monitor
        self.logger = logging.getLogger(__name__)
        self.checkpoints_written = 0
        self._lock = asyncio.Lock()

    async def save(self, state: CrawlState, frontier, checker=None) -> Dict[str, Any]:
        """
        Snapshot ``state`` together with the frontier partition and pending
        external checks.

        Raises:
            CheckpointError: if the snapshot could not be persisted
        """
        async with self._lock:
            try:
                self.page_store.persist_working()
            except StorageError as e:
                raise CheckpointError(f"Failed to persist working page data: {e}")

            data = state.to_dict(
                frontier=frontier.snapshot(),
                pending_external=checker.pending_pairs() if checker else [],
                page_store=self.page_store.manifest()
            )
            size = await self.backend.save(data)

            self.checkpoints_written += 1
            if self.monitor:
                self.monitor.record_checkpoint()
            self.logger.info(f"Checkpoint saved: {data['processed_count']} processed, "
                             f"{len(data['frontier'])} queued, {size / 1024:.1f} KB")
            return data

    async def load(self) -> Optional[CrawlState]:
        """
        Load the last checkpoint and migrate its page records into the page store.
        Returns None if there is no checkpoint.
        """
        data = await self.backend.load()
        if data is None:
            return None

        try:
            state = CrawlState.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CheckpointError(f"Invalid checkpoint: {e}")

        self.page_store.restore(state.page_store_manifest, state.legacy_page_data)
        state.legacy_page_data = {}
        return state

    async def clear(self):
        """Discard the checkpoint and all stored page records."""
        await self.backend.clear()
        self.page_store.reset()
        self.logger.info("Previous checkpoint cleared")

    async def close(self):
        await self.backend.close()
