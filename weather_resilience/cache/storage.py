"""Named cache buckets with optional on-disk persistence."""

import base64
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from weather_resilience.network.fetch_helper import FetchResponse


logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A stored response and when it was written."""
    key: str
    response: FetchResponse
    stored_at: float

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary (body base64 encoded)."""
        return {
            'key': self.key,
            'stored_at': self.stored_at,
            'status': self.response.status,
            'status_text': self.response.status_text,
            'headers': dict(self.response.headers),
            'url': self.response.url,
            'timestamp': self.response.timestamp,
            'body': base64.b64encode(self.response.body).decode('ascii'),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CacheEntry':
        """Create from dictionary."""
        response = FetchResponse(
            status=int(data['status']),
            headers=dict(data.get('headers') or {}),
            body=base64.b64decode(data.get('body') or ''),
            url=data.get('url', ''),
            timestamp=float(data['timestamp']),
            status_text=data.get('status_text', ''),
        )
        return cls(key=data['key'], response=response, stored_at=float(data.get('stored_at', 0)))


class CacheBucket:
    """
    One named cache, keyed by request URL.

    Writes are last-write-wins. When a file path is given, the bucket is
    rewritten to disk after every change.
    """

    def __init__(self, name: str, path: Optional[Path] = None, clock=time.time):
        self.name = name
        self.path = path
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.last_updated: Optional[float] = None

    def match(self, key: str) -> Optional[FetchResponse]:
        """Get a copy of the stored response for a key, or None."""
        with self._lock:
            entry = self._entries.get(key)
            return replace(entry.response, headers=dict(entry.response.headers)) if entry else None

    def put(self, key: str, response: FetchResponse) -> None:
        with self._lock:
            stored = replace(response, headers=dict(response.headers))
            self._entries[key] = CacheEntry(key=key, response=stored, stored_at=self.clock())
            self.last_updated = self.clock()
            self._save()
        logger.debug(f"Cached {key} in {self.name}")

    def delete(self, key: str) -> bool:
        with self._lock:
            if self._entries.pop(key, None) is None:
                return False
            self.last_updated = self.clock()
            self._save()
            return True

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def load(self) -> None:
        """Load entries from the bucket file, skipping unreadable entries."""
        if self.path is None or not self.path.exists():
            return

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load cache bucket {self.path}: {type(e).__name__}: {e}")
            return

        loaded = 0
        for raw in data.get('entries', []) if isinstance(data, dict) else []:
            try:
                entry = CacheEntry.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid entry in cache bucket {self.name}: {e}")
                continue
            self._entries[entry.key] = entry
            loaded += 1

        self.last_updated = data.get('last_updated') if isinstance(data, dict) else None
        logger.info(f"Loaded {loaded} entr{'y' if loaded == 1 else 'ies'} into cache bucket {self.name}")

    def _save(self) -> None:
        """Write the bucket file. Caller holds the lock."""
        if self.path is None:
            return

        data = {
            'name': self.name,
            'last_updated': self.last_updated,
            'entries': [entry.to_dict() for entry in self._entries.values()],
        }
        tmp_file = self.path.with_suffix(self.path.suffix + '.tmp')
        try:
            with open(tmp_file, 'w') as f:
                json.dump(data, f)
            os.replace(tmp_file, self.path)
        except OSError as e:
            logger.error(f"Error saving cache bucket {self.path}: {type(e).__name__}: {e}")


class CacheStorage:
    """Registry of named buckets, optionally persisted as one JSON file per bucket."""

    def __init__(self, storage_dir: Optional[str] = None, clock=time.time):
        """
        Initialize cache storage.

        Args:
            storage_dir: Directory for bucket files (memory only if None)
            clock: Source of epoch seconds
        """
        self.storage_dir = Path(storage_dir) if storage_dir else None
        self.clock = clock
        self._buckets: Dict[str, CacheBucket] = {}
        self._lock = threading.Lock()

        if self.storage_dir is not None:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            self._load_buckets()

    def _bucket_path(self, name: str) -> Optional[Path]:
        if self.storage_dir is None:
            return None
        return self.storage_dir / f"{name}.json"

    def _load_buckets(self) -> None:
        for path in sorted(self.storage_dir.glob('*.json')):
            bucket = CacheBucket(path.stem, path, self.clock)
            bucket.load()
            self._buckets[bucket.name] = bucket

    def open(self, name: str) -> CacheBucket:
        """Get a bucket by name, creating it if needed."""
        with self._lock:
            bucket = self._buckets.get(name)
            if bucket is None:
                bucket = CacheBucket(name, self._bucket_path(name), self.clock)
                self._buckets[name] = bucket
            return bucket

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._buckets

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._buckets)

    def delete(self, name: str) -> bool:
        """
        Delete a bucket and its file.

        Returns:
            True if the bucket existed
        """
        with self._lock:
            bucket = self._buckets.pop(name, None)
        if bucket is None:
            return False

        if bucket.path is not None and bucket.path.exists():
            try:
                bucket.path.unlink()
            except OSError as e:
                logger.error(f"Failed to remove cache file {bucket.path}: {e}")
        return True
