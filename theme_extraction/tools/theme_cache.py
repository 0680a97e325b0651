"""
In-memory theme cache: content-fingerprint keys, LRU eviction, TTL expiry.

Shared across concurrent runs, so every read and write happens under a
threading.Lock. A get() both checks expiry (an expired entry is evicted and
reported as a miss) and refreshes recency. A set() beyond max_entries evicts
exactly the least-recently-used entry.

Cache failures are never fatal: the cache raises CacheError and the pipeline
logs it and carries on uncached.

Key = sha256 of canonical JSON over (sorted source ids, purpose, options that
change the result). Same inputs in any order → same key.
"""

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..errors import CacheError
from ..schemas.themes import CacheEntry, Theme

logger = logging.getLogger(__name__)


def fingerprint(source_ids: Sequence[str], purpose: str, options: Optional[Dict[str, Any]] = None) -> str:
    """Deterministic cache key for a run's inputs."""
    payload = {
        "source_ids": sorted(source_ids),
        "purpose": str(getattr(purpose, "value", purpose)),
        "options": options or {},
    }
    try:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError) as e:
        raise CacheError("fingerprint", str(e)) from e
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def content_fingerprint(texts: Sequence[str]) -> str:
    """Digest of source texts, for keys that must change when content changes."""
    digest = hashlib.sha256()
    for text in texts:
        digest.update(hashlib.sha256((text or "").encode("utf-8")).digest())
    return digest.hexdigest()


class ThemeCache:
    """Bounded LRU + TTL cache of Theme lists."""

    def __init__(
        self,
        max_entries: int = 100,
        default_ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def get(self, key: str) -> Optional[List[Theme]]:
        """Cached themes for `key`, or None on miss/expiry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                logger.debug(f"Cache expired: {key[:12]}")
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return list(entry.data)

    def set(self, key: str, data: Sequence[Theme], ttl: Optional[float] = None) -> None:
        """Insert or replace `key`; evicts the LRU entry on overflow."""
        try:
            entry = CacheEntry(
                key=key,
                data=list(data),
                timestamp=self._clock(),
                ttl=self.default_ttl if ttl is None else ttl,
            )
        except Exception as e:
            raise CacheError("set", f"{type(e).__name__}: {e}") from e
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            self._entries[key] = entry
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"Cache evicted LRU entry: {evicted[:12]}")

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> List[str]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "expirations": self._expirations,
            }
