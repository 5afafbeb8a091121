"""
Result Cache - TTL cache for per-package lookup results.

A cache hit answers a lookup without touching the remote quota, which
matters most when a paused scan is resumed or the same package appears in
several tasks.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog


DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_MAX_SIZE = 1000


@dataclass
class CacheEntry:
    """A cached value with its bookkeeping"""
    data: Any
    stored_at: float
    ttl: float
    access_count: int = 1
    source: str = "api"

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


class ResultCache:
    """
    In-memory TTL cache with oldest-first eviction.

    Example:
        >>> cache = ResultCache()
        >>> key = ResultCache.create_vulnerability_key("lodash", "4.17.15")
        >>> cache.set(key, vulnerabilities)
        >>> cache.get(key)
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock or time.monotonic
        self._entries: Dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0

        self.logger = structlog.get_logger(__name__)

    @staticmethod
    def create_vulnerability_key(name: str, version: str, no_rejected: bool = True) -> str:
        base_key = f"vuln:{name}@{version}"
        return f"{base_key}:noRejected" if no_rejected else base_key

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            self.misses += 1
            return None

        entry.access_count += 1
        self.hits += 1
        return entry.data

    def set(self, key: str, value: Any, ttl: Optional[float] = None, source: str = "api") -> None:
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_oldest()

        self._entries[key] = CacheEntry(
            data=value,
            stored_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
            source=source,
        )

    def _evict_oldest(self) -> None:
        # Drop the oldest tenth in one go so a full cache is not evicting on every set
        count = max(1, self.max_size // 10)
        oldest = sorted(self._entries.items(), key=lambda item: item[1].stored_at)[:count]
        for key, _ in oldest:
            del self._entries[key]
        self.logger.debug("cache_evicted", evicted=len(oldest))

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict:
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups > 0 else 0.0,
        }
