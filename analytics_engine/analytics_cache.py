"""Tagged, versioned TTL/LRU cache for analytics results.

This module introduces :class:`AnalyticsCache`, an in-process key/value store
with sliding time-to-live expiry, least-recently-used eviction, a secondary
tag index for bulk invalidation and a global version counter that invalidates
every entry in O(1).  Expired or stale entries are purged lazily on access and
swept in bulk by :meth:`AnalyticsCache.cleanup`.
"""
from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Pattern, Set, Union

from .utils.cache_utils import (
    CacheAnalytics,
    CacheCleanupScheduler,
    CacheConfigValidator,
    CacheKeyBuilder,
)
from .utils.logging_config import log_cache_event

logger = logging.getLogger(__name__)


def _now_monotonic() -> float:
    """Module-level function for monotonic time that tests can patch."""
    return time.monotonic()


@dataclass
class CacheEntry:
    value: Any
    written_at: float
    last_accessed_at: float
    hit_count: int = 0
    tags: FrozenSet[str] = field(default_factory=frozenset)
    version_stamp: int = 0
    ttl: Optional[float] = None


class AnalyticsCache:
    """Manage cached analytics values with tag and version bookkeeping.

    An entry is logically present only while ``now - last_accessed_at < ttl``
    and its version stamp equals the cache's current version.  All public
    operations run under a re-entrant lock and never suspend, so the cache is
    safe to share between coroutines as well as threads.
    """

    def __init__(
        self,
        max_size: int = 50,
        ttl_seconds: float = 600.0,
        *,
        enable_statistics: bool = True,
        cleanup_interval_seconds: float = 300.0,
    ) -> None:
        CacheConfigValidator.validate(
            {
                "max_size": max_size,
                "ttl_seconds": ttl_seconds,
                "cleanup_interval_seconds": cleanup_interval_seconds,
            }
        )
        self.max_size = int(max_size)
        self.ttl_seconds = float(ttl_seconds)
        self.enable_statistics = enable_statistics

        self._entries: Dict[str, CacheEntry] = {}
        self._tag_index: Dict[str, Set[str]] = {}
        self._current_version = 0
        self._lock = threading.RLock()

        self.analytics = CacheAnalytics()
        self.cleanup_scheduler = CacheCleanupScheduler(cleanup_interval_seconds)
        self.cleanup_scheduler.mark_ran(_now_monotonic())

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_config(cls, settings: Any) -> "AnalyticsCache":
        """Create a cache from a ``CacheSettings`` section."""
        return cls(
            max_size=settings.max_size,
            ttl_seconds=settings.ttl_seconds,
            cleanup_interval_seconds=settings.cleanup_interval_seconds,
        )

    def configure(
        self,
        *,
        max_size: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        cleanup_interval_seconds: Optional[float] = None,
    ) -> int:
        """Apply new limits to a live cache; returns how many entries were evicted.

        Shrinking ``max_size`` evicts least recently used entries until the
        cache fits again.
        """
        CacheConfigValidator.validate(
            {
                "max_size": max_size,
                "ttl_seconds": ttl_seconds,
                "cleanup_interval_seconds": cleanup_interval_seconds,
            }
        )
        evicted = 0
        with self._lock:
            if ttl_seconds is not None:
                self.ttl_seconds = float(ttl_seconds)
            if cleanup_interval_seconds is not None:
                self.cleanup_scheduler.interval = float(cleanup_interval_seconds)
            if max_size is not None:
                self.max_size = int(max_size)
                while len(self._entries) > self.max_size:
                    self._evict_lru()
                    evicted += 1
        if evicted:
            logger.info("Cache resized to %s entries; evicted %s", self.max_size, evicted)
        return evicted

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def current_version(self) -> int:
        return self._current_version

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value for ``key`` or ``default`` on a miss."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._record_miss()
                return default

            now = _now_monotonic()
            if not self._is_fresh(entry, now):
                logger.debug("Cache entry for %s expired or stale; purging.", key)
                self._remove(key)
                self._record_miss()
                return default

            entry.last_accessed_at = max(now, entry.written_at)
            entry.hit_count += 1
            self._record_hit()
            return entry.value

    def peek(self, key: str, default: Any = None) -> Any:
        """Return a fresh value without touching recency or statistics."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not self._is_fresh(entry, _now_monotonic()):
                return default
            return entry.value

    def set(
        self,
        key: str,
        value: Any,
        tags: Iterable[str] = (),
        *,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        """Insert or replace ``key``, evicting the least recently used entry at capacity."""
        if ttl_seconds is not None and ttl_seconds < 0:
            raise ValueError("ttl_seconds must be non-negative")
        with self._lock:
            existing = key in self._entries
            if not existing and len(self._entries) >= self.max_size:
                self._evict_lru()
            if existing:
                self._remove(key)

            now = _now_monotonic()
            entry_tags = frozenset(tags)
            self._entries[key] = CacheEntry(
                value=value,
                written_at=now,
                last_accessed_at=now,
                tags=entry_tags,
                version_stamp=self._current_version,
                ttl=ttl_seconds,
            )
            for tag in entry_tags:
                self._tag_index.setdefault(tag, set()).add(key)
            self._record_set()

    def has(self, key: str) -> bool:
        """Return whether ``key`` is logically present.

        Stale entries are purged so presence agrees with :meth:`get`, but
        recency and hit/miss counters are left untouched.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if not self._is_fresh(entry, _now_monotonic()):
                self._remove(key)
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            return True

    def invalidate_by_tag(self, tag: str) -> int:
        """Remove every entry carrying ``tag`` and drop the tag from the index."""
        with self._lock:
            keys = self._tag_index.pop(tag, set())
            count = 0
            for key in list(keys):
                if key in self._entries:
                    self._remove(key)
                    count += 1
            self._record_invalidations(count)
            if count:
                log_cache_event(logger, "invalidate_tag", tag, f"removed={count}")
            return count

    def invalidate_by_pattern(self, pattern: Union[str, Pattern[str]]) -> int:
        """Remove every entry whose key matches ``pattern`` (``re.search`` semantics)."""
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        with self._lock:
            matched = [key for key in self._entries if regex.search(key)]
            for key in matched:
                self._remove(key)
            self._record_invalidations(len(matched))
            if matched:
                log_cache_event(logger, "invalidate_pattern", regex.pattern, f"removed={len(matched)}")
            return len(matched)

    def invalidate_version(self) -> int:
        """Lazily invalidate every current entry by advancing the global version."""
        with self._lock:
            self._current_version += 1
            log_cache_event(logger, "invalidate_version", "*", f"version={self._current_version}")
            return self._current_version

    def cleanup(self) -> int:
        """Remove entries that are expired by TTL or stale by version."""
        with self._lock:
            now = _now_monotonic()
            stale = [key for key, entry in self._entries.items() if not self._is_fresh(entry, now)]
            for key in stale:
                self._remove(key)
            self.cleanup_scheduler.mark_ran(now)
        if stale:
            logger.info("Removed %s expired cache entries", len(stale))
        return len(stale)

    def maybe_cleanup(self) -> int:
        """Run :meth:`cleanup` if the configured interval has elapsed."""
        if not self.cleanup_scheduler.should_run(_now_monotonic()):
            return 0
        return self.cleanup()

    def clear(self) -> None:
        """Drop all entries and reset statistics; the version counter is kept."""
        with self._lock:
            self._entries.clear()
            self._tag_index.clear()
            self.analytics.reset()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def tags_for(self, key: str) -> FrozenSet[str]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.tags if entry else frozenset()

    def keys_for_tag(self, tag: str) -> Set[str]:
        with self._lock:
            return set(self._tag_index.get(tag, set()))

    @staticmethod
    def create_key(prefix: str, params: Optional[Mapping[str, Any]] = None) -> str:
        return CacheKeyBuilder.create_key(prefix, params)

    @staticmethod
    def get_data_fingerprint(data: Any) -> str:
        return CacheKeyBuilder.fingerprint(data)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            snapshot: Dict[str, Any] = dict(self.analytics.snapshot())
            lookups = snapshot["hits"] + snapshot["misses"]
            snapshot["hit_rate"] = snapshot["hits"] / lookups if lookups else 0.0
            snapshot["size"] = len(self._entries)
            snapshot["approx_memory_bytes"] = self._approximate_memory()
            snapshot["version"] = self._current_version
            return snapshot

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _is_fresh(self, entry: CacheEntry, now: float) -> bool:
        if entry.version_stamp != self._current_version:
            return False
        ttl = self.ttl_seconds if entry.ttl is None else entry.ttl
        return now - entry.last_accessed_at < ttl

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tag_index[tag]

    def _evict_lru(self) -> None:
        if not self._entries:
            return
        # min() keeps the first minimum it sees, so ties fall back to insertion order.
        lru_key = min(self._entries, key=lambda k: self._entries[k].last_accessed_at)
        self._remove(lru_key)
        self._record_eviction()
        log_cache_event(logger, "evict", lru_key)

    def _approximate_memory(self) -> int:
        total = 0
        for key, entry in self._entries.items():
            try:
                payload = json.dumps(entry.value, default=str)
            except (TypeError, ValueError):
                payload = repr(entry.value)
            total += (len(key) + len(payload)) * 2
        return total

    # ------------------------------------------------------------------
    # Analytics helpers
    # ------------------------------------------------------------------

    def _record_hit(self) -> None:
        if self.enable_statistics:
            self.analytics.record_hit()

    def _record_miss(self) -> None:
        if self.enable_statistics:
            self.analytics.record_miss()

    def _record_set(self) -> None:
        if self.enable_statistics:
            self.analytics.record_set()

    def _record_eviction(self) -> None:
        if self.enable_statistics:
            self.analytics.record_eviction()

    def _record_invalidations(self, count: int) -> None:
        if self.enable_statistics:
            self.analytics.record_invalidations(count)


__all__ = [
    "AnalyticsCache",
    "CacheEntry",
]
