"""Utility helpers supporting the in-memory analytics cache.

The helpers in this module are intentionally self-contained so they can be
reused by the cache, the cached analysis layer and tests.  Key building and
fingerprinting are pure functions; statistics collection is thread-safe.
"""
from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

_HASH_MASK = 0xFFFFFFFF
_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


# ---------------------------------------------------------------------------
# Cache key building and fingerprinting
# ---------------------------------------------------------------------------


def stable_stringify(value: Any) -> str:
    """Render ``value`` as a string that does not depend on mapping order."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        keys = sorted(value.keys(), key=str)
        return "{" + ",".join(f"{key}:{stable_stringify(value[key])}" for key in keys) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(stable_stringify(item) for item in value) + "]"
    if isinstance(value, (set, frozenset)):
        return "[" + ",".join(sorted(stable_stringify(item) for item in value)) + "]"
    if hasattr(value, "model_dump"):
        return stable_stringify(value.model_dump())
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return stable_stringify(dataclasses.asdict(value))
    if hasattr(value, "__dict__"):
        return stable_stringify(vars(value))
    return str(value)


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


class CacheKeyBuilder:
    """Generate deterministic cache keys and content fingerprints."""

    @staticmethod
    def create_key(prefix: str, params: Optional[Mapping[str, Any]] = None) -> str:
        """Return ``prefix`` joined with the parameters serialised in sorted key order.

        Two parameter mappings holding the same items always produce the same
        key regardless of their insertion order.
        """
        params = params or {}
        parts = [
            f"{key}:{json.dumps(params[key], sort_keys=True, default=str, separators=(',', ':'))}"
            for key in sorted(params.keys(), key=str)
        ]
        return f"{prefix}:{':'.join(parts)}"

    @staticmethod
    def fingerprint(data: Any) -> str:
        """Return a short structural hash of ``data``.

        The payload is stringified with sorted keys and folded into a 32-bit
        rolling hash, rendered in base 36.
        """
        source = stable_stringify(data)
        value = 0
        for char in source:
            value = (value * 31 + ord(char)) & _HASH_MASK
        if value & 0x80000000:
            value -= 1 << 32
        return _to_base36(abs(value))


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


@dataclass
class CacheStatistics:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    invalidations: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
        }


class CacheAnalytics:
    """Collect cache statistics in a threadsafe manner."""

    def __init__(self) -> None:
        self._stats = CacheStatistics()
        self._lock = threading.Lock()

    def record_hit(self) -> None:
        with self._lock:
            self._stats.hits += 1

    def record_miss(self) -> None:
        with self._lock:
            self._stats.misses += 1

    def record_set(self) -> None:
        with self._lock:
            self._stats.sets += 1

    def record_eviction(self) -> None:
        with self._lock:
            self._stats.evictions += 1

    def record_invalidations(self, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self._stats.invalidations += count

    def reset(self) -> None:
        with self._lock:
            self._stats = CacheStatistics()

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return self._stats.to_dict()


# ---------------------------------------------------------------------------
# Maintenance scheduling and validation
# ---------------------------------------------------------------------------


class CacheCleanupScheduler:
    """Track when the next amortised cleanup sweep is due."""

    def __init__(self, interval_seconds: float, *, run_on_start: bool = False) -> None:
        self.interval = max(float(interval_seconds), 0.0)
        self._last_run: Optional[float] = None if run_on_start else time.monotonic()

    def should_run(self, now: Optional[float] = None) -> bool:
        if self._last_run is None:
            return True
        current = time.monotonic() if now is None else now
        return current - self._last_run >= self.interval

    def mark_ran(self, now: Optional[float] = None) -> None:
        self._last_run = time.monotonic() if now is None else now


class CacheConfigValidator:
    """Validate cache configuration values."""

    @staticmethod
    def validate(config: Mapping[str, Any]) -> None:
        max_size = config.get("max_size")
        if max_size is not None and (isinstance(max_size, bool) or not isinstance(max_size, int) or max_size <= 0):
            raise ValueError("Cache configuration field 'max_size' must be a positive integer")

        for field in ("ttl_seconds", "cleanup_interval_seconds"):
            value = config.get(field)
            if value is None:
                continue
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
                continue
            raise ValueError(f"Cache configuration field '{field}' must be a non-negative number")


__all__ = [
    "CacheAnalytics",
    "CacheCleanupScheduler",
    "CacheConfigValidator",
    "CacheKeyBuilder",
    "CacheStatistics",
    "stable_stringify",
]
