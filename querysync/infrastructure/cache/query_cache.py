#!/usr/bin/env python3
"""
TTL Query Cache

Architecture:
    QueryCache (Public API)
        ├── CacheEntry (key, data, timestamp, ttl)
        ├── entry map (dict, insertion ordered)
        └── CacheObserver (hit/miss counters, logging, metrics)

Validity:
    An entry is valid iff  now - timestamp <= ttl  (epoch milliseconds).
    get() checks this inline and evicts expired entries on the spot, so no
    background timer is needed for correctness.

Bound:
    Once set() pushes the map above max_entries, expired entries are swept
    first, then the oldest-by-timestamp entries until the bound holds.

Concurrency:
    All mutations are synchronous. Under a single asyncio event loop they are
    atomic with respect to other coroutines, so the cache takes no lock;
    ordering of continuations is controlled by the callers (cancellation in
    the optimistic manager, coalescing in the executor).

Misses and expiry are not errors: the cache itself never raises.

Author: System Architect
Date: 2026-03-02
"""

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from querysync.core.config.constants import Stage
from querysync.core.logging.logger import get_logger, log_stage
from querysync.infrastructure.cache.key_builder import KeyPattern

logger = get_logger(__name__)


def _wall_clock_ms() -> float:
    return time.time() * 1000


# =============================================================================
# LAYER 1: STORAGE UNIT
# =============================================================================


@dataclass
class CacheEntry:
    """
    One cached value.

    Attributes:
        key: Canonical cache key
        data: Cached payload (typically a QueryResult)
        timestamp: Epoch milliseconds when the value was written
        ttl: Time-to-live in milliseconds
    """

    key: str
    data: Any
    timestamp: float
    ttl: float

    def age(self, now: float) -> float:
        return now - self.timestamp

    def is_valid(self, now: float) -> bool:
        return now - self.timestamp <= self.ttl

    def is_stale(self, now: float, stale_time_ms: float) -> bool:
        """Older than ``stale_time_ms`` (still displayable while valid)."""
        return now - self.timestamp > stale_time_ms

    def to_dict(self, now: float | None = None) -> dict[str, Any]:
        info = {"key": self.key, "timestamp": self.timestamp, "ttl": self.ttl}
        if now is not None:
            info["age_ms"] = round(self.age(now), 3)
            info["valid"] = self.is_valid(now)
        return info


# =============================================================================
# LAYER 2: OBSERVABILITY
# =============================================================================


class CacheObserver:
    """
    Tracks cache hit/miss/eviction counts and logs operations.

    Keeps side effects out of QueryCache so the storage logic reads plainly.
    """

    def __init__(self, metrics=None):
        self._metrics = metrics
        self.hits = 0
        self.misses = 0
        self.expirations = 0
        self.evictions = 0

    def hit(self, key: str) -> None:
        self.hits += 1
        log_stage(logger, Stage.CACHE_LOOKUP, "Cache hit", level="debug", cache_key=key[:80])
        if self._metrics:
            self._metrics.record_cache_hit()

    def miss(self, key: str, expired: bool = False) -> None:
        self.misses += 1
        if expired:
            self.expirations += 1
        log_stage(logger, Stage.CACHE_LOOKUP, "Cache miss", level="debug", cache_key=key[:80], expired=expired)
        if self._metrics:
            self._metrics.record_cache_miss()
            if expired:
                self._metrics.record_cache_eviction("expired")

    def evicted(self, reason: str, keys: list[str]) -> None:
        if not keys:
            return
        self.evictions += len(keys)
        log_stage(logger, Stage.CACHE_LOOKUP, "Cache entries evicted", level="debug", reason=reason, count=len(keys))
        if self._metrics:
            self._metrics.record_cache_eviction(reason, len(keys))

    def size_changed(self, size: int) -> None:
        if self._metrics:
            self._metrics.set_cache_size(size)

    def get_stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expirations": self.expirations,
            "evictions": self.evictions,
            "hit_rate": round(self.hits / total, 3) if total else 0.0,
        }


# =============================================================================
# LAYER 3: PUBLIC API
# =============================================================================


class QueryCache:
    """
    Process-wide key → CacheEntry map with lazy TTL expiry.

    Usage:
        cache = QueryCache(max_entries=100, default_ttl_ms=300_000)
        cache.set(key, result, ttl_ms=5_000)
        entry = cache.get(key)          # None once expired
        cache.invalidate(KeyPattern.of("users", "org1"))
    """

    def __init__(
        self,
        max_entries: int = 100,
        default_ttl_ms: float = 300_000,
        clock: Callable[[], float] | None = None,
        metrics=None,
    ):
        self.max_entries = max_entries
        self.default_ttl_ms = default_ttl_ms
        self._clock = clock or _wall_clock_ms
        self._entries: dict[str, CacheEntry] = {}
        self._observer = CacheObserver(metrics)

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> CacheEntry | None:
        """
        Valid entry for ``key`` or None.

        An expired entry is removed before reporting the miss.
        """
        entry = self._entries.get(key)
        if entry is None:
            self._observer.miss(key)
            return None
        if not entry.is_valid(self._clock()):
            del self._entries[key]
            self._observer.miss(key, expired=True)
            self._observer.size_changed(len(self._entries))
            return None
        self._observer.hit(key)
        return entry

    def peek(self, key: str) -> CacheEntry | None:
        """Entry for ``key`` without TTL check, eviction or hit accounting."""
        return self._entries.get(key)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.is_valid(self._clock())

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        return list(self._entries)

    def entries(self) -> list[CacheEntry]:
        return list(self._entries.values())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(self, key: str, data: Any, ttl_ms: float | None = None) -> CacheEntry:
        """Store ``data`` under ``key`` stamped with the current time."""
        entry = CacheEntry(
            key=key,
            data=data,
            timestamp=self._clock(),
            ttl=self.default_ttl_ms if ttl_ms is None else ttl_ms,
        )
        self._entries[key] = entry
        if len(self._entries) > self.max_entries:
            self._enforce_bound()
        self._observer.size_changed(len(self._entries))
        return entry

    def restore(self, entry: CacheEntry) -> None:
        """Put back an entry exactly as it was (timestamp and ttl included)."""
        self._entries[entry.key] = entry
        self._observer.size_changed(len(self._entries))

    def _enforce_bound(self) -> None:
        evicted = self.sweep_expired()
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return
        oldest = sorted(self._entries.values(), key=lambda e: e.timestamp)[:overflow]
        for entry in oldest:
            del self._entries[entry.key]
        self._observer.evicted("capacity", [e.key for e in oldest])
        log_stage(
            logger,
            Stage.CACHE_LOOKUP,
            "Cache bound reached",
            level="debug",
            expired=len(evicted),
            evicted=overflow,
            max_entries=self.max_entries,
        )

    def sweep_expired(self) -> list[str]:
        """Remove every expired entry; returns the removed keys."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if not entry.is_valid(now)]
        for key in expired:
            del self._entries[key]
        self._observer.evicted("expired", expired)
        return expired

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def remove(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        if removed:
            self._observer.evicted("invalidated", [key])
            self._observer.size_changed(len(self._entries))
        return removed

    def invalidate(self, target: str | KeyPattern) -> list[str]:
        """
        Evict an exact key or every key matching a pattern.

        Returns the evicted keys.
        """
        if isinstance(target, KeyPattern):
            keys = [key for key in self._entries if target.matches(key)]
        else:
            keys = [target] if target in self._entries else []
        for key in keys:
            del self._entries[key]
        self._observer.evicted("invalidated", keys)
        self._observer.size_changed(len(self._entries))
        return keys

    def invalidate_many(self, targets: Iterable[str | KeyPattern]) -> list[str]:
        evicted: list[str] = []
        for target in targets:
            evicted.extend(self.invalidate(target))
        return evicted

    def evict_older_than(
        self, max_age_ms: float, keep: Callable[[str], bool] | None = None
    ) -> list[str]:
        """Remove entries older than ``max_age_ms`` unless ``keep(key)`` is true."""
        now = self._clock()
        keys = [
            key for key, entry in self._entries.items()
            if entry.age(now) > max_age_ms and not (keep and keep(key))
        ]
        for key in keys:
            del self._entries[key]
        self._observer.evicted("stale", keys)
        self._observer.size_changed(len(self._entries))
        return keys

    def clear(self) -> None:
        keys = list(self._entries)
        self._entries.clear()
        self._observer.evicted("cleared", keys)
        self._observer.size_changed(0)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "keys": list(self._entries),
            "max_entries": self.max_entries,
            "default_ttl_ms": self.default_ttl_ms,
            **self._observer.get_stats(),
        }
