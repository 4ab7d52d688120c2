"""
Stale-While-Revalidate Controller

Serves cached data immediately and refreshes it in the background once it
is older than its stale time.

    fresh hit   → cached value
    stale hit   → cached value marked is_stale, revalidation scheduled
    miss        → fetched through the executor

Revalidations are debounced: every stale detection inside the window
restarts the timer and adds its key to the pending set, so a burst of reads
produces a single refetch. When the timer fires only keys that still have an
active observer and are still stale (or were evicted meanwhile) are fetched.
A failed revalidation leaves the stale value in place.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from querysync.core.config.constants import CachePreset, Stage
from querysync.core.config.settings import Settings, get_settings
from querysync.core.logging.logger import get_logger, log_stage
from querysync.infrastructure.cache.query_cache import QueryCache
from querysync.infrastructure.data_service.models import QueryDescriptor, QueryResult

logger = get_logger(__name__)


@dataclass
class SWRResult:
    key: str
    result: QueryResult
    is_stale: bool = False
    from_cache: bool = False
    age_ms: float | None = None

    @property
    def data(self) -> Any:
        return self.result.data

    @property
    def error(self) -> BaseException | None:
        return self.result.error

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "is_stale": self.is_stale,
            "from_cache": self.from_cache,
            "age_ms": self.age_ms,
            **self.result.to_dict(),
        }


@dataclass
class _PendingRevalidation:
    descriptor: QueryDescriptor
    stale_time_ms: float
    ttl_ms: float | None


class StaleWhileRevalidateController:
    """
    Usage:
        release = swr.observe(descriptor)
        view = await swr.read(descriptor, stale_time_ms=60_000)
        render(view.data, stale=view.is_stale)
        ...
        release()
    """

    def __init__(
        self,
        cache: QueryCache,
        executor,
        *,
        settings: Settings | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        debounce_ms: float | None = None,
        metrics=None,
    ):
        settings = settings or get_settings()
        self._cache = cache
        self._executor = executor
        self._clock = clock or cache.clock
        self._sleep = sleep or asyncio.sleep
        self._metrics = metrics
        self.default_stale_time_ms = settings.swr.SWR_DEFAULT_STALE_TIME_MS
        self.debounce_ms = settings.swr.SWR_DEBOUNCE_MS if debounce_ms is None else debounce_ms

        self._observers: dict[str, int] = {}
        self._pending: dict[str, _PendingRevalidation] = {}
        self._timer: asyncio.Task | None = None
        self._running: set[asyncio.Task] = set()

        self._stale_hits = 0
        self._fresh_hits = 0
        self._misses = 0
        self._revalidation_batches = 0
        self._revalidated_keys = 0
        self._failed_revalidations = 0

    # =========================================================================
    # Observers
    # =========================================================================

    def observe(self, descriptor: QueryDescriptor) -> Callable[[], None]:
        """Mark a query active; call the returned function to release it."""
        key = descriptor.cache_key
        self._observers[key] = self._observers.get(key, 0) + 1
        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            remaining = self._observers.get(key, 0) - 1
            if remaining > 0:
                self._observers[key] = remaining
            else:
                self._observers.pop(key, None)

        return release

    def is_active(self, key: str) -> bool:
        return self._observers.get(key, 0) > 0

    # =========================================================================
    # Reads
    # =========================================================================

    async def read(
        self,
        descriptor: QueryDescriptor,
        stale_time_ms: float | None = None,
        ttl_ms: float | None = None,
        preset: CachePreset | None = None,
    ) -> SWRResult:
        if preset is not None:
            stale_time_ms = preset.stale_time_ms if stale_time_ms is None else stale_time_ms
            ttl_ms = preset.gc_time_ms if ttl_ms is None else ttl_ms
        stale_time = self.default_stale_time_ms if stale_time_ms is None else stale_time_ms

        key = descriptor.cache_key
        entry = self._cache.get(key)
        if entry is not None:
            now = self._clock()
            result = entry.data if isinstance(entry.data, QueryResult) else QueryResult(data=entry.data)
            age = entry.age(now)
            if entry.is_stale(now, stale_time):
                self._stale_hits += 1
                self._schedule(descriptor, stale_time, ttl_ms)
                return SWRResult(key=key, result=result, is_stale=True, from_cache=True, age_ms=age)
            self._fresh_hits += 1
            return SWRResult(key=key, result=result, from_cache=True, age_ms=age)

        self._misses += 1
        result = await self._executor.fetch(descriptor, ttl_ms=ttl_ms)
        return SWRResult(key=key, result=result)

    # =========================================================================
    # Debounced revalidation
    # =========================================================================

    def _schedule(self, descriptor: QueryDescriptor, stale_time_ms: float, ttl_ms: float | None) -> None:
        self._pending[descriptor.cache_key] = _PendingRevalidation(descriptor, stale_time_ms, ttl_ms)
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.create_task(self._debounced(), name="swr-debounce")

    async def _debounced(self) -> None:
        await self._sleep(self.debounce_ms / 1000)
        self._timer = None
        task = asyncio.current_task()
        self._running.add(task)
        try:
            await self._revalidate(self._take_pending())
        finally:
            self._running.discard(task)

    def _take_pending(self) -> list[_PendingRevalidation]:
        batch = list(self._pending.values())
        self._pending.clear()
        return batch

    async def _revalidate(self, batch: list[_PendingRevalidation]) -> int:
        now = self._clock()
        due: list[_PendingRevalidation] = []
        for item in batch:
            key = item.descriptor.cache_key
            if not self.is_active(key):
                continue
            entry = self._cache.peek(key)
            if entry is None or entry.is_stale(now, item.stale_time_ms):
                due.append(item)

        skipped = len(batch) - len(due)
        if not due:
            log_stage(
                logger,
                Stage.STALE_WHILE_REVALIDATE,
                "Revalidation skipped: nothing active and stale",
                level="debug",
                skipped=skipped,
            )
            return 0

        self._revalidation_batches += 1
        by_ttl: dict[float | None, list[QueryDescriptor]] = {}
        for item in due:
            by_ttl.setdefault(item.ttl_ms, []).append(item.descriptor)

        start = time.perf_counter()
        failed = []
        for ttl_ms, descriptors in by_ttl.items():
            results = await self._executor.execute(descriptors, ttl_ms=ttl_ms, refresh=True)
            failed.extend(k for k, r in results.items() if not r.ok)

        refreshed = len(due) - len(failed)
        self._revalidated_keys += refreshed
        self._failed_revalidations += len(failed)
        if self._metrics:
            for _ in range(refreshed):
                self._metrics.record_revalidation()

        log_stage(
            logger,
            Stage.STALE_WHILE_REVALIDATE,
            "Revalidation completed",
            level="warning" if failed else "debug",
            refreshed=refreshed,
            failed=failed,
            skipped=skipped,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return refreshed

    async def revalidate_now(self) -> int:
        """Fire any pending revalidation immediately; returns keys refreshed."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        return await self._revalidate(self._take_pending())

    @property
    def pending_keys(self) -> list[str]:
        return list(self._pending)

    # =========================================================================
    # Introspection / teardown
    # =========================================================================

    def stats(self) -> dict[str, Any]:
        return {
            "active_queries": len(self._observers),
            "pending_revalidations": len(self._pending),
            "fresh_hits": self._fresh_hits,
            "stale_hits": self._stale_hits,
            "misses": self._misses,
            "revalidation_batches": self._revalidation_batches,
            "revalidated_keys": self._revalidated_keys,
            "failed_revalidations": self._failed_revalidations,
            "debounce_ms": self.debounce_ms,
        }

    async def shutdown(self) -> None:
        tasks = [t for t in (self._timer, *self._running) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._timer = None
        self._pending.clear()
