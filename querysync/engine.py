"""
Sync Engine

Application-scope container that builds, wires and owns every service of
the engine. Nothing in querysync is a module-level singleton: two engines
in one process share no state.

Wiring (leaves first):

    LocalKeyValueStore, MetricsCollector
    QueryCache ─▶ QueryErrorTracker
    FrequencyCircuitBreaker x2 (render_guard, fetch_guard), PerformanceMonitor
    BatchQueryExecutor(data_service, cache, fetch_guard, error_tracker, monitor)
    StaleWhileRevalidateController(cache, executor)
    InvalidationManager(cache, executor, is_active=swr.is_active)
    OptimisticUpdateManager(cache, executor)
    SubscriptionManager(transport, invalidation)
    BackgroundSyncScheduler
    HealthChecker

Usage:
    async with create_engine(settings) as engine:
        view = await engine.query(members_query, stale_time_ms=60_000)
        await engine.mutate(key, add_member, api_call, "membership_changed",
                            {"org_id": "org1", "user_id": "u1"})

Author: System Architect
Date: 2026-03-02
"""

import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

from querysync.core.config.constants import MINUTE_MS, BreakerState, CachePreset, Stage, SyncPriority
from querysync.core.config.settings import Settings, get_settings
from querysync.core.exceptions import ConfigurationError
from querysync.core.logging.logger import get_logger, log_stage
from querysync.core.observability.performance_monitor import PerformanceMonitor
from querysync.core.resilience.circuit_breaker import FrequencyCircuitBreaker
from querysync.infrastructure.cache.key_builder import KeyPattern
from querysync.infrastructure.cache.query_cache import CacheEntry, QueryCache
from querysync.infrastructure.data_service.base import DataService
from querysync.infrastructure.data_service.models import QueryDescriptor, QueryResult, RpcCall
from querysync.infrastructure.data_service.postgrest_client import PostgRESTConfig, PostgRESTDataService
from querysync.infrastructure.monitoring.health_checker import HealthChecker
from querysync.infrastructure.monitoring.metrics_collector import MetricsCollector
from querysync.infrastructure.realtime.transport import PushTransport, RedisPushTransport
from querysync.infrastructure.storage.local_store import LocalKeyValueStore
from querysync.sync.background_sync import BackgroundSyncScheduler, SyncHandle
from querysync.sync.batch_executor import BatchQueryExecutor
from querysync.sync.error_tracker import QueryErrorTracker
from querysync.sync.invalidation import InvalidationManager
from querysync.sync.optimistic import OptimisticHandle, OptimisticUpdateManager
from querysync.sync.stale_while_revalidate import StaleWhileRevalidateController, SWRResult
from querysync.sync.subscriptions import Subscription, SubscriptionManager

logger = get_logger(__name__)

MAINTENANCE_TASK_ID = "engine:maintenance"
MAINTENANCE_INTERVAL_MS = 10 * MINUTE_MS


class SyncEngine:
    """
    Owns the cache and every coordination service built on it.

    Attributes are public so callers (and the HTTP layer) can reach the
    individual services: cache, executor, invalidation, optimistic, swr,
    scheduler, subscriptions, render_guard, fetch_guard, monitor, store,
    metrics, health_checker.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        data_service: DataService | None = None,
        transport: PushTransport | None = None,
        store: LocalKeyValueStore | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings
        self._clock = clock or (lambda: time.time() * 1000)
        self._owns_data_service = data_service is None
        self._owns_transport = False
        self._started = False
        self._closed = False

        self.metrics = metrics or MetricsCollector()
        if store is None:
            store = LocalKeyValueStore(
                path=s.local_store.LOCAL_STORE_PATH,
                max_entries=s.local_store.LOCAL_STORE_MAX_ENTRIES,
                clock=self._clock,
            )
        self.store = store
        self.cache = QueryCache(
            max_entries=s.cache.CACHE_MAX_ENTRIES,
            default_ttl_ms=s.cache.CACHE_DEFAULT_TTL_MS,
            clock=self._clock,
            metrics=self.metrics,
        )

        cb = s.circuit_breaker
        self.render_guard = FrequencyCircuitBreaker(
            "render",
            window_ms=cb.RENDER_GUARD_WINDOW_MS,
            warning_threshold=cb.RENDER_GUARD_WARNING,
            critical_threshold=cb.RENDER_GUARD_CRITICAL,
            global_cap=cb.GUARD_GLOBAL_CAP,
            clock=self._clock,
            metrics=self.metrics,
        )
        self.fetch_guard = FrequencyCircuitBreaker(
            "fetch",
            window_ms=cb.FETCH_GUARD_WINDOW_MS,
            warning_threshold=cb.FETCH_GUARD_WARNING,
            critical_threshold=cb.FETCH_GUARD_CRITICAL,
            global_cap=cb.GUARD_GLOBAL_CAP,
            clock=self._clock,
            metrics=self.metrics,
        )
        self.monitor = PerformanceMonitor(
            slow_threshold_ms=s.monitor.PERF_SLOW_THRESHOLD_MS,
            slow_render_threshold_ms=s.monitor.PERF_SLOW_RENDER_THRESHOLD_MS,
            max_slow_operations=s.monitor.PERF_MAX_SLOW_OPERATIONS,
            max_samples=s.monitor.PERF_MAX_SAMPLES,
            store=self.store,
            clock=self._clock,
            metrics=self.metrics,
        )
        self.error_tracker = QueryErrorTracker(
            self.cache,
            window_ms=s.cache.ERROR_CLUSTER_WINDOW_MS,
            threshold=s.cache.ERROR_CLUSTER_THRESHOLD,
            clock=self._clock,
            metrics=self.metrics,
        )

        if data_service is None:
            data_service = PostgRESTDataService(PostgRESTConfig.from_settings(s))
        self.data_service = data_service
        self.executor = BatchQueryExecutor(
            self.data_service,
            self.cache,
            settings=s,
            fetch_guard=self.fetch_guard,
            error_tracker=self.error_tracker,
            monitor=self.monitor,
            metrics=self.metrics,
            sleep=sleep,
        )
        self.swr = StaleWhileRevalidateController(
            self.cache, self.executor, settings=s, clock=self._clock, sleep=sleep, metrics=self.metrics
        )
        self.invalidation = InvalidationManager(
            self.cache, self.executor, settings=s, is_active=self.swr.is_active, metrics=self.metrics
        )
        self.optimistic = OptimisticUpdateManager(
            self.cache, self.executor, settings=s, clock=self._clock, metrics=self.metrics
        )
        self.scheduler = BackgroundSyncScheduler(settings=s, clock=self._clock, sleep=sleep, metrics=self.metrics)

        self.transport = transport
        self.subscriptions = (
            SubscriptionManager(transport, self.invalidation, settings=s, metrics=self.metrics)
            if transport is not None
            else None
        )
        self.health_checker = HealthChecker(
            s,
            breakers=(self.render_guard, self.fetch_guard),
            cache=self.cache,
            subscriptions=self.subscriptions,
            store=self.store,
        )

        log_stage(
            logger,
            Stage.INITIALIZATION,
            "Sync engine created",
            push_enabled=self.subscriptions is not None,
            cache_max_entries=self.cache.max_entries,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> "SyncEngine":
        """Restore persisted metrics and schedule cache maintenance."""
        if self._started:
            return self
        self._started = True
        restored = self.monitor.load_persisted()
        self.scheduler.subscribe(
            self._maintenance,
            interval_ms=MAINTENANCE_INTERVAL_MS,
            priority=SyncPriority.LOW,
            retry_on_failure=False,
            task_id=MAINTENANCE_TASK_ID,
        )
        log_stage(logger, Stage.INITIALIZATION, "Sync engine started", restored_samples=len(restored))
        return self

    async def _maintenance(self) -> None:
        expired = self.cache.sweep_expired()
        stale = self.invalidation.cleanup_stale_data()
        self.optimistic.expire_overdue()
        self.monitor.persist()
        log_stage(
            logger,
            Stage.INVALIDATION,
            "Cache maintenance completed",
            level="debug",
            expired=len(expired),
            stale=len(stale),
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        log_stage(logger, Stage.SHUTDOWN, "Shutting down sync engine")

        await self.scheduler.shutdown()
        if self.subscriptions is not None:
            await self.subscriptions.shutdown()
        await self.swr.shutdown()
        self.optimistic.shutdown()
        await self.executor.shutdown()
        self.monitor.persist()

        if self._owns_data_service and hasattr(self.data_service, "aclose"):
            await self.data_service.aclose()
        if self._owns_transport and hasattr(self.transport, "aclose"):
            await self.transport.aclose()
        log_stage(logger, Stage.SHUTDOWN, "Sync engine stopped")

    async def __aenter__(self) -> "SyncEngine":
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # Cache access
    # =========================================================================

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.cache.get(key)
        return entry.data if entry is not None else default

    def set(self, key: str, data: Any, ttl_ms: float | None = None) -> CacheEntry:
        return self.cache.set(key, data, ttl_ms)

    def invalidate(self, target: str | KeyPattern) -> list[str]:
        return self.invalidation.invalidate(target)

    def invalidate_by_mutation(self, mutation_type: str, context: Mapping[str, Any] | None = None) -> list[str]:
        return self.invalidation.invalidate_by_mutation_type(mutation_type, context)

    # =========================================================================
    # Reads
    # =========================================================================

    def observe(self, descriptor: QueryDescriptor) -> Callable[[], None]:
        return self.swr.observe(descriptor)

    async def query(
        self,
        descriptor: QueryDescriptor,
        stale_time_ms: float | None = None,
        ttl_ms: float | None = None,
        preset: CachePreset | None = None,
    ) -> SWRResult:
        """Stale-while-revalidate read of one query."""
        return await self.swr.read(descriptor, stale_time_ms=stale_time_ms, ttl_ms=ttl_ms, preset=preset)

    async def execute_batch(
        self,
        descriptors: Iterable[QueryDescriptor],
        ttl_ms: float | None = None,
        timeout: float | None = None,
        refresh: bool = False,
    ) -> dict[str, QueryResult]:
        descriptors = list(descriptors)
        with self.monitor.track("execute_batch", kind="batch"):
            return await self.executor.execute(descriptors, ttl_ms=ttl_ms, timeout=timeout, refresh=refresh)

    async def execute_rpc(self, calls: Iterable[RpcCall], timeout: float | None = None) -> dict[str, QueryResult]:
        return await self.executor.execute_rpc(calls, timeout=timeout)

    async def background_refresh(self, org_id: str, user_id: str) -> dict[str, QueryResult]:
        return await self.invalidation.background_refresh(org_id, user_id)

    def cleanup_stale_data(self, max_age_ms: float | None = None) -> list[str]:
        return self.invalidation.cleanup_stale_data(max_age_ms)

    # =========================================================================
    # Writes
    # =========================================================================

    def apply_optimistic(
        self,
        key: str,
        updater: Callable[[Any], Any],
        rollback_id: str | None = None,
        ttl_ms: float | None = None,
    ) -> OptimisticHandle:
        return self.optimistic.apply(key, updater, rollback_id=rollback_id, ttl_ms=ttl_ms)

    async def mutate(
        self,
        key: str,
        updater: Callable[[Any], Any],
        mutation_fn: Callable[[], Awaitable[Any]],
        mutation_type: str | None = None,
        context: Mapping[str, Any] | None = None,
        rollback_id: str | None = None,
    ) -> Any:
        """
        Optimistic mutation: apply ``updater`` to the cached value, run
        ``mutation_fn`` and confirm, or roll back and re-raise on failure.
        On success the keys affected by ``mutation_type`` are invalidated.
        """
        handle = self.optimistic.apply(key, updater, rollback_id=rollback_id)
        try:
            result = await mutation_fn()
        except Exception:
            handle.rollback()
            raise
        handle.confirm()
        if mutation_type:
            self.invalidation.invalidate_by_mutation_type(mutation_type, context)
        return result

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe_sync(self, sync_fn: Callable[[], Awaitable[Any]], **options: Any) -> SyncHandle:
        return self.scheduler.subscribe(sync_fn, **options)

    def subscribe_push(
        self,
        scope: str,
        event_types: Iterable[str],
        on_event: Callable | None = None,
        on_error: Callable | None = None,
    ) -> Subscription:
        if self.subscriptions is None:
            raise ConfigurationError(
                "Push subscriptions need a transport",
                details={"scope": scope},
            ).with_suggestion("Build the engine with create_engine() or pass transport=")
        return self.subscriptions.subscribe(scope, event_types, on_event=on_event, on_error=on_error)

    # =========================================================================
    # Guards
    # =========================================================================

    def track_render(self, component_id: str, duration_ms: float | None = None) -> BreakerState:
        """
        Count one render of ``component_id``.

        Raises:
            CircuitHaltedError: If the component (or the render guard) is halted
        """
        state = self.render_guard.observe(component_id)
        if duration_ms is not None:
            self.monitor.record_render(component_id, duration_ms)
        return state

    def reset_circuit_breakers(self) -> dict[str, str]:
        self.render_guard.reset()
        self.fetch_guard.reset()
        return {
            self.render_guard.name: self.render_guard.state().value,
            self.fetch_guard.name: self.fetch_guard.state().value,
        }

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_stats(self) -> dict[str, Any]:
        stats = {
            "cache": self.cache.stats(),
            "executor": self.executor.stats(),
            "error_clusters": self.error_tracker.stats(),
            "invalidation": self.invalidation.stats(),
            "optimistic": self.optimistic.stats(),
            "swr": self.swr.stats(),
            "background_sync": self.scheduler.stats(),
            "circuit_breakers": {
                self.render_guard.name: self.render_guard.stats(),
                self.fetch_guard.name: self.fetch_guard.stats(),
            },
            "local_store": self.store.stats(),
        }
        if self.subscriptions is not None:
            stats["subscriptions"] = {
                **self.subscriptions.stats(),
                "channels_detail": self.subscriptions.channel_stats(),
            }
        return stats

    def get_metrics(self) -> dict[str, Any]:
        cache_stats = self.cache.stats()
        return {
            "performance": self.monitor.get_metrics(),
            "cache": {
                "size": cache_stats["size"],
                "hit_rate": cache_stats["hit_rate"],
                "hits": cache_stats["hits"],
                "misses": cache_stats["misses"],
            },
            "executor": self.executor.stats(),
        }

    def health_check(self) -> dict[str, Any]:
        return self.health_checker.detailed_health_report()


def create_engine(
    settings: Settings | None = None,
    *,
    clock: Callable[[], float] | None = None,
) -> SyncEngine:
    """Engine with the httpx data service and the redis push transport."""
    settings = settings or get_settings()
    transport = RedisPushTransport.from_url(
        settings.realtime.REDIS_URL, prefix=settings.realtime.REALTIME_CHANNEL_PREFIX
    )
    engine = SyncEngine(settings, transport=transport, clock=clock)
    engine._owns_transport = True
    return engine
