"""
Batched Query / RPC Executor

Fan-out / fan-in execution of query descriptors against the data service,
with the query cache in front.

Flow for execute(descriptors):

    1. Partition: descriptors with a valid cache entry are answered from the
       cache; the rest are pending.
    2. Fan-out: every pending descriptor runs concurrently. Requests for a
       cache key that is already being fetched join the in-flight task
       instead of issuing a second network call (coalescing).
    3. Each network call: fetch guard observation → caller deadline →
       retry of transient errors with exponential backoff.
    4. Fan-in: the batch returns once every pending descriptor settled.
       Successes are written to the cache with the caller's TTL; failures
       become error values for their own key only.

execute_rpc(calls) applies the same pattern with settle-all semantics and no
caching (RPCs may have side effects).

Cancellation: cancel(cache_key) cancels the in-flight task for a key. Its
response is discarded before reaching the cache and every waiter receives a
FetchCancelledError value.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from querysync.core.config.constants import Stage
from querysync.core.config.settings import Settings, get_settings
from querysync.core.exceptions import DataServiceTimeoutError, FetchCancelledError
from querysync.core.logging.logger import get_logger, log_stage
from querysync.core.resilience.retry import create_retry_decorator, is_retryable
from querysync.infrastructure.cache.query_cache import QueryCache
from querysync.infrastructure.data_service.base import DataService
from querysync.infrastructure.data_service.models import QueryDescriptor, QueryResult, RpcCall

logger = get_logger(__name__)


class BatchQueryExecutor:
    """
    Executes query batches and RPC batches with per-key failure isolation.

    Usage:
        executor = BatchQueryExecutor(data_service, cache, settings=settings)
        results = await executor.execute([members_query, flags_query], ttl_ms=60_000)
        if results["members"].ok:
            ...
    """

    def __init__(
        self,
        data_service: DataService,
        cache: QueryCache,
        *,
        settings: Settings | None = None,
        fetch_guard=None,
        error_tracker=None,
        monitor=None,
        metrics=None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        settings = settings or get_settings()
        retry_settings = settings.retry

        self._data_service = data_service
        self._cache = cache
        self._fetch_guard = fetch_guard
        self._error_tracker = error_tracker
        self._monitor = monitor
        self._metrics = metrics
        self._retry = create_retry_decorator(
            max_attempts=retry_settings.QUERY_MAX_ATTEMPTS,
            base_delay_ms=retry_settings.RETRY_BASE_DELAY_MS,
            max_delay_ms=retry_settings.RETRY_MAX_DELAY_MS,
            sleep=sleep,
        )

        self._in_flight: dict[str, asyncio.Task] = {}
        self._network_calls = 0
        self._coalesced = 0
        self._cancelled = 0

    # =========================================================================
    # Queries
    # =========================================================================

    async def execute(
        self,
        descriptors: Iterable[QueryDescriptor],
        ttl_ms: float | None = None,
        timeout: float | None = None,
        refresh: bool = False,
    ) -> dict[str, QueryResult]:
        """
        Run a batch of queries.

        A descriptor whose cache key is already in flight joins that fetch:
        the ``ttl_ms`` and ``timeout`` of the caller that started it apply,
        and the joining caller's values are ignored.

        Args:
            descriptors: Queries to run
            ttl_ms: TTL for results written to the cache (cache default if None)
            timeout: Deadline in seconds for each network call
            refresh: Skip the cache lookup and always fetch

        Returns:
            result_key → QueryResult for every descriptor (never raises for
            individual query failures)
        """
        results: dict[str, QueryResult] = {}
        pending: list[QueryDescriptor] = []

        for descriptor in descriptors:
            if not refresh:
                entry = self._cache.get(descriptor.cache_key)
                if entry is not None:
                    results[descriptor.result_key] = entry.data
                    continue
            pending.append(descriptor)

        log_stage(
            logger,
            Stage.BATCH_EXECUTION,
            "Executing query batch",
            level="debug",
            cached=len(results),
            pending=len(pending),
            refresh=refresh,
        )

        if pending:
            outcomes = await asyncio.gather(
                *(self._await_shared(d, ttl_ms, timeout) for d in pending),
                return_exceptions=True,
            )
            for descriptor, outcome in zip(pending, outcomes):
                if isinstance(outcome, QueryResult):
                    results[descriptor.result_key] = outcome
                else:
                    results[descriptor.result_key] = QueryResult.failure(outcome)

        return results

    async def fetch(
        self,
        descriptor: QueryDescriptor,
        ttl_ms: float | None = None,
        timeout: float | None = None,
        refresh: bool = False,
    ) -> QueryResult:
        results = await self.execute([descriptor], ttl_ms=ttl_ms, timeout=timeout, refresh=refresh)
        return results[descriptor.result_key]

    def prefetch(
        self,
        descriptors: Iterable[QueryDescriptor],
        ttl_ms: float | None = None,
        timeout: float | None = None,
    ) -> int:
        """
        Start background fetches for descriptors that are neither cached nor
        in flight. Returns how many fetches were started.
        """
        started = 0
        for descriptor in descriptors:
            key = descriptor.cache_key
            if key in self._cache or key in self._in_flight:
                continue
            self._get_or_start(descriptor, ttl_ms, timeout)
            started += 1
        if started:
            log_stage(logger, Stage.BATCH_EXECUTION, "Prefetch started", level="debug", count=started)
        return started

    def _get_or_start(
        self, descriptor: QueryDescriptor, ttl_ms: float | None, timeout: float | None
    ) -> tuple[asyncio.Task, bool]:
        key = descriptor.cache_key
        task = self._in_flight.get(key)
        if task is not None and not task.done():
            return task, True

        task = asyncio.create_task(
            self._fetch_and_store(descriptor, ttl_ms, timeout),
            name=f"fetch:{descriptor.resource_name}",
        )
        self._in_flight[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return task, False

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _await_shared(
        self, descriptor: QueryDescriptor, ttl_ms: float | None, timeout: float | None
    ) -> QueryResult:
        task, joined = self._get_or_start(descriptor, ttl_ms, timeout)
        if joined:
            self._coalesced += 1
            log_stage(
                logger,
                Stage.BATCH_EXECUTION,
                "Joined in-flight fetch",
                level="debug",
                resource=descriptor.resource_name,
            )
            if self._metrics:
                self._metrics.record_coalesced_request()

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return QueryResult.failure(
                    FetchCancelledError(
                        "In-flight fetch was cancelled",
                        details={"resource": descriptor.resource_name, "cache_key": descriptor.cache_key},
                    )
                )
            raise

    async def _fetch_and_store(
        self, descriptor: QueryDescriptor, ttl_ms: float | None, timeout: float | None
    ) -> QueryResult:
        resource = descriptor.resource_name
        start = time.perf_counter()
        try:
            if self._fetch_guard is not None:
                self._fetch_guard.observe(f"query:{resource}")
            result = await self._call_with_retry(lambda: self._data_service.query(descriptor), timeout, resource)
        except asyncio.CancelledError:
            log_stage(logger, Stage.BATCH_EXECUTION, "Fetch cancelled", level="debug", resource=resource)
            raise
        except Exception as e:
            result = QueryResult.failure(e)

        duration_ms = (time.perf_counter() - start) * 1000
        if result.ok:
            self._cache.set(descriptor.cache_key, result, ttl_ms)
            if self._error_tracker is not None:
                self._error_tracker.record_success(resource)
        else:
            self._record_failure("query", resource, result.error)
            if self._error_tracker is not None:
                self._error_tracker.record_failure(resource, result.error)

        self._record_timing("query", resource, duration_ms, result.ok)
        return result

    # =========================================================================
    # RPC
    # =========================================================================

    async def execute_rpc(
        self, calls: Iterable[RpcCall], timeout: float | None = None
    ) -> dict[str, QueryResult]:
        """
        Run RPC calls concurrently; every call settles into a QueryResult.
        """
        calls = list(calls)
        outcomes = await asyncio.gather(*(self._rpc_one(call, timeout) for call in calls), return_exceptions=True)
        results: dict[str, QueryResult] = {}
        for call, outcome in zip(calls, outcomes):
            results[call.result_key] = outcome if isinstance(outcome, QueryResult) else QueryResult.failure(outcome)
        return results

    async def _rpc_one(self, call: RpcCall, timeout: float | None) -> QueryResult:
        start = time.perf_counter()
        try:
            if self._fetch_guard is not None:
                self._fetch_guard.observe(f"rpc:{call.function_name}")
            result = await self._call_with_retry(
                lambda: self._data_service.rpc(call.function_name, call.params), timeout, call.function_name
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result = QueryResult.failure(e)

        if not result.ok:
            self._record_failure("rpc", call.function_name, result.error)
        self._record_timing("rpc", call.function_name, (time.perf_counter() - start) * 1000, result.ok)
        return result

    # =========================================================================
    # Shared plumbing
    # =========================================================================

    async def _call_with_retry(
        self, call: Callable[[], Awaitable[QueryResult]], timeout: float | None, resource: str
    ) -> QueryResult:
        @self._retry
        async def attempt() -> QueryResult:
            self._network_calls += 1
            try:
                if timeout is not None:
                    result = await asyncio.wait_for(call(), timeout)
                else:
                    result = await call()
            except asyncio.TimeoutError as e:
                raise DataServiceTimeoutError(
                    f"Call to '{resource}' exceeded its {timeout}s deadline",
                    details={"resource": resource, "timeout": timeout},
                ) from e
            if result.error is not None and is_retryable(result.error):
                raise result.error
            return result

        return await attempt()

    def _record_failure(self, kind: str, resource: str, error: BaseException | None) -> None:
        error_type = type(error).__name__
        log_stage(
            logger,
            Stage.BATCH_EXECUTION,
            f"{kind.upper()} failed",
            level="warning",
            resource=resource,
            error_type=error_type,
            error=str(error)[:200],
            retryable=is_retryable(error) if error is not None else None,
        )
        if self._metrics:
            self._metrics.record_error(error_type, Stage.BATCH_EXECUTION.value)

    def _record_timing(self, kind: str, resource: str, duration_ms: float, ok: bool) -> None:
        if self._monitor is not None:
            self._monitor.record(f"{kind}:{resource}", duration_ms, success=ok)
        if self._metrics:
            self._metrics.record_fetch(kind, resource, duration_ms / 1000, "success" if ok else "error")

    # =========================================================================
    # In-flight control
    # =========================================================================

    def cancel(self, cache_key: str) -> bool:
        """Cancel the in-flight fetch for ``cache_key``; True if one was running."""
        task = self._in_flight.get(cache_key)
        if task is None or task.done():
            return False
        task.cancel()
        self._cancelled += 1
        log_stage(logger, Stage.BATCH_EXECUTION, "Cancelled in-flight fetch", level="debug", cache_key=cache_key[:80])
        return True

    def is_in_flight(self, cache_key: str) -> bool:
        task = self._in_flight.get(cache_key)
        return task is not None and not task.done()

    def in_flight_keys(self) -> list[str]:
        return [key for key, task in self._in_flight.items() if not task.done()]

    async def shutdown(self) -> None:
        tasks = [task for task in self._in_flight.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "in_flight": len(self.in_flight_keys()),
            "network_calls": self._network_calls,
            "coalesced_requests": self._coalesced,
            "cancelled_fetches": self._cancelled,
        }
