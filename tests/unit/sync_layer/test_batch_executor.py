"""
Unit Tests for BatchQueryExecutor

Tests cache partitioning, request coalescing, per-key failure isolation,
retries, deadlines, cancellation and RPC batches.
"""

import asyncio

import pytest

from querysync.core.exceptions import (
    CircuitHaltedError,
    DataServiceAuthError,
    DataServiceTimeoutError,
    DataServiceUnavailableError,
    FetchCancelledError,
)
from querysync.core.resilience.circuit_breaker import FrequencyCircuitBreaker
from querysync.infrastructure.data_service.models import QueryResult, RpcCall
from querysync.sync.batch_executor import BatchQueryExecutor
from tests.test_fixtures import QueryFactory


async def settle(iterations: int = 10) -> None:
    """Let scheduled tasks run up to their next real suspension point."""
    for _ in range(iterations):
        await asyncio.sleep(0)


@pytest.mark.unit
class TestCachePartition:
    @pytest.mark.asyncio
    async def test_cached_descriptor_skips_network(self, executor, cache, fake_service):
        query = QueryFactory.users()
        cache.set(query.cache_key, QueryResult(data=["cached"]))

        results = await executor.execute([query])

        assert results[query.result_key].data == ["cached"]
        assert fake_service.calls == []

    @pytest.mark.asyncio
    async def test_result_written_to_cache_with_ttl(self, executor, cache):
        query = QueryFactory.users()

        await executor.execute([query], ttl_ms=5_000)

        entry = cache.peek(query.cache_key)
        assert entry.ttl == 5_000
        assert entry.data.data == [{"resource": "users"}]

    @pytest.mark.asyncio
    async def test_refresh_bypasses_cache(self, executor, cache, fake_service):
        query = QueryFactory.users()
        cache.set(query.cache_key, QueryResult(data=["cached"]))

        results = await executor.execute([query], refresh=True)

        assert results[query.result_key].data == [{"resource": "users"}]
        assert fake_service.calls_for("users") == 1

    @pytest.mark.asyncio
    async def test_results_keyed_by_caller_label(self, executor):
        query = QueryFactory.users(key="members")
        results = await executor.execute([query])
        assert list(results) == ["members"]


@pytest.mark.unit
class TestCoalescing:
    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_call(self, executor, fake_service, metrics):
        fake_service.gate = asyncio.Event()
        query = QueryFactory.users()

        first = asyncio.create_task(executor.fetch(query))
        second = asyncio.create_task(executor.fetch(query))
        await settle()
        assert executor.is_in_flight(query.cache_key)

        fake_service.gate.set()
        one, two = await asyncio.gather(first, second)

        assert fake_service.calls_for("users") == 1
        assert one.data == two.data
        assert executor.stats()["coalesced_requests"] == 1
        assert metrics.sample("querysync_coalesced_requests_total") == 1.0

    @pytest.mark.asyncio
    async def test_equivalent_descriptors_coalesce(self, executor, fake_service):
        fake_service.gate = asyncio.Event()
        labelled = QueryFactory.users(key="a")
        other_label = QueryFactory.users(key="b")

        task = asyncio.create_task(executor.execute([labelled, other_label]))
        await settle()
        fake_service.gate.set()
        results = await task

        assert fake_service.calls_for("users") == 1
        assert results["a"].data == results["b"].data

    @pytest.mark.asyncio
    async def test_joined_request_keeps_first_ttl(self, executor, cache, fake_service):
        fake_service.gate = asyncio.Event()
        query = QueryFactory.users()

        first = asyncio.create_task(executor.fetch(query, ttl_ms=5_000))
        await settle()
        second = asyncio.create_task(executor.fetch(query, ttl_ms=60_000))
        await settle()

        fake_service.gate.set()
        await asyncio.gather(first, second)

        assert fake_service.calls_for("users") == 1
        assert cache.peek(query.cache_key).ttl == 5_000

    @pytest.mark.asyncio
    async def test_prefetch_starts_once(self, executor, fake_service):
        fake_service.gate = asyncio.Event()
        query = QueryFactory.users()

        assert executor.prefetch([query]) == 1
        assert executor.prefetch([query]) == 0

        fake_service.gate.set()
        await settle()
        assert fake_service.calls_for("users") == 1


@pytest.mark.unit
class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_failure_stays_on_its_key(self, executor, cache, fake_service):
        fake_service.respond("users", QueryResult.failure(DataServiceAuthError("denied")))
        users, notifications = QueryFactory.users(), QueryFactory.notifications()

        results = await executor.execute([users, notifications])

        assert isinstance(results[users.result_key].error, DataServiceAuthError)
        assert results[notifications.result_key].ok
        assert cache.peek(users.cache_key) is None
        assert cache.peek(notifications.cache_key) is not None

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, executor, fake_service, fast_sleep):
        fake_service.respond("users", QueryResult.failure(DataServiceAuthError("denied")))

        await executor.fetch(QueryFactory.users())

        assert fake_service.calls_for("users") == 1
        assert fast_sleep.delays == []


@pytest.mark.unit
class TestRetry:
    @pytest.mark.asyncio
    async def test_transient_exception_retried(self, executor, fake_service, fast_sleep):
        fake_service.respond("users", DataServiceTimeoutError("slow"), QueryResult(data=[1]))

        result = await executor.fetch(QueryFactory.users())

        assert result.data == [1]
        assert fake_service.calls_for("users") == 2
        assert fast_sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_transient_error_value_retried(self, executor, fake_service):
        fake_service.respond("users", QueryResult.failure(DataServiceUnavailableError("busy")), QueryResult(data=[1]))

        result = await executor.fetch(QueryFactory.users())

        assert result.ok
        assert fake_service.calls_for("users") == 2

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, executor, fake_service, fast_sleep):
        fake_service.respond("users", DataServiceTimeoutError("slow"))

        result = await executor.fetch(QueryFactory.users())

        assert isinstance(result.error, DataServiceTimeoutError)
        assert fake_service.calls_for("users") == 3
        assert fast_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_unclassified_exception_treated_as_transient(self, executor, fake_service):
        fake_service.respond("users", RuntimeError("socket closed"), QueryResult(data=[]))
        assert (await executor.fetch(QueryFactory.users())).ok


@pytest.mark.unit
class TestDeadline:
    @pytest.mark.asyncio
    async def test_deadline_becomes_timeout_error(self, make_settings, cache, fake_service):
        executor = BatchQueryExecutor(fake_service, cache, settings=make_settings(QUERY_MAX_ATTEMPTS=1))
        fake_service.gate = asyncio.Event()

        result = await executor.fetch(QueryFactory.users(), timeout=0.01)

        assert isinstance(result.error, DataServiceTimeoutError)
        assert result.error.details["timeout"] == 0.01


@pytest.mark.unit
class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_fetch_never_reaches_cache(self, executor, cache, fake_service):
        fake_service.gate = asyncio.Event()
        query = QueryFactory.users()

        waiter = asyncio.create_task(executor.fetch(query))
        await settle()
        assert executor.cancel(query.cache_key) is True
        fake_service.gate.set()
        result = await waiter

        assert isinstance(result.error, FetchCancelledError)
        assert cache.peek(query.cache_key) is None
        assert executor.stats()["cancelled_fetches"] == 1

    @pytest.mark.asyncio
    async def test_cancel_without_fetch(self, executor):
        assert executor.cancel("nothing") is False

    @pytest.mark.asyncio
    async def test_shutdown_cancels_in_flight(self, executor, fake_service):
        fake_service.gate = asyncio.Event()
        executor.prefetch([QueryFactory.users()])
        await settle()

        await executor.shutdown()

        assert executor.in_flight_keys() == []


@pytest.mark.unit
class TestFetchGuard:
    @pytest.mark.asyncio
    async def test_halted_guard_short_circuits(self, settings, cache, fake_service, clock):
        guard = FrequencyCircuitBreaker("fetch", window_ms=10_000, warning_threshold=1, critical_threshold=1, clock=clock)
        executor = BatchQueryExecutor(fake_service, cache, settings=settings, fetch_guard=guard)
        query = QueryFactory.users()

        await executor.fetch(query, refresh=True)
        await executor.fetch(query, refresh=True)
        result = await executor.fetch(query, refresh=True)

        assert isinstance(result.error, CircuitHaltedError)
        assert fake_service.calls_for("users") == 2


@pytest.mark.unit
class TestRpc:
    @pytest.mark.asyncio
    async def test_rpc_batch_settles_all(self, executor, cache, fake_service):
        fake_service.respond("get_stats", QueryResult(data={"members": 3}))
        fake_service.respond("broken", QueryResult.failure(DataServiceAuthError("denied")))

        results = await executor.execute_rpc(
            [RpcCall(function_name="get_stats", params={"org_id": "org1"}), RpcCall(key="b", function_name="broken")]
        )

        assert results["get_stats"].data == {"members": 3}
        assert isinstance(results["b"].error, DataServiceAuthError)
        assert fake_service.rpc_calls[0] == ("get_stats", {"org_id": "org1"})
        assert len(cache) == 0
