"""
Unit Tests for BackgroundSyncScheduler

Sleeps go through RecordingSleep: backoff delays complete at once and
interval sleeps (a minute or longer) park until the task is cancelled, so
each test observes exactly one interval tick plus its retries.
"""

import asyncio

import pytest

from querysync.core.config.constants import SyncPriority, SyncState
from querysync.core.exceptions import DataServiceAuthError, DataServiceTimeoutError, SyncTaskNotFoundError
from querysync.sync.background_sync import BackgroundSyncScheduler, SyncTask


async def settle(iterations: int = 30) -> None:
    for _ in range(iterations):
        await asyncio.sleep(0)


class ScriptedSync:
    """Sync function that fails with the scripted errors, then succeeds."""

    def __init__(self, *errors: Exception):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self) -> None:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)


@pytest.fixture
def scheduler(settings, clock, fast_sleep, metrics):
    return BackgroundSyncScheduler(settings=settings, clock=clock, sleep=fast_sleep, metrics=metrics)


@pytest.mark.unit
class TestEffectiveInterval:
    @staticmethod
    def make_task(interval_ms, priority):
        async def noop():
            return None

        return SyncTask(task_id="t", sync_fn=noop, interval_ms=interval_ms, priority=priority)

    def test_normal_uses_base_interval(self):
        assert self.make_task(300_000, SyncPriority.NORMAL).effective_interval_ms == 300_000

    def test_high_halves_interval(self):
        assert self.make_task(300_000, SyncPriority.HIGH).effective_interval_ms == 150_000

    def test_high_never_below_floor(self):
        assert self.make_task(60_000, SyncPriority.HIGH).effective_interval_ms == 60_000

    def test_low_doubles_interval(self):
        assert self.make_task(1_000, SyncPriority.LOW).effective_interval_ms == 2_000

    @pytest.mark.asyncio
    async def test_loop_sleeps_effective_interval(self, scheduler, fast_sleep):
        scheduler.subscribe(ScriptedSync(), interval_ms=200_000, priority="high")
        await settle()

        assert fast_sleep.delays == [100.0]
        await scheduler.shutdown()


@pytest.mark.unit
class TestRuns:
    @pytest.mark.asyncio
    async def test_runs_immediately_on_subscribe(self, scheduler, clock, metrics):
        sync = ScriptedSync()
        handle = scheduler.subscribe(sync, task_id="dashboard")
        await settle()

        assert sync.calls == 1
        assert handle.task.state == SyncState.IDLE
        assert handle.task.last_run_at == clock.now
        assert metrics.sample("querysync_sync_runs_total", {"status": "success"}) == 1.0
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_run_now(self, scheduler):
        sync = ScriptedSync()
        handle = scheduler.subscribe(sync)
        await settle()

        assert await handle.run_now() is True
        assert sync.calls == 2
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_run_now_unknown_task(self, scheduler):
        with pytest.raises(SyncTaskNotFoundError):
            await scheduler.run_now("missing")

    @pytest.mark.asyncio
    async def test_in_flight_run_is_skipped(self, scheduler):
        gate = asyncio.Event()

        async def slow_sync():
            await gate.wait()

        handle = scheduler.subscribe(slow_sync)
        await settle()

        assert await handle.run_now() is False
        assert scheduler.stats()["skipped_runs"] == 1

        gate.set()
        await settle()
        assert handle.task.state == SyncState.IDLE
        await scheduler.shutdown()


@pytest.mark.unit
class TestRetry:
    @pytest.mark.asyncio
    async def test_backoff_until_retries_exhausted(self, scheduler, fast_sleep):
        sync = ScriptedSync(*[DataServiceTimeoutError("slow") for _ in range(10)])
        handle = scheduler.subscribe(sync, max_retries=3)
        await settle(100)

        assert fast_sleep.short_delays == [1.0, 2.0, 4.0]
        assert sync.calls == 4
        assert handle.task.retry_count == 3
        assert handle.task.failure_count == 4
        assert handle.task.state == SyncState.IDLE
        assert scheduler.stats()["retries"] == 3
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_success_resets_retry_count(self, scheduler, fast_sleep):
        sync = ScriptedSync(DataServiceTimeoutError("slow"))
        handle = scheduler.subscribe(sync)
        await settle(60)

        assert sync.calls == 2
        assert fast_sleep.short_delays == [1.0]
        assert handle.task.retry_count == 0
        assert handle.task.last_error is None
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, scheduler, fast_sleep):
        sync = ScriptedSync(DataServiceAuthError("denied"))
        handle = scheduler.subscribe(sync)
        await settle()

        assert sync.calls == 1
        assert fast_sleep.short_delays == []
        assert handle.task.failure_count == 1
        assert "denied" in handle.task.last_error
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_retry_disabled(self, scheduler, fast_sleep):
        sync = ScriptedSync(DataServiceTimeoutError("slow"))
        scheduler.subscribe(sync, retry_on_failure=False)
        await settle()

        assert sync.calls == 1
        assert fast_sleep.short_delays == []
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_deadline_counts_as_failure(self, scheduler):
        async def hanging_sync():
            await asyncio.Event().wait()

        handle = scheduler.subscribe(hanging_sync, timeout=0.01, max_retries=0)
        await asyncio.sleep(0.05)

        assert handle.task.failure_count == 1
        assert "deadline" in handle.task.last_error
        await scheduler.shutdown()


@pytest.mark.unit
class TestLifecycle:
    @pytest.mark.asyncio
    async def test_unsubscribe_stops_task(self, scheduler, metrics):
        handle = scheduler.subscribe(ScriptedSync())
        await settle()
        task = handle.task

        assert handle() is True

        assert task.state == SyncState.STOPPED
        assert handle.task is None
        assert scheduler.task_ids == []
        assert metrics.sample("querysync_sync_tasks") == 0.0

    @pytest.mark.asyncio
    async def test_unsubscribe_cancels_pending_retry(self, settings, clock):
        parked = BackgroundSyncScheduler(settings=settings, clock=clock, sleep=lambda s: asyncio.Event().wait())
        sync = ScriptedSync(DataServiceTimeoutError("slow"))
        handle = parked.subscribe(sync)
        await settle()
        assert parked.stats()["pending_retries"] == 1

        handle.unsubscribe()
        await settle()

        assert parked.stats()["pending_retries"] == 0
        assert sync.calls == 1

    @pytest.mark.asyncio
    async def test_same_task_id_replaces_registration(self, scheduler):
        scheduler.subscribe(ScriptedSync(), task_id="dashboard")
        scheduler.subscribe(ScriptedSync(), task_id="dashboard")
        assert scheduler.task_ids == ["dashboard"]
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_stops_everything(self, scheduler):
        first = scheduler.subscribe(ScriptedSync()).task
        second = scheduler.subscribe(ScriptedSync()).task
        await settle()

        await scheduler.shutdown()

        assert first.state == SyncState.STOPPED
        assert second.state == SyncState.STOPPED
        assert scheduler.stats()["active_tasks"] == 0
