"""
Background Sync Scheduler

Runs registered sync functions on a priority-adjusted interval, retrying
transient failures with exponential backoff.

Task lifecycle:

    IDLE ──run──▶ RUNNING ──ok──▶ IDLE
                     │
                     └─fail─▶ BACKOFF_WAIT ──delay──▶ RUNNING
                     (retryable and retry_count < max_retries)

    any state ──unsubscribe / shutdown──▶ STOPPED

A task runs once immediately on subscribe and then every effective interval:

    high    max(interval / 2, 60s)
    normal  interval
    low     interval * 2

Retry delay: min(base * 2^retry_count, max) with retry_count taken before
it is incremented, i.e. 1s, 2s, 4s, ... A successful run resets the count.
Runs never overlap: a tick that finds the task in flight is skipped.

Author: System Architect
Date: 2026-03-02
"""

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from querysync.core.config.constants import Stage, SyncPriority, SyncState
from querysync.core.config.settings import Settings, get_settings
from querysync.core.exceptions import DataServiceTimeoutError, SyncTaskNotFoundError
from querysync.core.logging.logger import get_logger, log_stage
from querysync.core.resilience.retry import backoff_delay_ms, is_retryable

logger = get_logger(__name__)

SyncFunction = Callable[[], Awaitable[Any]]


@dataclass
class SyncTask:
    task_id: str
    sync_fn: SyncFunction
    interval_ms: float
    priority: SyncPriority = SyncPriority.NORMAL
    max_retries: int = 3
    retry_on_failure: bool = True
    timeout: float | None = None
    high_priority_floor_ms: float = 60_000

    retry_count: int = 0
    last_run_at: float | None = None
    in_flight: bool = False
    state: SyncState = SyncState.IDLE
    run_count: int = 0
    failure_count: int = 0
    last_error: str | None = None
    created_at: float = field(default_factory=lambda: time.time() * 1000)

    @property
    def effective_interval_ms(self) -> float:
        if self.priority == SyncPriority.HIGH:
            return max(self.interval_ms / 2, self.high_priority_floor_ms)
        if self.priority == SyncPriority.LOW:
            return self.interval_ms * 2
        return self.interval_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "priority": self.priority.value,
            "interval_ms": self.interval_ms,
            "effective_interval_ms": self.effective_interval_ms,
            "state": self.state.value,
            "in_flight": self.in_flight,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
            "last_run_at": self.last_run_at,
            "last_error": self.last_error,
        }


class SyncHandle:
    """Returned by subscribe(); cancels the task when called or unsubscribed."""

    def __init__(self, scheduler: "BackgroundSyncScheduler", task_id: str):
        self._scheduler = scheduler
        self.task_id = task_id

    async def run_now(self) -> bool:
        return await self._scheduler.run_now(self.task_id)

    def unsubscribe(self) -> bool:
        return self._scheduler.unsubscribe(self.task_id)

    __call__ = unsubscribe

    @property
    def task(self) -> SyncTask | None:
        return self._scheduler.get_task(self.task_id)


class BackgroundSyncScheduler:
    """
    Periodic sync runner with retry and priority.

    Usage:
        scheduler = BackgroundSyncScheduler(settings=settings)
        handle = scheduler.subscribe(refresh_dashboard, priority=SyncPriority.HIGH)
        ...
        handle.unsubscribe()
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        metrics=None,
    ):
        settings = settings or get_settings()
        self._sync_settings = settings.sync
        self._retry_settings = settings.retry
        self._clock = clock or (lambda: time.time() * 1000)
        self._sleep = sleep or asyncio.sleep
        self._metrics = metrics

        self._tasks: dict[str, SyncTask] = {}
        self._loops: dict[str, asyncio.Task] = {}
        self._retry_timers: dict[str, asyncio.Task] = {}
        self._runs = 0
        self._failures = 0
        self._retries = 0
        self._skipped = 0

    # =========================================================================
    # Registration
    # =========================================================================

    def subscribe(
        self,
        sync_fn: SyncFunction,
        *,
        interval_ms: float | None = None,
        priority: SyncPriority | str = SyncPriority.NORMAL,
        max_retries: int | None = None,
        retry_on_failure: bool = True,
        timeout: float | None = None,
        task_id: str | None = None,
    ) -> SyncHandle:
        """
        Register a sync function. It runs once right away and then on its
        effective interval until unsubscribed.

        Must be called from within a running event loop.
        """
        task_id = task_id or f"sync_{uuid.uuid4().hex[:12]}"
        if task_id in self._tasks:
            self.unsubscribe(task_id)

        task = SyncTask(
            task_id=task_id,
            sync_fn=sync_fn,
            interval_ms=interval_ms if interval_ms is not None else self._sync_settings.SYNC_DEFAULT_INTERVAL_MS,
            priority=SyncPriority(priority),
            max_retries=max_retries if max_retries is not None else self._sync_settings.SYNC_MAX_RETRIES,
            retry_on_failure=retry_on_failure,
            timeout=timeout if timeout is not None else self._sync_settings.SYNC_RUN_TIMEOUT_SECONDS,
            high_priority_floor_ms=self._sync_settings.SYNC_HIGH_PRIORITY_MIN_INTERVAL_MS,
            created_at=self._clock(),
        )
        self._tasks[task_id] = task
        self._loops[task_id] = asyncio.create_task(self._interval_loop(task), name=f"sync-loop:{task_id}")
        self._update_gauge()

        log_stage(
            logger,
            Stage.BACKGROUND_SYNC,
            "Sync task registered",
            task_id=task_id,
            priority=task.priority.value,
            effective_interval_ms=task.effective_interval_ms,
        )
        return SyncHandle(self, task_id)

    def unsubscribe(self, task_id: str) -> bool:
        """Stop a task and cancel its pending timers. False if unknown."""
        task = self._tasks.pop(task_id, None)
        if task is None:
            return False

        task.state = SyncState.STOPPED
        for timers in (self._loops, self._retry_timers):
            timer = timers.pop(task_id, None)
            if timer is not None and not timer.done():
                timer.cancel()

        self._update_gauge()
        log_stage(logger, Stage.BACKGROUND_SYNC, "Sync task stopped", task_id=task_id, runs=task.run_count)
        return True

    def get_task(self, task_id: str) -> SyncTask | None:
        return self._tasks.get(task_id)

    @property
    def task_ids(self) -> list[str]:
        return list(self._tasks)

    # =========================================================================
    # Execution
    # =========================================================================

    async def run_now(self, task_id: str) -> bool:
        """
        Run a task immediately.

        Returns:
            True on success, False on failure or when the task was in flight

        Raises:
            SyncTaskNotFoundError: If task_id is not registered
        """
        task = self._tasks.get(task_id)
        if task is None:
            raise SyncTaskNotFoundError(f"Sync task '{task_id}' is not registered", details={"task_id": task_id})
        return await self._run(task)

    async def _interval_loop(self, task: SyncTask) -> None:
        while task.state != SyncState.STOPPED:
            await self._run(task)
            await self._sleep(task.effective_interval_ms / 1000)

    async def _retry_after(self, task: SyncTask, delay_ms: float) -> None:
        await self._sleep(delay_ms / 1000)
        if self._retry_timers.get(task.task_id) is asyncio.current_task():
            del self._retry_timers[task.task_id]
        if task.state != SyncState.STOPPED:
            await self._run(task)

    async def _run(self, task: SyncTask) -> bool:
        if task.state == SyncState.STOPPED:
            return False
        if task.in_flight:
            self._skipped += 1
            log_stage(logger, Stage.BACKGROUND_SYNC, "Sync run skipped: in flight", level="debug", task_id=task.task_id)
            return False

        task.in_flight = True
        task.state = SyncState.RUNNING
        task.last_run_at = self._clock()
        task.run_count += 1
        self._runs += 1
        start = time.perf_counter()

        try:
            try:
                if task.timeout:
                    await asyncio.wait_for(task.sync_fn(), task.timeout)
                else:
                    await task.sync_fn()
            except asyncio.TimeoutError as e:
                raise DataServiceTimeoutError(
                    f"Sync task '{task.task_id}' exceeded its {task.timeout}s deadline",
                    details={"task_id": task.task_id},
                ) from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._on_failure(task, e)
            return False
        else:
            task.retry_count = 0
            task.last_error = None
            task.state = SyncState.IDLE
            log_stage(
                logger,
                Stage.BACKGROUND_SYNC,
                "Sync run completed",
                level="debug",
                task_id=task.task_id,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            if self._metrics:
                self._metrics.record_sync_run("success")
            return True
        finally:
            task.in_flight = False

    def _on_failure(self, task: SyncTask, error: Exception) -> None:
        task.failure_count += 1
        task.last_error = str(error)[:500]
        self._failures += 1
        if self._metrics:
            self._metrics.record_sync_run("failure")

        if task.state == SyncState.STOPPED:
            return

        retryable = is_retryable(error)
        if task.retry_on_failure and retryable and task.retry_count < task.max_retries:
            delay_ms = backoff_delay_ms(
                task.retry_count,
                base_delay_ms=self._retry_settings.RETRY_BASE_DELAY_MS,
                max_delay_ms=self._retry_settings.RETRY_MAX_DELAY_MS,
            )
            task.retry_count += 1
            task.state = SyncState.BACKOFF_WAIT
            self._retries += 1
            previous = self._retry_timers.pop(task.task_id, None)
            if previous is not None and not previous.done() and previous is not asyncio.current_task():
                previous.cancel()
            self._retry_timers[task.task_id] = asyncio.create_task(
                self._retry_after(task, delay_ms), name=f"sync-retry:{task.task_id}"
            )
            log_stage(
                logger,
                Stage.BACKGROUND_SYNC,
                "Sync run failed, retry scheduled",
                level="warning",
                task_id=task.task_id,
                attempt=task.retry_count,
                max_retries=task.max_retries,
                delay_ms=delay_ms,
                error_type=type(error).__name__,
                error=task.last_error,
            )
            if self._metrics:
                self._metrics.record_sync_retry()
            return

        task.state = SyncState.IDLE
        log_stage(
            logger,
            Stage.BACKGROUND_SYNC,
            "Sync run failed",
            level="error",
            task_id=task.task_id,
            retryable=retryable,
            retries_used=task.retry_count,
            error_type=type(error).__name__,
            error=task.last_error,
        )

    # =========================================================================
    # Introspection / teardown
    # =========================================================================

    def _update_gauge(self) -> None:
        if self._metrics:
            self._metrics.set_sync_tasks(len(self._tasks))

    def stats(self) -> dict[str, Any]:
        return {
            "tasks": {task_id: task.to_dict() for task_id, task in self._tasks.items()},
            "active_tasks": len(self._tasks),
            "pending_retries": sum(1 for t in self._retry_timers.values() if not t.done()),
            "runs": self._runs,
            "failures": self._failures,
            "retries": self._retries,
            "skipped_runs": self._skipped,
        }

    async def shutdown(self) -> None:
        timers = [t for t in (*self._loops.values(), *self._retry_timers.values()) if not t.done()]
        for task_id in list(self._tasks):
            self.unsubscribe(task_id)
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        log_stage(logger, Stage.SHUTDOWN, "Background sync scheduler stopped", cancelled_timers=len(timers))
