"""
Performance Monitor

Latency bookkeeping for data service calls, sync runs and component renders.

Architectural Decision: Context manager pattern for automatic timing
- Automatic start/end time capture with time.perf_counter()
- Failure tracking (the wrapped block raised)
- Per-operation min / avg / max and a rolling list of slow operations
- Optional persistence of recent samples to the local key-value store

The monitor is diagnostic plumbing: it must never break the code it
observes. Mis-instrumented input (negative, NaN or non-numeric durations)
and storage failures are logged at debug level and ignored.

Author: System Architect
Date: 2026-03-02
"""

import math
import time
from collections import deque
from collections.abc import Awaitable, Callable
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Any, TypeVar

from querysync.core.config.constants import (
    PERFORMANCE_METRICS_PERSISTED,
    PERFORMANCE_METRICS_STORE_KEY,
    Stage,
)
from querysync.core.logging.logger import get_logger, log_stage

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class OperationSample:
    """
    One timed operation.

    Attributes:
        name: Operation name (e.g. "query:users", "sync:dashboard", component id)
        kind: "operation" or "render"
        duration_ms: Measured duration in milliseconds
        timestamp: Epoch milliseconds when the sample was recorded
        success: False when the operation raised
    """

    name: str
    kind: str
    duration_ms: float
    timestamp: float
    success: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class LatencyStats:
    """Running latency aggregate for one operation name."""

    count: int = 0
    failures: int = 0
    total_ms: float = 0.0
    min_ms: float = math.inf
    max_ms: float = 0.0
    last_ms: float = 0.0

    def add(self, duration_ms: float, success: bool) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        self.last_ms = duration_ms
        if not success:
            self.failures += 1

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "failures": self.failures,
            "min_ms": round(self.min_ms, 3) if self.count else 0.0,
            "avg_ms": round(self.avg_ms, 3),
            "max_ms": round(self.max_ms, 3),
            "last_ms": round(self.last_ms, 3),
        }


class PerformanceMonitor:
    """
    Records latency samples and surfaces slow operations.

    Usage:
        monitor = PerformanceMonitor(slow_threshold_ms=1000)

        with monitor.track("query:users"):
            ...

        result = await monitor.monitor_operation("sync:dashboard", refresh)
        monitor.record_render("UserTable", 23.5)
        monitor.get_metrics()
    """

    def __init__(
        self,
        *,
        slow_threshold_ms: float = 1_000.0,
        slow_render_threshold_ms: float = 16.0,
        max_slow_operations: int = 50,
        max_samples: int = 1_000,
        store=None,
        clock: Callable[[], float] | None = None,
        metrics=None,
    ):
        self.slow_threshold_ms = slow_threshold_ms
        self.slow_render_threshold_ms = slow_render_threshold_ms
        self._store = store
        self._clock = clock or (lambda: time.time() * 1000)
        self._metrics = metrics

        self._stats: dict[str, LatencyStats] = {}
        self._samples: deque[OperationSample] = deque(maxlen=max_samples)
        self._slow: deque[OperationSample] = deque(maxlen=max_slow_operations)
        self._rejected = 0

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(
        self, name: str, duration_ms: Any, success: bool = True, kind: str = "operation"
    ) -> OperationSample | None:
        """
        Record one sample. Returns None when the input was unusable.
        """
        try:
            duration = float(duration_ms)
            if math.isnan(duration) or math.isinf(duration) or duration < 0:
                raise ValueError(f"invalid duration {duration_ms!r}")
            sample = OperationSample(str(name), kind, duration, self._clock(), bool(success))
        except (TypeError, ValueError) as e:
            self._rejected += 1
            log_stage(logger, Stage.PERFORMANCE, "Ignoring malformed sample", level="debug", name=name, error=str(e))
            return None

        self._stats.setdefault(f"{kind}:{sample.name}" if kind != "operation" else sample.name, LatencyStats()).add(
            duration, sample.success
        )
        self._samples.append(sample)

        threshold = self.slow_render_threshold_ms if kind == "render" else self.slow_threshold_ms
        if duration > threshold:
            self._slow.append(sample)
            log_stage(
                logger,
                Stage.PERFORMANCE,
                f"Slow {kind} detected",
                level="warning",
                name=sample.name,
                duration_ms=round(duration, 2),
                threshold_ms=threshold,
            )
            if self._metrics:
                self._metrics.record_slow_operation(kind)

        return sample

    def record_render(self, component_id: str, duration_ms: Any) -> OperationSample | None:
        return self.record(component_id, duration_ms, kind="render")

    @contextmanager
    def track(self, name: str, kind: str = "operation"):
        """Time the wrapped block; a raised exception marks the sample failed."""
        start = time.perf_counter()
        success = True
        try:
            yield
        except BaseException:
            success = False
            raise
        finally:
            self.record(name, (time.perf_counter() - start) * 1000, success=success, kind=kind)

    async def monitor_operation(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Await ``operation()`` under track(name) and return its result."""
        with self.track(name):
            return await operation()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_stats(self, name: str) -> dict[str, Any] | None:
        stats = self._stats.get(name)
        return stats.to_dict() if stats else None

    def slowest_operations(self, limit: int = 10) -> list[dict[str, Any]]:
        ranked = sorted(self._stats.items(), key=lambda item: item[1].avg_ms, reverse=True)
        return [{"name": name, **stats.to_dict()} for name, stats in ranked[:limit]]

    def get_metrics(self) -> dict[str, Any]:
        return {
            "operations": {name: stats.to_dict() for name, stats in self._stats.items()},
            "slow_operations": [sample.to_dict() for sample in self._slow],
            "slowest": self.slowest_operations(),
            "samples": len(self._samples),
            "rejected_samples": self._rejected,
            "slow_threshold_ms": self.slow_threshold_ms,
            "slow_render_threshold_ms": self.slow_render_threshold_ms,
        }

    def persist(self) -> bool:
        """Write the most recent samples to the local store (best effort)."""
        if self._store is None:
            return False
        recent = [sample.to_dict() for sample in list(self._samples)[-PERFORMANCE_METRICS_PERSISTED:]]
        return bool(self._store.set(PERFORMANCE_METRICS_STORE_KEY, recent))

    def load_persisted(self) -> list[dict[str, Any]]:
        if self._store is None:
            return []
        persisted = self._store.get(PERFORMANCE_METRICS_STORE_KEY, [])
        return persisted if isinstance(persisted, list) else []

    def reset(self) -> None:
        self._stats.clear()
        self._samples.clear()
        self._slow.clear()
        self._rejected = 0
