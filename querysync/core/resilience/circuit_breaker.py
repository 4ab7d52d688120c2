"""
Frequency Circuit Breaker

Self-protection against runaway render and fetch loops.

MECHANISM OF ACTION:
-------------------
1.  **Sliding windows**:
    Every subject (a component id for the render guard, a resource / query
    type for the fetch guard) owns a bounded ring buffer of event timestamps.
    Timestamps older than the observation window are pruned on each
    observation, so the buffer length is the event count within the window.

2.  **Thresholds**:
    - count > warning: a warning is logged once per excursion
    - count > critical: the subject trips into HALTED
    - aggregate count across all subjects > global cap: the whole breaker
      trips into HALTED

3.  **State machine**: ARMED → HALTED. HALTED is terminal: further events
    for the subject (or any subject, when the breaker itself is halted) are
    rejected with CircuitHaltedError until reset() is called explicitly.

Unlike a failure-counting breaker there is no half-open probe: a render or
fetch loop does not heal itself, so recovery is a deliberate operator action.
"""

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from querysync.core.config.constants import BreakerState, Stage
from querysync.core.exceptions import CircuitHaltedError
from querysync.core.logging.logger import get_logger, log_stage

logger = get_logger(__name__)

MAX_TRACKED_SUBJECTS = 1_000


def _wall_clock_ms() -> float:
    return time.time() * 1000


@dataclass
class EventWindow:
    """Timestamps of one subject's events within the observation window."""

    subject_id: str
    timestamps: deque = field(default_factory=deque)
    warned: bool = False

    def prune(self, cutoff: float) -> None:
        while self.timestamps and self.timestamps[0] < cutoff:
            self.timestamps.popleft()
        if self.warned and not self.timestamps:
            self.warned = False

    @property
    def count(self) -> int:
        return len(self.timestamps)

    @property
    def last_seen(self) -> float | None:
        return self.timestamps[-1] if self.timestamps else None


class FrequencyCircuitBreaker:
    """
    Sliding-window frequency guard with per-subject and global halting.

    Usage:
        guard = FrequencyCircuitBreaker("render", window_ms=5000,
                                        warning_threshold=5, critical_threshold=10)
        guard.observe("UserTable")      # raises CircuitHaltedError once halted
        guard.reset()                   # back to ARMED, counters cleared
    """

    def __init__(
        self,
        name: str,
        *,
        window_ms: int = 10_000,
        warning_threshold: int = 10,
        critical_threshold: int = 20,
        global_cap: int = 200,
        clock: Callable[[], float] | None = None,
        metrics=None,
    ):
        if critical_threshold < warning_threshold:
            raise ValueError("critical_threshold must be >= warning_threshold")

        self.name = name
        self.window_ms = window_ms
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.global_cap = global_cap
        self._clock = clock or _wall_clock_ms
        self._metrics = metrics

        self._windows: dict[str, EventWindow] = {}
        self._aggregate: deque = deque(maxlen=global_cap + 1)
        self._halted_subjects: dict[str, float] = {}
        self._halted_at: float | None = None
        self._trip_count = 0

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def observe(self, subject_id: str) -> BreakerState:
        """
        Record one event for ``subject_id``.

        Returns the resulting state (HALTED when this event tripped the
        breaker). Raises CircuitHaltedError when the subject or the breaker
        was already halted; the rejected event is not counted.
        """
        if self._halted_at is not None:
            raise CircuitHaltedError(
                f"Circuit '{self.name}' is halted",
                details={"breaker": self.name, "subject": subject_id, "scope": "global"},
            ).with_suggestion("Call reset() once the event loop has been fixed")
        if subject_id in self._halted_subjects:
            raise CircuitHaltedError(
                f"Circuit '{self.name}' is halted for '{subject_id}'",
                details={"breaker": self.name, "subject": subject_id, "scope": "subject"},
            ).with_suggestion("Call reset(subject_id) once the event loop has been fixed")

        now = self._clock()
        cutoff = now - self.window_ms

        window = self._windows.get(subject_id)
        if window is None:
            if len(self._windows) >= MAX_TRACKED_SUBJECTS:
                self._drop_idle_windows(cutoff)
            window = EventWindow(subject_id, deque(maxlen=self.critical_threshold + 1))
            self._windows[subject_id] = window

        window.prune(cutoff)
        window.timestamps.append(now)
        while self._aggregate and self._aggregate[0] < cutoff:
            self._aggregate.popleft()
        self._aggregate.append(now)

        count = window.count
        if count > self.critical_threshold:
            self._halt_subject(subject_id, now, count)
            return BreakerState.HALTED

        if len(self._aggregate) > self.global_cap:
            self._halt_all(now)
            return BreakerState.HALTED

        if count > self.warning_threshold and not window.warned:
            window.warned = True
            log_stage(
                logger,
                Stage.CIRCUIT_BREAKER,
                f"High event frequency on '{subject_id}'",
                level="warning",
                breaker=self.name,
                subject=subject_id,
                count=count,
                window_ms=self.window_ms,
                threshold=self.warning_threshold,
            )

        return BreakerState.ARMED

    def allow(self, subject_id: str) -> bool:
        """Non-raising check: False when the subject or breaker is halted."""
        return self._halted_at is None and subject_id not in self._halted_subjects

    def _halt_subject(self, subject_id: str, now: float, count: int) -> None:
        self._halted_subjects[subject_id] = now
        self._trip_count += 1
        log_stage(
            logger,
            Stage.CIRCUIT_BREAKER,
            f"Circuit '{self.name}' halted for '{subject_id}'",
            level="error",
            breaker=self.name,
            subject=subject_id,
            count=count,
            window_ms=self.window_ms,
            threshold=self.critical_threshold,
        )
        if self._metrics:
            self._metrics.record_breaker_trip(self.name, "subject")

    def _halt_all(self, now: float) -> None:
        self._halted_at = now
        self._trip_count += 1
        log_stage(
            logger,
            Stage.CIRCUIT_BREAKER,
            f"Circuit '{self.name}' halted: aggregate event rate exceeded",
            level="critical",
            breaker=self.name,
            aggregate=len(self._aggregate),
            global_cap=self.global_cap,
            window_ms=self.window_ms,
        )
        if self._metrics:
            self._metrics.record_breaker_trip(self.name, "global")

    def _drop_idle_windows(self, cutoff: float) -> None:
        for subject_id in [
            s for s, w in self._windows.items()
            if s not in self._halted_subjects and (w.last_seen is None or w.last_seen < cutoff)
        ]:
            del self._windows[subject_id]

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_halted(self) -> bool:
        """True when the breaker as a whole is halted."""
        return self._halted_at is not None

    def state(self, subject_id: str | None = None) -> BreakerState:
        if self._halted_at is not None:
            return BreakerState.HALTED
        if subject_id is not None and subject_id in self._halted_subjects:
            return BreakerState.HALTED
        return BreakerState.ARMED

    def count(self, subject_id: str) -> int:
        """Events for ``subject_id`` within the current window."""
        window = self._windows.get(subject_id)
        if window is None:
            return 0
        window.prune(self._clock() - self.window_ms)
        return window.count

    def reset(self, subject_id: str | None = None) -> None:
        """
        Return to ARMED with cleared counters.

        With a subject id only that subject is re-armed; the breaker-wide
        halt (if any) is left in place.
        """
        if subject_id is not None:
            self._halted_subjects.pop(subject_id, None)
            self._windows.pop(subject_id, None)
            log_stage(logger, Stage.CIRCUIT_BREAKER, "Subject re-armed", breaker=self.name, subject=subject_id)
            return

        self._windows.clear()
        self._aggregate.clear()
        self._halted_subjects.clear()
        self._halted_at = None
        log_stage(logger, Stage.CIRCUIT_BREAKER, f"Circuit '{self.name}' reset", breaker=self.name)

    def stats(self) -> dict[str, Any]:
        cutoff = self._clock() - self.window_ms
        for window in self._windows.values():
            window.prune(cutoff)
        while self._aggregate and self._aggregate[0] < cutoff:
            self._aggregate.popleft()

        busiest = sorted(self._windows.values(), key=lambda w: w.count, reverse=True)[:10]
        return {
            "name": self.name,
            "state": self.state().value,
            "window_ms": self.window_ms,
            "warning_threshold": self.warning_threshold,
            "critical_threshold": self.critical_threshold,
            "global_cap": self.global_cap,
            "aggregate_count": len(self._aggregate),
            "halted_subjects": sorted(self._halted_subjects),
            "trip_count": self._trip_count,
            "busiest_subjects": {w.subject_id: w.count for w in busiest if w.count},
        }
