"""
Optimistic Update Manager

Writes a speculative value into the cache before the server confirms a
mutation, keeping a snapshot so the write can be undone.

    handle = manager.apply(key, lambda prev: {**prev, "name": "new"})
    try:
        await save_to_server()
        handle.confirm()
    except Exception:
        handle.rollback()

apply() first cancels any in-flight fetch for the key so a slower response
cannot overwrite the optimistic value. The snapshot is a deep copy of the
cache entry (data, timestamp and ttl), so rollback restores it exactly even
if other writes hit the key in between; with no prior entry rollback removes
the key.

Snapshots are tracked per (key, rollback_id). Applying again with the same
rollback_id supersedes the outstanding transaction: its handle becomes inert
and the new snapshot captures the current value. A different rollback_id is
an independent transaction.

Transactions nobody settles are force-rolled-back after the configured
timeout (OPTIMISTIC_TRANSACTION_TIMEOUT_MS, 0 disables).
"""

import asyncio
import copy
import time
import uuid
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from querysync.core.config.constants import Stage
from querysync.core.config.settings import Settings, get_settings
from querysync.core.exceptions import TransactionClosedError
from querysync.core.logging.logger import get_logger, log_stage
from querysync.infrastructure.cache.key_builder import fingerprint
from querysync.infrastructure.cache.query_cache import CacheEntry, QueryCache

logger = get_logger(__name__)

PENDING = "pending"
CONFIRMED = "confirmed"
ROLLED_BACK = "rolled_back"
TIMED_OUT = "timed_out"
SUPERSEDED = "superseded"


@dataclass
class OptimisticTransaction:
    affected_key: str
    rollback_id: str
    previous_snapshot: CacheEntry | None
    applied: Any
    created_at: float
    id: str = field(default_factory=lambda: f"txn_{uuid.uuid4().hex[:12]}")
    outcome: str = PENDING

    @property
    def had_previous(self) -> bool:
        return self.previous_snapshot is not None

    @property
    def settled(self) -> bool:
        return self.outcome != PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "affected_key": self.affected_key,
            "rollback_id": self.rollback_id,
            "had_previous": self.had_previous,
            "created_at": self.created_at,
            "outcome": self.outcome,
        }


class OptimisticHandle:
    """Caller-side view of one transaction."""

    def __init__(self, manager: "OptimisticUpdateManager", transaction: OptimisticTransaction):
        self._manager = manager
        self.transaction = transaction

    @property
    def key(self) -> str:
        return self.transaction.affected_key

    @property
    def outcome(self) -> str:
        return self.transaction.outcome

    @property
    def expired(self) -> bool:
        return self.transaction.outcome == TIMED_OUT

    def rollback(self) -> bool:
        """Restore the snapshot. False if the transaction was already settled."""
        return self._manager._rollback(self.transaction, ROLLED_BACK)

    def confirm(self) -> bool:
        """Keep the optimistic value. False if the transaction was already settled."""
        return self._manager._confirm(self.transaction)


class OptimisticUpdateManager:
    """
    Applies, confirms and rolls back optimistic cache writes.

    Usage:
        async with manager.transaction(key, add_member) as handle:
            await api.add_member(...)
    """

    def __init__(
        self,
        cache: QueryCache,
        executor=None,
        *,
        settings: Settings | None = None,
        clock: Callable[[], float] | None = None,
        metrics=None,
    ):
        settings = settings or get_settings()
        self._cache = cache
        self._executor = executor
        self._clock = clock or (lambda: time.time() * 1000)
        self._metrics = metrics
        self.timeout_ms = settings.optimistic.OPTIMISTIC_TRANSACTION_TIMEOUT_MS

        self._transactions: dict[tuple[str, str], OptimisticTransaction] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._counts = {CONFIRMED: 0, ROLLED_BACK: 0, TIMED_OUT: 0, SUPERSEDED: 0}
        self._applied = 0

    def apply(
        self,
        key: str,
        updater: Callable[[Any], Any],
        rollback_id: str | None = None,
        ttl_ms: float | None = None,
    ) -> OptimisticHandle:
        """
        Write ``updater(previous)`` to ``key`` and return a settle handle.

        ``previous`` is the currently cached value (None when absent or
        expired). An exception raised by ``updater`` propagates and leaves the
        cache untouched.
        """
        rollback_id = rollback_id or fingerprint(key)
        if self._executor is not None:
            self._executor.cancel(key)

        now = self._clock()
        current = self._cache.peek(key)
        previous = current.data if current is not None and current.is_valid(now) else None
        snapshot = copy.deepcopy(current) if current is not None else None

        new_value = updater(previous)

        existing = self._transactions.get((key, rollback_id))
        if existing is not None:
            self._settle(existing, SUPERSEDED)

        self._cache.set(key, new_value, ttl_ms)
        transaction = OptimisticTransaction(
            affected_key=key,
            rollback_id=rollback_id,
            previous_snapshot=snapshot,
            applied=new_value,
            created_at=now,
        )
        self._transactions[(key, rollback_id)] = transaction
        self._schedule_timeout(transaction)
        self._applied += 1

        log_stage(
            logger,
            Stage.OPTIMISTIC_UPDATE,
            "Optimistic update applied",
            level="debug",
            transaction_id=transaction.id,
            key=key[:120],
            had_previous=transaction.had_previous,
            superseded=existing.id if existing is not None else None,
        )
        return OptimisticHandle(self, transaction)

    @asynccontextmanager
    async def transaction(
        self,
        key: str,
        updater: Callable[[Any], Any],
        rollback_id: str | None = None,
        ttl_ms: float | None = None,
    ):
        """
        Confirm on normal exit, roll back when the block raises.

        Raises:
            TransactionClosedError: If the timeout rolled the transaction back
                before the block finished
        """
        handle = self.apply(key, updater, rollback_id=rollback_id, ttl_ms=ttl_ms)
        try:
            yield handle
        except BaseException:
            handle.rollback()
            raise
        if handle.expired:
            raise TransactionClosedError(
                "Optimistic transaction timed out and was rolled back",
                details={"transaction_id": handle.transaction.id, "key": key[:120]},
            )
        handle.confirm()

    # =========================================================================
    # Settlement
    # =========================================================================

    def _rollback(self, transaction: OptimisticTransaction, outcome: str) -> bool:
        if transaction.settled:
            return False

        key = transaction.affected_key
        restored = transaction.had_previous
        if self._executor is not None:
            self._executor.cancel(key)
        if restored:
            self._cache.restore(copy.deepcopy(transaction.previous_snapshot))
        else:
            self._cache.remove(key)

        self._settle(transaction, outcome)
        log_stage(
            logger,
            Stage.OPTIMISTIC_UPDATE,
            "Optimistic update rolled back" if outcome == ROLLED_BACK else "Optimistic transaction timed out, rolled back",
            level="info" if outcome == ROLLED_BACK else "warning",
            transaction_id=transaction.id,
            key=key[:120],
            restored=restored,
            age_ms=round(self._clock() - transaction.created_at, 2),
        )
        return True

    def _confirm(self, transaction: OptimisticTransaction) -> bool:
        if transaction.settled:
            return False
        self._settle(transaction, CONFIRMED)
        log_stage(
            logger,
            Stage.OPTIMISTIC_UPDATE,
            "Optimistic update confirmed",
            level="debug",
            transaction_id=transaction.id,
        )
        return True

    def _settle(self, transaction: OptimisticTransaction, outcome: str) -> None:
        transaction.outcome = outcome
        if outcome == CONFIRMED:
            transaction.previous_snapshot = None
        slot = (transaction.affected_key, transaction.rollback_id)
        if self._transactions.get(slot) is transaction:
            del self._transactions[slot]
        timer = self._timers.pop(transaction.id, None)
        if timer is not None:
            timer.cancel()
        self._counts[outcome] += 1
        if self._metrics:
            self._metrics.record_optimistic(outcome)

    # =========================================================================
    # Timeout
    # =========================================================================

    def _schedule_timeout(self, transaction: OptimisticTransaction) -> None:
        if not self.timeout_ms:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log_stage(
                logger,
                Stage.OPTIMISTIC_UPDATE,
                "No running loop, transaction timeout not armed",
                level="debug",
                transaction_id=transaction.id,
            )
            return
        self._timers[transaction.id] = loop.call_later(
            self.timeout_ms / 1000, self._rollback, transaction, TIMED_OUT
        )

    def expire_overdue(self) -> int:
        """Roll back every pending transaction older than the timeout."""
        if not self.timeout_ms:
            return 0
        now = self._clock()
        overdue = [t for t in self._transactions.values() if now - t.created_at >= self.timeout_ms]
        return sum(1 for t in overdue if self._rollback(t, TIMED_OUT))

    # =========================================================================
    # Introspection / teardown
    # =========================================================================

    def pending(self) -> list[dict[str, Any]]:
        return [t.to_dict() for t in self._transactions.values()]

    def stats(self) -> dict[str, Any]:
        return {
            "pending": len(self._transactions),
            "applied": self._applied,
            "confirmed": self._counts[CONFIRMED],
            "rolled_back": self._counts[ROLLED_BACK],
            "timed_out": self._counts[TIMED_OUT],
            "superseded": self._counts[SUPERSEDED],
            "timeout_ms": self.timeout_ms,
        }

    def shutdown(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
