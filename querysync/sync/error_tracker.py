"""
Query Error Clustering

When the same logical query keeps failing, the cached region it belongs to
is probably poisoned (a bad filter shape, a revoked permission, a dropped
column). After ``threshold`` failures within ``window_ms`` every cache entry
sharing the key root (first key part, i.e. the resource name) is purged and
the count starts over.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from querysync.core.config.constants import Stage
from querysync.core.logging.logger import get_logger, log_stage
from querysync.infrastructure.cache.key_builder import KeyPattern
from querysync.infrastructure.cache.query_cache import QueryCache

logger = get_logger(__name__)


@dataclass
class ErrorCluster:
    count: int
    last_error_at: float


class QueryErrorTracker:
    """Counts failures per key root and purges the region on a cluster."""

    def __init__(
        self,
        cache: QueryCache,
        *,
        window_ms: float = 300_000,
        threshold: int = 3,
        clock: Callable[[], float] | None = None,
        metrics=None,
    ):
        self._cache = cache
        self.window_ms = window_ms
        self.threshold = threshold
        self._clock = clock or (lambda: time.time() * 1000)
        self._metrics = metrics
        self._clusters: dict[str, ErrorCluster] = {}
        self._purges = 0

    def record_failure(self, key_root: str, error: BaseException | None = None) -> bool:
        """
        Count one failure; returns True when it triggered a purge.
        """
        now = self._clock()
        cluster = self._clusters.get(key_root)
        if cluster is None or now - cluster.last_error_at > self.window_ms:
            cluster = ErrorCluster(count=0, last_error_at=now)
            self._clusters[key_root] = cluster

        cluster.count += 1
        cluster.last_error_at = now

        if cluster.count < self.threshold:
            return False

        purged = self._cache.invalidate(KeyPattern.of(key_root))
        del self._clusters[key_root]
        self._purges += 1
        log_stage(
            logger,
            Stage.ERROR_CLUSTER,
            "Repeated failures, purged cache region",
            level="warning",
            key_root=key_root,
            failures=self.threshold,
            window_ms=self.window_ms,
            purged=len(purged),
            error_type=type(error).__name__ if error else None,
        )
        if self._metrics:
            self._metrics.record_error_cluster_purge(key_root)
        return True

    def record_success(self, key_root: str) -> None:
        self._clusters.pop(key_root, None)

    def failure_count(self, key_root: str) -> int:
        cluster = self._clusters.get(key_root)
        if cluster is None or self._clock() - cluster.last_error_at > self.window_ms:
            return 0
        return cluster.count

    def stats(self) -> dict[str, Any]:
        return {
            "tracked_roots": {root: c.count for root, c in self._clusters.items()},
            "purges": self._purges,
            "window_ms": self.window_ms,
            "threshold": self.threshold,
        }
