#!/usr/bin/env python3
"""
Metrics Collector with Prometheus Integration

This module provides metrics collection for the sync engine with:
- Cache hit / miss / eviction counters and a size gauge
- Data service call latency histograms by kind (query / rpc) and resource
- Error counters by type
- Invalidation, background sync and optimistic transaction outcomes
- Circuit breaker trips and push channel gauges

Architectural Decision: prometheus-client for industry-standard metrics
- Compatible with Grafana dashboards
- Histogram buckets for latency percentiles
- One CollectorRegistry per collector, so every SyncEngine (and every test)
  owns its metrics instead of sharing process-global state

Author: Senior Solution Architect
Date: 2026-03-02
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from querysync.core.logging.logger import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """
    Prometheus metrics for one engine instance.

    Services receive the collector through their constructor and call the
    record_* methods; every argument is a plain label value.

    Usage:
        metrics = MetricsCollector()
        metrics.record_cache_hit()
        metrics.record_fetch("query", "users", 0.042, "success")
        text = metrics.get_prometheus_metrics()
    """

    def __init__(self, registry: CollectorRegistry | None = None, namespace: str = "querysync"):
        self.registry = registry or CollectorRegistry()
        ns = namespace

        # Cache
        self.cache_hits = Counter(f"{ns}_cache_hits_total", "Total cache hits", registry=self.registry)
        self.cache_misses = Counter(f"{ns}_cache_misses_total", "Total cache misses", registry=self.registry)
        self.cache_evictions = Counter(
            f"{ns}_cache_evictions_total", "Cache entries evicted", ["reason"], registry=self.registry
        )
        self.cache_size = Gauge(f"{ns}_cache_entries", "Entries currently cached", registry=self.registry)

        # Data service
        self.fetch_duration = Histogram(
            f"{ns}_fetch_duration_seconds",
            "Data service call duration in seconds",
            ["kind", "resource", "status"],
            buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=self.registry,
        )
        self.coalesced_requests = Counter(
            f"{ns}_coalesced_requests_total",
            "Requests served by joining an in-flight fetch",
            registry=self.registry,
        )
        self.errors = Counter(
            f"{ns}_errors_total", "Errors by type and stage", ["error_type", "stage"], registry=self.registry
        )
        self.error_cluster_purges = Counter(
            f"{ns}_error_cluster_purges_total",
            "Cache regions purged after repeated failures",
            ["key_root"],
            registry=self.registry,
        )

        # Invalidation
        self.invalidations = Counter(
            f"{ns}_invalidations_total", "Invalidations by mutation type", ["mutation_type"], registry=self.registry
        )
        self.invalidated_keys = Counter(
            f"{ns}_invalidated_keys_total", "Keys evicted by invalidation", ["mutation_type"], registry=self.registry
        )

        # Background sync
        self.sync_runs = Counter(f"{ns}_sync_runs_total", "Background sync runs", ["status"], registry=self.registry)
        self.sync_retries = Counter(f"{ns}_sync_retries_total", "Background sync retries scheduled", registry=self.registry)
        self.sync_tasks = Gauge(f"{ns}_sync_tasks", "Registered background sync tasks", registry=self.registry)

        # Optimistic updates
        self.optimistic_transactions = Counter(
            f"{ns}_optimistic_transactions_total",
            "Optimistic transactions by outcome",
            ["outcome"],
            registry=self.registry,
        )

        # Stale-while-revalidate
        self.revalidations = Counter(
            f"{ns}_revalidations_total", "Keys refreshed by stale-while-revalidate", registry=self.registry
        )

        # Circuit breakers
        self.breaker_trips = Counter(
            f"{ns}_circuit_breaker_trips_total", "Circuit breaker trips", ["breaker", "scope"], registry=self.registry
        )

        # Push channels
        self.active_channels = Gauge(f"{ns}_push_channels_active", "Open push channels", registry=self.registry)
        self.push_events = Counter(
            f"{ns}_push_events_total", "Push events received", ["category", "operation"], registry=self.registry
        )

        # Performance monitor
        self.slow_operations = Counter(
            f"{ns}_slow_operations_total", "Operations above the slow threshold", ["kind"], registry=self.registry
        )

    # Cache
    def record_cache_hit(self) -> None:
        self.cache_hits.inc()

    def record_cache_miss(self) -> None:
        self.cache_misses.inc()

    def record_cache_eviction(self, reason: str, count: int = 1) -> None:
        if count > 0:
            self.cache_evictions.labels(reason=reason).inc(count)

    def set_cache_size(self, size: int) -> None:
        self.cache_size.set(size)

    # Data service
    def record_fetch(self, kind: str, resource: str, duration_seconds: float, status: str) -> None:
        self.fetch_duration.labels(kind=kind, resource=resource, status=status).observe(duration_seconds)

    def record_coalesced_request(self) -> None:
        self.coalesced_requests.inc()

    def record_error(self, error_type: str, stage: str) -> None:
        self.errors.labels(error_type=error_type, stage=stage).inc()

    def record_error_cluster_purge(self, key_root: str) -> None:
        self.error_cluster_purges.labels(key_root=key_root).inc()

    # Invalidation
    def record_invalidation(self, mutation_type: str, evicted: int) -> None:
        self.invalidations.labels(mutation_type=mutation_type).inc()
        if evicted:
            self.invalidated_keys.labels(mutation_type=mutation_type).inc(evicted)

    # Background sync
    def record_sync_run(self, status: str) -> None:
        self.sync_runs.labels(status=status).inc()

    def record_sync_retry(self) -> None:
        self.sync_retries.inc()

    def set_sync_tasks(self, count: int) -> None:
        self.sync_tasks.set(count)

    # Optimistic / SWR
    def record_optimistic(self, outcome: str) -> None:
        self.optimistic_transactions.labels(outcome=outcome).inc()

    def record_revalidation(self) -> None:
        self.revalidations.inc()

    # Circuit breakers
    def record_breaker_trip(self, breaker: str, scope: str) -> None:
        self.breaker_trips.labels(breaker=breaker, scope=scope).inc()

    # Push channels
    def set_active_channels(self, count: int) -> None:
        self.active_channels.set(count)

    def record_push_event(self, category: str, operation: str) -> None:
        self.push_events.labels(category=category, operation=operation).inc()

    # Performance monitor
    def record_slow_operation(self, kind: str) -> None:
        self.slow_operations.labels(kind=kind).inc()

    # Export
    def get_prometheus_metrics(self) -> bytes:
        """Metrics in Prometheus exposition format."""
        return generate_latest(self.registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def sample(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        """Current value of one sample (used by stats endpoints and tests)."""
        return self.registry.get_sample_value(name, labels or {})
