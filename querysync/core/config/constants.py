"""
System Constants and Enumerations

This module defines system-wide constants and enumerations used across
the query synchronization engine.

Architectural Decision: Centralized constants for maintainability
- Single source of truth for magic numbers
- Type-safe enums for state management
- Named cache presets so callers pick a freshness profile, not raw numbers

Author: System Architect
Date: 2026-03-02
"""

from dataclasses import dataclass
from enum import Enum

# ============================================================================
# Stage Identifiers (for structured logging)
# ============================================================================


class Stage(str, Enum):
    """
    Engine stages used to label log entries.

    Format: {SEQUENCE}_{DESCRIPTIVE_NAME}
    - Read path stages are numbered in the order a query flows through them
    - Cross-cutting concerns use an alphabetic prefix

    Examples:
        log_stage(logger, Stage.CACHE_LOOKUP, "Cache hit", cache_key=key)
        log_stage(logger, Stage.CIRCUIT_BREAKER, "Subject halted", subject=s)
    """

    # Read / write path (sequential)
    INITIALIZATION = "0.0_INITIALIZATION"
    CACHE_LOOKUP = "1.0_CACHE_LOOKUP"
    BATCH_EXECUTION = "2.0_BATCH_EXECUTION"
    STALE_WHILE_REVALIDATE = "3.0_STALE_WHILE_REVALIDATE"
    OPTIMISTIC_UPDATE = "4.0_OPTIMISTIC_UPDATE"
    INVALIDATION = "5.0_INVALIDATION"
    BACKGROUND_SYNC = "6.0_BACKGROUND_SYNC"
    PUSH_SUBSCRIPTION = "7.0_PUSH_SUBSCRIPTION"
    SHUTDOWN = "8.0_SHUTDOWN"

    # Cross-cutting concerns
    CIRCUIT_BREAKER = "CB_CIRCUIT_BREAKER"
    RETRY = "R_RETRY_LOGIC"
    ERROR_CLUSTER = "EC_ERROR_CLUSTER"
    PERFORMANCE = "PM_PERFORMANCE_MONITOR"
    LOCAL_STORE = "LS_LOCAL_STORE"
    DATA_SERVICE = "DS_DATA_SERVICE"


# ============================================================================
# State Enumerations
# ============================================================================


class BreakerState(str, Enum):
    """
    Frequency circuit breaker states.

    ARMED: events are counted and accepted
    HALTED: events are rejected until reset() (terminal otherwise)
    """

    ARMED = "armed"
    HALTED = "halted"


class SyncState(str, Enum):
    """Background sync task lifecycle."""

    IDLE = "idle"
    RUNNING = "running"
    BACKOFF_WAIT = "backoff_wait"
    STOPPED = "stopped"


class SyncPriority(str, Enum):
    """Priority class scaling a sync task's base interval."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class ChannelState(str, Enum):
    """Push channel connection state."""

    CONNECTING = "connecting"
    OPEN = "open"
    FAILED = "failed"
    CLOSED = "closed"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# ============================================================================
# Time Constants (milliseconds)
# ============================================================================

SECOND_MS = 1_000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS

# Backoff: min(RETRY_BASE_DELAY_MS * 2^n, RETRY_MAX_DELAY_MS)
RETRY_BASE_DELAY_MS = 1_000
RETRY_MAX_DELAY_MS = 30_000

DEFAULT_SWR_DEBOUNCE_MS = 1_000
STALE_DATA_MAX_AGE_MS = HOUR_MS

# Local store TTLs
ORGANIZATION_CACHE_TTL_MS = 5 * MINUTE_MS
SEARCH_CACHE_TTL_MS = 2 * MINUTE_MS
ACTIVITIES_CACHE_TTL_MS = 10 * MINUTE_MS
IMAGE_CACHE_TTL_MS = 24 * HOUR_MS
SEARCH_CACHE_MAX_ITEMS = 50

# Performance monitor
PERFORMANCE_METRICS_STORE_KEY = "performance_metrics"
PERFORMANCE_METRICS_PERSISTED = 100


# ============================================================================
# Cache Presets
# ============================================================================


@dataclass(frozen=True)
class CachePreset:
    """
    Freshness profile for a class of data.

    stale_time_ms: age after which a read triggers background revalidation
    gc_time_ms: hard TTL of the cache entry
    refetch_interval_ms: background sync interval (None = no polling)
    """

    name: str
    stale_time_ms: int
    gc_time_ms: int
    refetch_interval_ms: int | None = None


STATIC = CachePreset("static", 15 * MINUTE_MS, HOUR_MS)
SEMI_STATIC = CachePreset("semi_static", 5 * MINUTE_MS, 30 * MINUTE_MS)
DYNAMIC = CachePreset("dynamic", MINUTE_MS, 10 * MINUTE_MS)
REALTIME = CachePreset("realtime", 0, 5 * MINUTE_MS, refetch_interval_ms=30 * SECOND_MS)
BACKGROUND = CachePreset("background", 2 * MINUTE_MS, 15 * MINUTE_MS, refetch_interval_ms=5 * MINUTE_MS)

CACHE_PRESETS = {preset.name: preset for preset in (STATIC, SEMI_STATIC, DYNAMIC, REALTIME, BACKGROUND)}
