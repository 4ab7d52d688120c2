"""
Circuit Breaker Exceptions

All exceptions related to the render / fetch frequency guards

Author: System Architect
Date: 2026-03-02
"""

from querysync.core.exceptions.base import QuerySyncError


class CircuitBreakerError(QuerySyncError):
    """Base exception for circuit breaker errors."""
    pass


class CircuitHaltedError(CircuitBreakerError):
    """
    Raised when an event is observed for a halted subject or breaker.

    Halted is terminal until reset() is called explicitly, so retrying
    cannot succeed and this error is not retryable.

    Common causes:
    - Component re-rendering in a loop
    - Query refetching in a loop (unstable key, effect dependency churn)
    - Aggregate event rate above the global cap
    """
    pass
