"""
Resilience Module

Frequency circuit breaker and retry policy.
"""

from .circuit_breaker import EventWindow, FrequencyCircuitBreaker
from .retry import backoff_delay_ms, create_retry_decorator, is_retryable

__all__ = [
    "EventWindow",
    "FrequencyCircuitBreaker",
    "backoff_delay_ms",
    "create_retry_decorator",
    "is_retryable",
]
