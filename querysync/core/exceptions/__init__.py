"""
Exception Module

Structured exception hierarchy for the query synchronization engine.

Module Structure:
-----------------
- **base.py**: QuerySyncError base class + ConfigurationError
- **data_service.py**: Transient / non-retryable data service errors
- **cache.py**: Cache key errors
- **circuit_breaker.py**: Render / fetch guard errors
- **sync.py**: Background sync and optimistic transaction errors
- **subscription.py**: Push channel errors
- **storage.py**: Local key-value store errors

Usage:
------
```python
from querysync.core.exceptions import DataServiceTimeoutError, CircuitHaltedError
```

Author: System Architect
Date: 2026-03-02
"""

from querysync.core.exceptions.base import ConfigurationError, QuerySyncError
from querysync.core.exceptions.cache import CacheError, InvalidCacheKeyError
from querysync.core.exceptions.circuit_breaker import CircuitBreakerError, CircuitHaltedError
from querysync.core.exceptions.data_service import (
    DataServiceAuthError,
    DataServiceConnectionError,
    DataServiceError,
    DataServiceNotFoundError,
    DataServiceTimeoutError,
    DataServiceUnavailableError,
    DataServiceValidationError,
    FetchCancelledError,
    NonRetryableDataServiceError,
    TransientDataServiceError,
)
from querysync.core.exceptions.storage import LocalStoreError
from querysync.core.exceptions.subscription import ChannelConnectionError, SubscriptionError
from querysync.core.exceptions.sync import (
    SyncError,
    SyncTaskNotFoundError,
    TransactionClosedError,
)

__all__ = [
    # Base
    "QuerySyncError",
    "ConfigurationError",
    # Data service
    "DataServiceError",
    "TransientDataServiceError",
    "DataServiceTimeoutError",
    "DataServiceConnectionError",
    "DataServiceUnavailableError",
    "NonRetryableDataServiceError",
    "DataServiceAuthError",
    "DataServiceValidationError",
    "DataServiceNotFoundError",
    "FetchCancelledError",
    # Cache
    "CacheError",
    "InvalidCacheKeyError",
    # Circuit breaker
    "CircuitBreakerError",
    "CircuitHaltedError",
    # Sync
    "SyncError",
    "SyncTaskNotFoundError",
    "TransactionClosedError",
    # Subscription
    "SubscriptionError",
    "ChannelConnectionError",
    # Storage
    "LocalStoreError",
]
