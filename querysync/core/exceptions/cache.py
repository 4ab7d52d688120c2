"""
Cache-Related Exceptions

The query cache never raises for misses or expiry; these cover misuse only.

Author: System Architect
Date: 2026-03-02
"""

from querysync.core.exceptions.base import QuerySyncError


class CacheError(QuerySyncError):
    """Base exception for cache-related errors."""
    pass


class InvalidCacheKeyError(CacheError):
    """
    Raised when a key cannot be built or parsed.

    Common causes:
    - Key part that is not JSON serializable
    - Empty key
    """
    pass
