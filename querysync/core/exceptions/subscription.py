"""
Subscription Exceptions

Push channel failures. These are degraded-dependency errors: they are
reported asynchronously and never raised from subscribe().

Author: System Architect
Date: 2026-03-02
"""

from querysync.core.exceptions.base import QuerySyncError


class SubscriptionError(QuerySyncError):
    """Base exception for push subscription errors."""
    pass


class ChannelConnectionError(SubscriptionError):
    """
    Raised by a transport when a channel cannot be opened or drops.

    Common causes:
    - Redis server is down
    - Network connectivity issues
    - Invalid channel name
    """

    retryable = True
