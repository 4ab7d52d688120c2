"""
Sync Exceptions

Background sync and optimistic update errors.

Author: System Architect
Date: 2026-03-02
"""

from querysync.core.exceptions.base import QuerySyncError


class SyncError(QuerySyncError):
    """Base exception for background sync errors."""
    pass


class SyncTaskNotFoundError(SyncError):
    """Raised when a task id is not registered with the scheduler."""
    pass


class TransactionClosedError(SyncError):
    """
    Raised when an optimistic transaction was force-rolled-back by its
    timeout before the owner could confirm it.
    """
    pass
