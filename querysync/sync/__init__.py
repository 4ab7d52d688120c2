"""
Sync Module

Coordination services layered over the query cache: batched execution,
invalidation, background sync, optimistic updates, stale-while-revalidate
and push subscriptions.
"""

from .background_sync import BackgroundSyncScheduler, SyncHandle, SyncTask
from .batch_executor import BatchQueryExecutor
from .error_tracker import QueryErrorTracker
from .invalidation import DEFAULT_RULES, InvalidationManager, InvalidationRule
from .optimistic import OptimisticHandle, OptimisticTransaction, OptimisticUpdateManager
from .stale_while_revalidate import StaleWhileRevalidateController, SWRResult
from .subscriptions import Subscription, SubscriptionManager, default_event_mapper

__all__ = [
    "BackgroundSyncScheduler",
    "SyncHandle",
    "SyncTask",
    "BatchQueryExecutor",
    "QueryErrorTracker",
    "DEFAULT_RULES",
    "InvalidationManager",
    "InvalidationRule",
    "OptimisticHandle",
    "OptimisticTransaction",
    "OptimisticUpdateManager",
    "StaleWhileRevalidateController",
    "SWRResult",
    "Subscription",
    "SubscriptionManager",
    "default_event_mapper",
]
