"""
querysync

Client-side data synchronization and caching engine for a PostgREST-style
data service: TTL query cache, batched fetching with request coalescing,
mutation-driven invalidation, optimistic updates, stale-while-revalidate,
background sync and push-driven invalidation.

    from querysync import SyncEngine, QueryDescriptor

    async with SyncEngine(settings, data_service=service) as engine:
        view = await engine.query(QueryDescriptor(resource_name="profiles"))
"""

from querysync.core.config.settings import Settings, get_settings
from querysync.engine import SyncEngine, create_engine
from querysync.infrastructure.cache.key_builder import KeyPattern, build_key
from querysync.infrastructure.data_service.models import QueryDescriptor, QueryOptions, QueryResult, RpcCall

__version__ = "1.0.0"

__all__ = [
    "KeyPattern",
    "QueryDescriptor",
    "QueryOptions",
    "QueryResult",
    "RpcCall",
    "Settings",
    "SyncEngine",
    "build_key",
    "create_engine",
    "get_settings",
]
