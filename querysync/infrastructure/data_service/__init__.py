"""
Data Service Module

Query / RPC models, the DataService protocol and the PostgREST client.
"""

from .base import DataService
from .models import OrderBy, QueryDescriptor, QueryOptions, QueryResult, RpcCall
from .postgrest_client import PostgRESTConfig, PostgRESTDataService

__all__ = [
    "DataService",
    "OrderBy",
    "PostgRESTConfig",
    "PostgRESTDataService",
    "QueryDescriptor",
    "QueryOptions",
    "QueryResult",
    "RpcCall",
]
