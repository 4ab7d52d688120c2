"""
Cache Module

TTL query cache and typed key builder.
"""

from .key_builder import WILDCARD, KeyPattern, build_key, fingerprint, parse_key
from .query_cache import CacheEntry, QueryCache

__all__ = [
    "WILDCARD",
    "CacheEntry",
    "KeyPattern",
    "QueryCache",
    "build_key",
    "fingerprint",
    "parse_key",
]
