"""
Storage Module

Bounded local key-value store.
"""

from .local_store import LocalKeyValueStore

__all__ = ["LocalKeyValueStore"]
