"""
Local Store Exceptions

Author: System Architect
Date: 2026-03-02
"""

from querysync.core.exceptions.base import QuerySyncError


class LocalStoreError(QuerySyncError):
    """
    Raised internally when the local key-value store cannot read or write.

    The store catches it and falls back to defaults; it never escapes the
    public get/set/remove API.
    """
    pass
