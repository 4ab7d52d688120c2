"""
Data Service Exceptions

Errors returned by (or raised while calling) the remote data service.

The split between transient and non-retryable subclasses is the engine's
error taxonomy: transient errors are retried with exponential backoff,
non-retryable errors are surfaced to the caller immediately.

Author: System Architect
Date: 2026-03-02
"""

from querysync.core.exceptions.base import QuerySyncError


class DataServiceError(QuerySyncError):
    """
    Base exception for data service errors.

    Attributes (in details):
        status_code: HTTP status when the error came from a response
        code: data service error code (e.g. PGRST116, 23505)
    """
    pass


# ----------------------------------------------------------------------------
# Transient
# ----------------------------------------------------------------------------


class TransientDataServiceError(DataServiceError):
    """Base class for failures worth retrying."""

    retryable = True


class DataServiceTimeoutError(TransientDataServiceError):
    """
    Raised when a call exceeds its deadline.

    Common causes:
    - Caller-supplied deadline too short for the query
    - Slow or overloaded data service
    - Network latency spikes
    """
    pass


class DataServiceConnectionError(TransientDataServiceError):
    """
    Raised when the data service cannot be reached.

    Common causes:
    - Network connectivity issues
    - DNS failure
    - Service restarting
    """
    pass


class DataServiceUnavailableError(TransientDataServiceError):
    """Raised for 5xx and 429 responses."""
    pass


# ----------------------------------------------------------------------------
# Non-retryable
# ----------------------------------------------------------------------------


class NonRetryableDataServiceError(DataServiceError):
    """Base class for failures that retrying cannot fix."""
    pass


class DataServiceAuthError(NonRetryableDataServiceError):
    """
    Raised for 401/403 responses or JWT errors.

    Common causes:
    - Expired access token
    - Row level security denies the caller
    - Missing API key
    """
    pass


class DataServiceValidationError(NonRetryableDataServiceError):
    """
    Raised for malformed requests (400/406/409/422).

    Common causes:
    - Unknown column in projection or filter
    - Constraint violation
    - Invalid parameter for an RPC function
    """
    pass


class DataServiceNotFoundError(NonRetryableDataServiceError):
    """Raised when the resource or RPC function does not exist (404)."""
    pass


class FetchCancelledError(NonRetryableDataServiceError):
    """
    Returned to waiters of an in-flight fetch that was cancelled.

    The optimistic update manager cancels in-flight fetches for a key before
    writing an optimistic value; the cancelled response is never cached.
    """
    pass
