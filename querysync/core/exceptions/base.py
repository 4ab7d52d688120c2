"""
Base Exception Class

Holds the root exception of the package and ConfigurationError, which every
layer can raise. Failures of a specific subsystem (data service, cache,
sync, subscriptions, storage) live in their own themed modules.

Author: System Architect
Date: 2026-03-02
"""

from typing import Any


class QuerySyncError(Exception):
    """
    Base exception for all sync engine errors.

    All custom exceptions inherit from this class to enable:
    - Consistent error handling
    - Scope id correlation (tenant / request scope)
    - Structured error logging
    - Retry classification through the ``retryable`` class flag

    Attributes:
        message: Error message
        scope_id: Scope id for correlation (if available)
        details: Additional error details (dict)
        retryable: True for transient failures the engine may retry

    Example:
        raise DataServiceTimeoutError(
            "Query timed out",
            scope_id="org-123",
            details={"resource": "users", "timeout": 10.0}
        )
    """

    retryable: bool = False

    def __init__(
        self, message: str, scope_id: str | None = None, details: dict[str, Any] | None = None
    ):
        self.message = message
        self.scope_id = scope_id
        self.details = (details or {}).copy()
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for logging/API responses.

        Returns:
            Dict with error_type, message, scope_id, retryable and details
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "scope_id": self.scope_id,
            "retryable": self.retryable,
            "details": self.details,
        }

    def with_suggestion(self, suggestion: str) -> "QuerySyncError":
        """Add a suggestion to help callers fix the error (chainable)."""
        self.details["suggestion"] = suggestion
        return self

    def with_context(self, **context) -> "QuerySyncError":
        """Add additional context to the error details (chainable)."""
        self.details.update(context)
        return self

    def __repr__(self) -> str:
        details_str = f", details={self.details}" if self.details else ""
        scope_id_str = f", scope_id='{self.scope_id}'" if self.scope_id else ""
        return f"{self.__class__.__name__}(message='{self.message}'{scope_id_str}{details_str})"

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        message: str | None = None,
        scope_id: str | None = None,
        **details
    ) -> "QuerySyncError":
        """
        Create an engine error from another exception.

        Useful for wrapping httpx / redis exceptions with additional context.

        Example:
            >>> try:
            ...     response = await client.get(url)
            ... except httpx.ConnectError as e:
            ...     raise DataServiceConnectionError.from_exception(
            ...         e, resource="users"
            ...     ) from e
        """
        error_message = message or str(exc) or exc.__class__.__name__
        error_details = {
            "original_error": exc.__class__.__name__,
            "original_message": str(exc),
            **details
        }
        return cls(error_message, scope_id=scope_id, details=error_details)


class ConfigurationError(QuerySyncError):
    """Raised when configuration is invalid or missing."""
    pass
