"""API middleware."""

from .error_handler import (
    ErrorHandlingMiddleware,
    add_error_handling_middleware,
    register_exception_handlers,
    status_code_for,
)

__all__ = [
    "ErrorHandlingMiddleware",
    "add_error_handling_middleware",
    "register_exception_handlers",
    "status_code_for",
]
