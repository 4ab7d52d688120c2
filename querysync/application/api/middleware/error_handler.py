"""
Error Handling Middleware
=========================

Two layers turn exceptions into JSON responses:

1. Exception handler for QuerySyncError (registered on the app):
   engine errors carry their own structure (``to_dict()``), so they map to
   a meaningful status code:

       CircuitHaltedError, transient data service errors → 503
       DataServiceAuthError                             → 401
       DataServiceNotFoundError, SyncTaskNotFoundError  → 404
       DataServiceValidationError, InvalidCacheKeyError → 400
       anything else                                    → 500

2. ErrorHandlingMiddleware: last line of defence for everything else.
   Logs with full context, records an error metric and returns a generic
   500 body (with traceback only in development).
"""

import traceback
from collections.abc import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from querysync.core.exceptions import (
    CircuitHaltedError,
    DataServiceAuthError,
    DataServiceNotFoundError,
    DataServiceValidationError,
    InvalidCacheKeyError,
    QuerySyncError,
    SyncTaskNotFoundError,
)
from querysync.core.logging.logger import get_logger

logger = get_logger(__name__)

_STATUS_CODES: tuple[tuple[type[QuerySyncError], int], ...] = (
    (CircuitHaltedError, 503),
    (DataServiceAuthError, 401),
    (DataServiceNotFoundError, 404),
    (SyncTaskNotFoundError, 404),
    (DataServiceValidationError, 400),
    (InvalidCacheKeyError, 400),
)


def status_code_for(exc: QuerySyncError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 503 if exc.retryable else 500


def _metrics_for(request: Request):
    engine = getattr(request.app.state, "engine", None)
    return engine.metrics if engine is not None else None


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Catches every exception not handled by a route or an exception handler.

    No unhandled exception reaches the server; the client gets a generic
    body and the details stay in the logs.
    """

    def __init__(self, app, include_traceback: bool = False):
        """
        Args:
            app: The ASGI application
            include_traceback: Include stack traces in error responses
                              (development only)
        """
        super().__init__(app)
        self.include_traceback = include_traceback

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)

        except Exception as e:
            method = request.method
            path = request.url.path
            error_type = type(e).__name__
            error_message = str(e)

            logger.error(
                f"Unhandled exception in request: {method} {path}",
                method=method,
                path=path,
                error_type=error_type,
                error_message=error_message,
                exc_info=True,
            )

            metrics = _metrics_for(request)
            if metrics is not None:
                metrics.record_error(error_type, "unhandled_exception")

            error_response = {
                "error": "internal_server_error",
                "message": "An unexpected error occurred while processing your request",
                "error_type": error_type,
            }
            if self.include_traceback:
                error_response["traceback"] = traceback.format_exc()
                error_response["detail"] = error_message

            return JSONResponse(status_code=500, content=error_response)


async def querysync_exception_handler(request: Request, exc: QuerySyncError) -> JSONResponse:
    status_code = status_code_for(exc)
    logger.warning(
        f"Engine error: {exc.message}",
        stage="API",
        error_type=type(exc).__name__,
        status_code=status_code,
        scope_id=exc.scope_id,
    )
    metrics = _metrics_for(request)
    if metrics is not None:
        metrics.record_error(type(exc).__name__, "api")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(QuerySyncError, querysync_exception_handler)


def add_error_handling_middleware(app: FastAPI, include_traceback: bool = False) -> None:
    """
    Register ErrorHandlingMiddleware and the QuerySyncError handler.

    Add it early so it also catches errors raised by later middleware.
    """
    app.add_middleware(ErrorHandlingMiddleware, include_traceback=include_traceback)
    register_exception_handlers(app)
    logger.info("Error handling middleware registered", include_traceback=include_traceback)
