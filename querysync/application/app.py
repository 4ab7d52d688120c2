#!/usr/bin/env python3
"""
FastAPI Application Entry Point

Observability and admin surface for a SyncEngine: health probes,
statistics, Prometheus metrics and cache / circuit breaker operations.

    uvicorn querysync.application.app:app
    querysync-api                      (console script, same thing)

Author: System Architect
Date: 2026-03-02
"""

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from querysync.application.api.middleware.error_handler import add_error_handling_middleware
from querysync.application.api.routes.admin import router as admin_router
from querysync.application.api.routes.health import router as health_router
from querysync.core.config.settings import Settings, get_settings
from querysync.core.logging.logger import clear_scope_id, get_logger, set_scope_id, setup_logging
from querysync.engine import SyncEngine, create_engine

logger = get_logger(__name__)

API_BASE_PATH = "/api/v1"
HEADER_SCOPE_ID = "X-Scope-ID"


# ============================================================================
# Application Lifespan
# ============================================================================


def _build_lifespan(engine: SyncEngine | None, settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings=settings)
        logger.info(
            "Starting querysync API",
            environment=settings.app.ENVIRONMENT,
            version=settings.app.APP_VERSION,
        )

        owned = engine is None
        running = create_engine(settings) if owned else engine
        await running.start()
        app.state.engine = running
        logger.info("Sync engine ready", push_enabled=running.subscriptions is not None)

        try:
            yield
        finally:
            logger.info("Shutting down querysync API")
            if owned:
                await running.close()
            app.state.engine = None
            logger.info("Application shutdown complete")

    return lifespan


# ============================================================================
# Application Factory
# ============================================================================


def create_app(engine: SyncEngine | None = None, settings: Settings | None = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        engine: Engine to serve; when None the lifespan builds one with
                create_engine() and closes it on shutdown
        settings: Defaults to the engine's settings, then get_settings()
    """
    settings = settings or (engine.settings if engine is not None else get_settings())

    app = FastAPI(
        title=settings.app.APP_NAME,
        version=settings.app.APP_VERSION,
        description="Health, statistics and admin operations of the query sync engine",
        lifespan=_build_lifespan(engine, settings),
        docs_url="/docs",
        redoc_url="/redoc",
    )

    add_error_handling_middleware(app, include_traceback=(settings.app.ENVIRONMENT == "development"))

    @app.middleware("http")
    async def scope_id_middleware(request: Request, call_next):
        """Correlate logs of one request through the scope id."""
        scope_id = request.headers.get(HEADER_SCOPE_ID) or str(uuid.uuid4())
        set_scope_id(scope_id)
        try:
            response = await call_next(request)
            response.headers[HEADER_SCOPE_ID] = scope_id
            return response
        finally:
            clear_scope_id()

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "name": settings.app.APP_NAME,
            "version": settings.app.APP_VERSION,
            "environment": settings.app.ENVIRONMENT,
            "docs": "/docs",
            "health": f"{API_BASE_PATH}/health",
        }

    app.include_router(health_router, prefix=API_BASE_PATH)
    app.include_router(admin_router, prefix=API_BASE_PATH)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "querysync.application.app:app",
        host=settings.app.API_HOST,
        port=settings.app.API_PORT,
        log_level=settings.logging.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
