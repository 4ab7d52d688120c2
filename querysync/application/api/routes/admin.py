"""
Admin Routes
============

Operational endpoints over the running engine:

    GET    /admin/stats                    per-service statistics
    GET    /admin/metrics                  performance monitor + cache summary
    GET    /admin/metrics/prometheus       Prometheus exposition text
    POST   /admin/circuit-breakers/reset   re-arm render and fetch guards
    POST   /admin/cache/invalidate         mutation-driven invalidation
    DELETE /admin/cache                    drop every cache entry

In production these belong behind authentication on an internal port.
"""

import structlog
from fastapi import APIRouter, Depends, Response, status

from querysync.application.api.dependencies import EngineDep
from querysync.application.api.models import (
    CacheClearResponse,
    CircuitBreakerResetResponse,
    InvalidateRequest,
    InvalidateResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


async def verify_admin_access() -> None:
    """Admin authentication hook; every request is allowed for now."""


# ============================================================================
# STATISTICS
# ============================================================================


@router.get("/stats", dependencies=[Depends(verify_admin_access)])
async def get_engine_stats(engine: EngineDep):
    """
    Snapshot of every service: cache, executor, error clusters,
    invalidation, optimistic transactions, SWR, background sync, circuit
    breakers, local store and push channels.
    """
    return engine.get_stats()


@router.get("/metrics", dependencies=[Depends(verify_admin_access)])
async def get_engine_metrics(engine: EngineDep):
    return engine.get_metrics()


@router.get("/metrics/prometheus", dependencies=[Depends(verify_admin_access)])
async def get_prometheus_metrics(engine: EngineDep):
    """Prometheus scrape target (text exposition format)."""
    return Response(
        content=engine.metrics.get_prometheus_metrics(),
        media_type=engine.metrics.get_content_type(),
    )


# ============================================================================
# OPERATIONS
# ============================================================================


@router.post(
    "/circuit-breakers/reset",
    response_model=CircuitBreakerResetResponse,
    dependencies=[Depends(verify_admin_access)],
)
async def reset_circuit_breakers(engine: EngineDep):
    breakers = engine.reset_circuit_breakers()
    logger.info("Circuit breakers reset via admin API", breakers=breakers)
    return CircuitBreakerResetResponse(message="Circuit breakers reset", breakers=breakers)


@router.post(
    "/cache/invalidate",
    response_model=InvalidateResponse,
    dependencies=[Depends(verify_admin_access)],
)
async def invalidate_cache(body: InvalidateRequest, engine: EngineDep):
    """Run the invalidation rules for ``mutation_type`` against ``context``."""
    keys = engine.invalidate_by_mutation(body.mutation_type, body.context)
    return InvalidateResponse(mutation_type=body.mutation_type, evicted=len(keys), keys=keys)


@router.delete(
    "/cache",
    response_model=CacheClearResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(verify_admin_access)],
)
async def clear_cache(engine: EngineDep):
    cleared = len(engine.cache)
    engine.cache.clear()
    logger.warning("Query cache cleared via admin API", cleared=cleared)
    return CacheClearResponse(cleared=cleared)
