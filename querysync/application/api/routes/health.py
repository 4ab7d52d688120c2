"""
Health Check Routes
===================

    GET /health           quick status (load balancers)
    GET /health/detailed  full component report
    GET /health/live      liveness probe: the process is up
    GET /health/ready     readiness probe: the fetch path is not halted

Liveness stays trivial; readiness answers 503 when the engine should stop
receiving traffic.
"""

from fastapi import APIRouter, HTTPException, status

from querysync.application.api.dependencies import EngineDep
from querysync.application.api.models import HealthResponse, ProbeResponse

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("", response_model=HealthResponse)
async def health_check(engine: EngineDep):
    """Overall status plus one word per component."""
    return engine.health_checker.check_health()


@router.get("/detailed")
async def detailed_health_check(engine: EngineDep):
    return engine.health_check()


@router.get("/live", response_model=ProbeResponse)
async def liveness_probe(engine: EngineDep):
    return engine.health_checker.liveness_check()


@router.get("/ready", response_model=ProbeResponse)
async def readiness_probe(engine: EngineDep):
    """
    Readiness probe.

    Raises:
        HTTPException(503): While a circuit breaker is halted
    """
    result = engine.health_checker.readiness_check()
    if result["status"] != "ready":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result
