"""
API Request / Response Models
=============================

Pydantic models for the health and admin endpoints. They validate the
bodies FastAPI sends and receives and drive the OpenAPI schema at /docs.
"""

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Quick health status."""

    status: str = Field(description="healthy, degraded or unhealthy")
    timestamp: str = Field(description="ISO 8601 timestamp")
    version: str | None = None
    components: dict[str, Any] | None = None


class ProbeResponse(BaseModel):
    status: str
    timestamp: str
    version: str | None = None
    reason: str | None = None


class InvalidateRequest(BaseModel):
    """
    Mutation-driven invalidation.

    Example:
        {"mutation_type": "user_updated", "context": {"org_id": "org1", "user_id": "u1"}}
    """

    mutation_type: str = Field(min_length=1, description="Mutation type to look up in the rule table")
    context: dict[str, Any] = Field(default_factory=dict, description="Placeholder values (org_id, user_id, ...)")


class InvalidateResponse(BaseModel):
    mutation_type: str
    evicted: int = Field(ge=0)
    keys: list[str] = Field(default_factory=list)


class CacheClearResponse(BaseModel):
    cleared: int = Field(ge=0)


class CircuitBreakerResetResponse(BaseModel):
    message: str
    breakers: dict[str, str] = Field(description="Breaker name → state after the reset")
