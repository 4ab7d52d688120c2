"""
Unit Tests for Health Routes

The app is built around an engine from engine_factory, so every probe
reports on the fake data service and in-memory store.
"""

import pytest
from fastapi.testclient import TestClient

from querysync.application.app import create_app


@pytest.fixture
def engine(engine_factory):
    return engine_factory()


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine=engine)) as test_client:
        yield test_client


@pytest.mark.unit
class TestHealthRoutes:
    def test_health_endpoint_returns_200(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["components"]["cache"] == "healthy"
        assert data["components"]["push_channels"] == "not_configured"

    def test_detailed_health(self, client):
        data = client.get("/api/v1/health/detailed").json()

        assert data["environment"] == "development"
        assert data["components"]["circuit_breaker:render"]["status"] == "healthy"
        assert data["components"]["local_store"]["status"] == "healthy"

    def test_liveness_probe(self, client):
        response = client.get("/api/v1/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_readiness_probe(self, client):
        response = client.get("/api/v1/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_halted_breaker_fails_readiness(self, client, engine):
        for index in range(engine.fetch_guard.global_cap + 1):
            engine.fetch_guard.observe(f"query:resource-{index}")

        response = client.get("/api/v1/health/ready")

        assert response.status_code == 503
        assert response.json()["detail"]["status"] == "not_ready"
        assert client.get("/api/v1/health").json()["status"] == "degraded"

    def test_scope_id_header_echoed(self, client):
        response = client.get("/api/v1/health/live", headers={"X-Scope-ID": "org1-req"})
        assert response.headers["X-Scope-ID"] == "org1-req"

    def test_scope_id_generated(self, client):
        assert client.get("/api/v1/health/live").headers["X-Scope-ID"]

    def test_root(self, client):
        data = client.get("/").json()
        assert data["health"] == "/api/v1/health"


@pytest.mark.unit
class TestWithoutEngine:
    def test_routes_unavailable_before_startup(self, engine):
        app = create_app(engine=engine)
        client = TestClient(app)

        response = client.get("/api/v1/health")

        assert response.status_code == 503
