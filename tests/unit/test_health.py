"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)

HEALTHY_DB = {"healthy": True, "pool_stats": {"pool_size": 5, "pool_available": 4}}


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "integration-core"}


def test_readyz_endpoint_all_services_healthy():
    """Test readiness endpoint when all services are healthy."""
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch("app.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_DB)),
        patch("app.routes.health.settings.AUTH_JWKS_URL", "https://auth.example.com/jwks"),
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True

    checks = data["checks"]
    assert checks["redis"]["ok"] is True
    assert checks["database"]["ok"] is True
    assert checks["database"]["pool_stats"]["pool_available"] == 4
    assert checks["configuration"]["ok"] is True
    assert checks["configuration"]["issues"] is None


def test_readyz_endpoint_redis_unhealthy():
    """Test readiness endpoint when Redis is down."""
    with (
        patch(
            "app.routes.health.fast_redis.ping",
            new=AsyncMock(side_effect=ConnectionError("refused")),
        ),
        patch("app.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_DB)),
        patch("app.routes.health.settings.AUTH_JWKS_URL", "https://auth.example.com/jwks"),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["redis"]["ok"] is False
    assert "ConnectionError" in data["checks"]["redis"]["error"]
    assert data["checks"]["database"]["ok"] is True


def test_readyz_endpoint_database_unhealthy():
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch(
            "app.routes.health.db_health_check",
            new=AsyncMock(return_value={"healthy": False, "error": "pool exhausted"}),
        ),
        patch("app.routes.health.settings.AUTH_JWKS_URL", "https://auth.example.com/jwks"),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["error"] == "pool exhausted"


def test_readyz_reports_configuration_issues():
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch("app.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_DB)),
        patch("app.routes.health.settings.AUTH_JWKS_URL", None),
        patch("app.routes.health.validate_encryption_config", return_value=False),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    issues = data["checks"]["configuration"]["issues"]
    assert "AUTH_JWKS_URL not set" in issues
    assert "ENCRYPTION_KEY missing or invalid" in issues


def test_outbox_health_reports_backlog():
    with patch(
        "app.routes.health.outbox_service.pending_count", new=AsyncMock(return_value=7)
    ):
        response = client.get("/health/outbox")

    assert response.json() == {"ok": True, "undelivered": 7}


def test_outbox_health_reports_database_error():
    with patch(
        "app.routes.health.outbox_service.pending_count",
        new=AsyncMock(side_effect=RuntimeError("pool not initialized")),
    ):
        response = client.get("/health/outbox")

    assert response.json()["ok"] is False


def test_connections_health_reports_status_counts():
    with patch(
        "app.routes.health.token_service.repository.count_by_status",
        new=AsyncMock(return_value={"active": 3, "expired": 1}),
    ):
        response = client.get("/health/connections")

    data = response.json()
    assert data["healthy"] is True
    assert data["connections"] == {"active": 3, "expired": 1}
    assert data["refresh_window_minutes"] >= 1
