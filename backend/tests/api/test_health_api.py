"""Tests for the health and readiness probes."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

pytestmark = pytest.mark.integration


def test_health_reports_healthy(api_client: TestClient):
    response = api_client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "levelup-payments"}


def test_health_returns_503_while_shutting_down(api_client: TestClient):
    api_client.app.state.shutting_down = True
    try:
        response = api_client.get("/api/health")
    finally:
        api_client.app.state.shutting_down = False

    assert response.status_code == 503
    assert response.json()["status"] == "shutting_down"


def test_ready_checks_database(api_client: TestClient):
    response = api_client.get("/api/ready")

    assert response.status_code == 200
    assert response.json() == {"status": "ready", "checks": {"database": True}}


def test_ready_degraded_without_database(api_client: TestClient):
    with patch("levelup.api.routes.health.get_session_factory", side_effect=RuntimeError("Database not initialized")):
        response = api_client.get("/api/ready")

    assert response.status_code == 503
    assert response.json() == {"status": "degraded", "checks": {"database": False}}
