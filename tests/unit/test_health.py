"""Tests for health probes."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock, patch

from app.api.routes import health


@pytest.fixture
def client():
    app = FastAPI()
    app.include_router(health.router)
    return TestClient(app)


class TestReadiness:
    """Test /health/ready."""

    def test_ready_when_database_up(self, client):
        with patch("app.api.routes.health.check_db_health", AsyncMock(return_value=True)), patch(
            "app.api.routes.health.settings"
        ) as mock_settings:
            mock_settings.token_store_backend = "memory"
            response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"] == {"database": "ok", "token_store": "not_required"}

    def test_not_ready_when_redis_down(self, client):
        with patch("app.api.routes.health.check_db_health", AsyncMock(return_value=True)), patch(
            "app.api.routes.health.check_redis_health", AsyncMock(return_value=False)
        ), patch("app.api.routes.health.settings") as mock_settings:
            mock_settings.token_store_backend = "redis"
            response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["token_store"] == "failed"

    def test_database_error(self, client):
        with patch(
            "app.api.routes.health.check_db_health", AsyncMock(side_effect=OSError("refused"))
        ), patch("app.api.routes.health.settings") as mock_settings:
            mock_settings.token_store_backend = "memory"
            response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"


class TestEngineStatus:
    """Test /health/engine."""

    def test_reports_maintenance_and_tokens(self):
        app = FastAPI()
        app.include_router(health.router)
        workflow = MagicMock()
        workflow.providers = {"calendly": MagicMock(), "calcom": MagicMock()}
        workflow.token_service.pending = AsyncMock(return_value=[MagicMock(), MagicMock()])
        app.state.workflow = workflow
        app.state.maintenance = MagicMock(is_running=True)

        with patch("app.api.routes.health.check_db_health", AsyncMock(return_value=True)), patch(
            "app.api.routes.health.settings"
        ) as mock_settings:
            mock_settings.is_development = True
            mock_settings.token_store_backend = "memory"
            mock_settings.notification_gateway_url = None
            response = TestClient(app).get("/health/engine")

        data = response.json()
        assert response.status_code == 200
        assert data["maintenance"] == "running"
        assert data["pending_tokens"] == 2
        assert data["calendar_providers"] == ["calcom", "calendly"]
        assert data["notification_channel"] == "logging"

    def test_hidden_outside_development(self, client):
        with patch("app.api.routes.health.settings") as mock_settings:
            mock_settings.is_development = False
            response = client.get("/health/engine")

        assert response.status_code == 404
