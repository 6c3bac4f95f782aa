"""Tests for the health check endpoint."""

from unittest.mock import MagicMock, patch

import pytest
from django.test import Client


@pytest.fixture
def client():
    return Client()


class TestHealthCheck:
    def test_healthy(self, db, client):
        redis = MagicMock()
        with patch("core.views.get_redis_connection", return_value=redis):
            response = client.get("/health/")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "database": "connected",
            "lease_store": "connected",
        }
        redis.ping.assert_called_once()

    def test_lease_store_down(self, db, client):
        redis = MagicMock()
        redis.ping.side_effect = ConnectionError("redis unavailable")
        with patch("core.views.get_redis_connection", return_value=redis):
            response = client.get("/health/")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "unhealthy"
        assert body["database"] == "connected"
        assert body["lease_store"] == "disconnected"
