"""Tests for the health check endpoint."""

import pytest
from fastapi.testclient import TestClient

from mediaflow.core.container import build_container
from mediaflow.main import create_app


@pytest.fixture
def client(test_settings, mock_storage):
    app = create_app(container=build_container(test_settings, storage=mock_storage), start_sweeps=False)
    with TestClient(app) as client:
        yield client


def test_health_endpoint(client):
    """Test that the health endpoint returns correct response."""
    response = client.get("/health")

    assert response.status_code == 200

    data = response.json()
    assert "status" in data
    assert "service" in data
    assert "version" in data
    assert data["status"] == "ok"


def test_health_endpoint_values(client):
    """Test that the health endpoint returns expected values."""
    data = client.get("/health").json()

    assert data["service"] == "mediaflow"
    assert data["version"] == "0.1.0"


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-42"})

    assert response.headers["X-Request-ID"] == "req-42"


def test_request_id_generated_when_missing(client):
    response = client.get("/health")

    assert len(response.headers["X-Request-ID"]) == 36
