"""
Tests for the FastAPI application: health endpoint, mounted routes and the
mapping of domain errors to HTTP responses.
"""

import json

import pytest
from unittest.mock import patch, AsyncMock
from httpx import AsyncClient, ASGITransport
from starlette.requests import Request

from gsc_core.errors import (
    CorruptCredential,
    ExpiredState,
    GscError,
    NotConnected,
    NotFound,
    PersistenceError,
    ProviderError,
    QuotaExceeded,
    ReauthRequired,
)
from gsc_core.main import app, gsc_error_handler, status_for_error


@pytest.mark.anyio
async def test_health_endpoint_healthy():
    """Health endpoint should return healthy when DB is connected."""
    with patch("gsc_core.main.check_db_connection", new_callable=AsyncMock, return_value=True):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/health")
            assert response.status_code == 200
            data = response.json()
            assert data["status"] == "healthy"
            assert data["database"] == "connected"
            assert data["service"] == "Search Console Integration"


@pytest.mark.anyio
async def test_health_endpoint_degraded():
    """Health endpoint should return degraded when DB is disconnected."""
    with patch("gsc_core.main.check_db_connection", new_callable=AsyncMock, return_value=False):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/health")
            assert response.status_code == 200
            assert response.json()["status"] == "degraded"


def test_search_console_routes_are_mounted():
    paths = {route.path for route in app.routes}
    assert {
        "/api/gsc/oauth/authorize",
        "/api/gsc/oauth/callback",
        "/api/gsc/connection",
        "/api/gsc/indexation/submit",
        "/api/gsc/opportunities",
        "/api/cron/gsc/drain",
    } <= paths


@pytest.mark.parametrize("error, status", [
    (NotConnected("x"), 409),
    (CorruptCredential("x"), 409),
    (ReauthRequired("x"), 401),
    (ExpiredState("x"), 400),
    (NotFound("x"), 404),
    (QuotaExceeded("x"), 429),
    (ProviderError.from_status(503, "x"), 502),
    (PersistenceError("x"), 503),
    (GscError("x"), 500),
])
def test_status_for_error(error, status):
    assert status_for_error(error) == status


@pytest.mark.anyio
async def test_provider_error_response_reports_retryable():
    request = Request({"type": "http", "method": "POST", "path": "/api/gsc/indexation/submit", "headers": []})

    response = await gsc_error_handler(request, ProviderError.from_status(503, "Backend error"))

    assert response.status_code == 502
    assert json.loads(response.body) == {"detail": "Backend error", "code": "provider_error", "retryable": True}
