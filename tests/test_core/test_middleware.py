"""
Tests for the request tracing middleware.
"""
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.logging import get_correlation_id
from app.core.middleware import RequestTracingMiddleware


@pytest.fixture
def traced_client() -> TestClient:
    app = FastAPI()
    app.add_middleware(RequestTracingMiddleware, slow_request_threshold_ms=0.0)

    @app.get("/echo")
    async def echo():
        return {"correlation_id": get_correlation_id()}

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaputt")

    return TestClient(app)


class TestRequestTracingMiddleware:
    def test_reuses_caller_correlation_id(self, traced_client):
        response = traced_client.get("/echo", headers={"X-Correlation-ID": "abc-123"})

        assert response.status_code == 200
        assert response.json() == {"correlation_id": "abc-123"}
        assert response.headers["X-Correlation-ID"] == "abc-123"
        assert float(response.headers["X-Processing-Time-MS"]) >= 0

    def test_generates_correlation_id(self, traced_client):
        response = traced_client.get("/echo")

        generated = response.headers["X-Correlation-ID"]
        assert len(generated) == 8
        assert response.json()["correlation_id"] == generated

    def test_unhandled_error_becomes_json_500(self, traced_client):
        response = traced_client.get("/boom", headers={"X-Correlation-ID": "err-1"})

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error", "correlation_id": "err-1"}
        assert response.headers["X-Correlation-ID"] == "err-1"
