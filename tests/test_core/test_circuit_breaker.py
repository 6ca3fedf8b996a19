"""
Tests for circuit breaker implementation and the HTTP service client.
"""
import pytest
import time

import httpx

from app.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    ServiceClient,
)
from app.core.exceptions import AdapterRequestError, TransientAdapterError


class TestCircuitBreakerConfig:
    """Test circuit breaker configuration."""

    def test_default_config(self):
        """Test default configuration values."""
        config = CircuitBreakerConfig()
        assert config.failure_threshold == 5
        assert config.success_threshold == 3
        assert config.timeout == 60
        assert config.half_open_max_calls == 5
        assert config.excluded_exceptions == (AdapterRequestError,)

    def test_custom_config(self):
        config = CircuitBreakerConfig(failure_threshold=10, success_threshold=5, timeout=120)
        assert config.failure_threshold == 10
        assert config.success_threshold == 5
        assert config.timeout == 120


class TestCircuitBreaker:
    """Test circuit breaker functionality."""

    @pytest.fixture
    def circuit_breaker(self):
        config = CircuitBreakerConfig(failure_threshold=3, success_threshold=2, timeout=1)
        return CircuitBreaker("Test Service", config)

    @pytest.fixture
    def failing_function(self):
        async def fail_func():
            raise TransientAdapterError("Test Service", "Service unavailable", status_code=503)
        return fail_func

    @pytest.fixture
    def successful_function(self):
        async def success_func():
            return {"data": "success"}
        return success_func

    @pytest.mark.asyncio
    async def test_initial_closed_state(self, circuit_breaker):
        assert circuit_breaker.state == CircuitState.CLOSED
        assert circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_circuit_opens_after_failure_threshold(self, circuit_breaker, failing_function):
        """Test circuit opens after failure threshold is reached."""
        for _ in range(3):
            with pytest.raises(TransientAdapterError):
                await circuit_breaker.call_async(failing_function)

        assert circuit_breaker.state == CircuitState.OPEN
        assert circuit_breaker.metrics.circuit_open_count == 1

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_calls_as_transient(self, circuit_breaker, failing_function, successful_function):
        for _ in range(3):
            with pytest.raises(TransientAdapterError):
                await circuit_breaker.call_async(failing_function)

        with pytest.raises(TransientAdapterError) as exc_info:
            await circuit_breaker.call_async(successful_function)
        assert "Circuit breaker is OPEN" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_request_errors_do_not_trip_circuit(self, circuit_breaker):
        """A 4xx means the service answered; the circuit stays closed."""
        async def rejected():
            raise AdapterRequestError("Test Service", "HTTP 400", status_code=400)

        for _ in range(5):
            with pytest.raises(AdapterRequestError):
                await circuit_breaker.call_async(rejected)

        assert circuit_breaker.state == CircuitState.CLOSED
        assert circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_recovers_after_successes(self, circuit_breaker, failing_function, successful_function):
        for _ in range(3):
            with pytest.raises(TransientAdapterError):
                await circuit_breaker.call_async(failing_function)

        circuit_breaker.last_failure_time = time.time() - 2

        await circuit_breaker.call_async(successful_function)
        assert circuit_breaker.state == CircuitState.HALF_OPEN
        await circuit_breaker.call_async(successful_function)
        assert circuit_breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, circuit_breaker, failing_function):
        for _ in range(3):
            with pytest.raises(TransientAdapterError):
                await circuit_breaker.call_async(failing_function)

        circuit_breaker.last_failure_time = time.time() - 2
        with pytest.raises(TransientAdapterError):
            await circuit_breaker.call_async(failing_function)

        assert circuit_breaker.state == CircuitState.OPEN

    def test_get_status_and_reset(self, circuit_breaker):
        circuit_breaker.state = CircuitState.OPEN
        circuit_breaker.failure_count = 3

        status = circuit_breaker.get_status()
        assert status["service"] == "Test Service"
        assert status["state"] == "open"
        assert status["is_available"] is False

        circuit_breaker.reset()
        assert circuit_breaker.state == CircuitState.CLOSED
        assert circuit_breaker.get_status()["is_available"] is True


class TestServiceClient:
    """Test error translation in the HTTP service client."""

    def _client(self, handler) -> ServiceClient:
        return ServiceClient(
            service_name="Test Service",
            base_url="http://service.test/",
            timeout_seconds=5,
            transport=httpx.MockTransport(handler),
        )

    @pytest.mark.asyncio
    async def test_json_response(self):
        def handler(request):
            assert request.url.path == "/items"
            return httpx.Response(200, json={"ok": True})

        client = self._client(handler)
        assert await client.get("/items") == {"ok": True}
        await client.close()

    @pytest.mark.asyncio
    async def test_no_content_returns_empty_dict(self):
        client = self._client(lambda request: httpx.Response(204))
        assert await client.get("/items") == {}
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [500, 502, 503, 429])
    async def test_server_errors_are_transient(self, status_code):
        client = self._client(lambda request: httpx.Response(status_code, text="busy"))

        with pytest.raises(TransientAdapterError) as exc_info:
            await client.post("/items", json={})
        assert exc_info.value.status_code == status_code
        assert exc_info.value.retryable is True
        await client.close()

    @pytest.mark.asyncio
    async def test_client_errors_are_request_errors(self):
        client = self._client(lambda request: httpx.Response(404, text="missing"))

        with pytest.raises(AdapterRequestError) as exc_info:
            await client.get("/items/1")
        assert exc_info.value.status_code == 404
        assert exc_info.value.retryable is False
        await client.close()

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = self._client(handler)
        with pytest.raises(TransientAdapterError) as exc_info:
            await client.get("/slow")
        assert "timed out" in str(exc_info.value)
        await client.close()

    @pytest.mark.asyncio
    async def test_connect_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = self._client(handler)
        with pytest.raises(TransientAdapterError):
            await client.get("/items")
        await client.close()

    @pytest.mark.asyncio
    async def test_invalid_json_is_request_error(self):
        client = self._client(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(AdapterRequestError):
            await client.get("/items")
        await client.close()

    @pytest.mark.asyncio
    async def test_post_for_bytes_returns_raw_body(self):
        client = self._client(lambda request: httpx.Response(200, content=b"%PDF-1.4"))
        assert await client.post_for_bytes("/render") == b"%PDF-1.4"
        await client.close()
