"""
Circuit breaking and HTTP transport shared by every outbound adapter.

Each adapter owns one ``ServiceClient``; the client owns one
``CircuitBreaker`` keyed by the adapter's service name. An open circuit
surfaces as ``TransientAdapterError`` so callers treat it like any other
outage of the remote system.
"""
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Union
from dataclasses import dataclass, field
import structlog
import httpx
from app.core.exceptions import AdapterRequestError, TransientAdapterError

logger = structlog.get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Thresholds for one remote service."""

    failure_threshold: int = 5
    success_threshold: int = 3
    timeout: int = 60
    half_open_max_calls: int = 5
    # The remote answered, so these count as healthy round trips
    excluded_exceptions: tuple = (AdapterRequestError,)


@dataclass
class CircuitBreakerMetrics:
    """Rolling call statistics reported on the detailed health endpoint."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    circuit_open_count: int = 0
    last_state_change: Optional[float] = None
    latencies: Deque[float] = field(default_factory=lambda: deque(maxlen=100))

    def record(self, ok: bool, elapsed: float) -> None:
        self.total_calls += 1
        if ok:
            self.successful_calls += 1
        else:
            self.failed_calls += 1
        self.latencies.append(elapsed)

    @property
    def failure_rate(self) -> float:
        return self.failed_calls / self.total_calls if self.total_calls else 0.0

    @property
    def average_response_time(self) -> float:
        return sum(self.latencies) / len(self.latencies) if self.latencies else 0.0


class CircuitBreaker:
    """
    Per-service circuit breaker.

    ``failure_threshold`` consecutive transport failures open the circuit.
    After ``timeout`` seconds a limited number of trial calls is let through;
    ``success_threshold`` successful trial calls close it again and a single failed
    trial reopens it.
    """

    def __init__(
        self,
        service_name: str = "Unknown Service",
        config: Optional[CircuitBreakerConfig] = None,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.half_open_calls = 0
        self.last_failure_time: Optional[float] = None

        self.metrics = CircuitBreakerMetrics()

    def __call__(self, func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        async def guarded(*args, **kwargs) -> Any:
            return await self.call_async(func, *args, **kwargs)

        return guarded

    async def call_async(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await ``func`` unless the circuit refuses the call.

        Raises:
            TransientAdapterError: The circuit is open or the trial budget is spent
        """
        self._admit()
        started = time.monotonic()
        try:
            result = await func(*args, **kwargs)
        except self.config.excluded_exceptions:
            self._record_success(time.monotonic() - started)
            raise
        except Exception:
            self._record_failure(time.monotonic() - started)
            raise
        self._record_success(time.monotonic() - started)
        return result

    def _admit(self) -> None:
        if self.state == CircuitState.OPEN:
            if not self._cooldown_elapsed():
                logger.warning(
                    "Call refused by open circuit",
                    service=self.service_name,
                    failure_count=self.failure_count,
                )
                raise TransientAdapterError(
                    self.service_name,
                    f"Circuit breaker is OPEN for {self.service_name}",
                )
            self._set_state(CircuitState.HALF_OPEN)
            self.half_open_calls = 0
            self.success_count = 0

        if self.state == CircuitState.HALF_OPEN:
            if self.half_open_calls >= self.config.half_open_max_calls:
                raise TransientAdapterError(
                    self.service_name,
                    f"Circuit breaker trial limit reached for {self.service_name}",
                )
            self.half_open_calls += 1

    def _cooldown_elapsed(self) -> bool:
        if self.last_failure_time is None:
            return False
        return time.time() - self.last_failure_time >= self.config.timeout

    def _set_state(self, state: CircuitState) -> None:
        previous = self.state
        self.state = state
        self.metrics.last_state_change = time.time()
        if state == CircuitState.OPEN:
            self.metrics.circuit_open_count += 1
        logger.info(
            "Circuit state changed",
            service=self.service_name,
            previous=previous.value,
            current=state.value,
            failure_count=self.failure_count,
        )

    def _record_success(self, elapsed: float) -> None:
        self.metrics.record(True, elapsed)
        if self.state != CircuitState.HALF_OPEN:
            self.failure_count = 0
            return
        self.success_count += 1
        if self.success_count >= self.config.success_threshold:
            self.failure_count = 0
            self.success_count = 0
            self.half_open_calls = 0
            self._set_state(CircuitState.CLOSED)

    def _record_failure(self, elapsed: float) -> None:
        self.metrics.record(False, elapsed)
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == CircuitState.HALF_OPEN or (
            self.state == CircuitState.CLOSED
            and self.failure_count >= self.config.failure_threshold
        ):
            self._set_state(CircuitState.OPEN)

    def get_status(self) -> Dict[str, Any]:
        """Snapshot for the detailed health endpoint."""
        return {
            "service": self.service_name,
            "state": self.state.value,
            "is_available": self.state != CircuitState.OPEN,
            "failure_count": self.failure_count,
            "failure_threshold": self.config.failure_threshold,
            "last_failure_time": self.last_failure_time,
            "metrics": {
                "total_calls": self.metrics.total_calls,
                "successful_calls": self.metrics.successful_calls,
                "failed_calls": self.metrics.failed_calls,
                "failure_rate": round(self.metrics.failure_rate, 4),
                "average_response_time": round(self.metrics.average_response_time, 3),
                "circuit_open_count": self.metrics.circuit_open_count,
            },
        }

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.half_open_calls = 0
        self.last_failure_time = None
        self.metrics = CircuitBreakerMetrics()
        logger.info("Circuit reset by operator", service=self.service_name)


def _classify_status(service_name: str, response: httpx.Response) -> AdapterRequestError:
    """Map a non-success HTTP status onto the adapter error taxonomy."""
    status_code = response.status_code
    message = f"HTTP {status_code}: {response.text}"
    if status_code >= 500 or status_code == 429:
        return TransientAdapterError(service_name, message, status_code=status_code)
    return AdapterRequestError(service_name, message, status_code=status_code)


class ServiceClient:
    """
    ``httpx.AsyncClient`` wrapper behind a circuit breaker.

    No httpx exception leaves this class: timeouts, connection problems,
    429 and 5xx become ``TransientAdapterError``; every other failure status
    and an unparseable JSON body become ``AdapterRequestError``.
    """

    def __init__(
        self,
        service_name: str,
        base_url: str,
        timeout_seconds: float = 30,
        circuit_breaker_config: Optional[CircuitBreakerConfig] = None,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            service_name: Name used in logs, errors and circuit status
            base_url: Prefix joined with every endpoint
            timeout_seconds: Per-request timeout
            circuit_breaker_config: Thresholds for this service's circuit
            headers: Default headers sent with every request
            transport: Replacement httpx transport, e.g. ``httpx.MockTransport``
        """
        self.service_name = service_name
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.circuit_breaker = CircuitBreaker(service_name, circuit_breaker_config)
        self.client = httpx.AsyncClient(
            timeout=timeout_seconds,
            headers=headers,
            transport=transport,
        )

    async def get(self, endpoint: str, **kwargs) -> Dict[str, Any]:
        return await self._make_request("GET", endpoint, **kwargs)

    async def post(self, endpoint: str, **kwargs) -> Dict[str, Any]:
        return await self._make_request("POST", endpoint, **kwargs)

    async def put(self, endpoint: str, **kwargs) -> Dict[str, Any]:
        return await self._make_request("PUT", endpoint, **kwargs)

    async def post_for_bytes(self, endpoint: str, **kwargs) -> bytes:
        """POST and return the raw body, e.g. a rendered PDF."""
        return await self._make_request("POST", endpoint, raw=True, **kwargs)

    async def _make_request(
        self, method: str, endpoint: str, raw: bool = False, **kwargs
    ) -> Union[Dict[str, Any], bytes]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        response = await self.circuit_breaker.call_async(self._send, method, url, **kwargs)

        if raw:
            return response.content
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise AdapterRequestError(
                self.service_name,
                "Response body is not valid JSON",
                status_code=response.status_code,
            )

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        log = logger.bind(service_name=self.service_name, method=method, url=url)
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            log.error("Outbound request timed out", timeout_seconds=self.timeout_seconds)
            raise TransientAdapterError(
                self.service_name,
                f"Request timed out after {self.timeout_seconds}s",
            )
        except httpx.RequestError as e:
            log.error("Outbound request failed", error=str(e))
            raise TransientAdapterError(self.service_name, f"Request failed: {e}")

        if response.is_success:
            return response
        log.error("Outbound request rejected", status_code=response.status_code)
        raise _classify_status(self.service_name, response)

    async def close(self) -> None:
        await self.client.aclose()

    def get_circuit_status(self) -> Dict[str, Any]:
        return self.circuit_breaker.get_status()
