"""
Request tracing middleware: correlation IDs, timing headers and slow-request warnings.
"""
import time
import uuid
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import correlation_context, get_logger

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
TIMING_HEADER = "X-Processing-Time-MS"


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """
    Runs every request inside a correlation context.

    The caller's ``X-Correlation-ID`` is reused when present. Both the
    correlation ID and the elapsed milliseconds are echoed on the response,
    including the 500 produced for an unhandled error.
    """

    def __init__(self, app, slow_request_threshold_ms: float = 1000.0):
        super().__init__(app)
        self.slow_request_threshold_ms = slow_request_threshold_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex[:8]
        route = {"method": request.method, "path": request.url.path}

        with correlation_context(correlation_id=correlation_id):
            started = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception as e:
                elapsed_ms = self._elapsed_ms(started)
                logger.error("Unhandled request error", error=str(e), elapsed_ms=elapsed_ms, exc_info=True, **route)
                response = JSONResponse(
                    status_code=500,
                    content={
                        "error": "Internal server error",
                        "correlation_id": correlation_id,
                    },
                )
            else:
                elapsed_ms = self._elapsed_ms(started)
                logger.info("Request handled", status_code=response.status_code, elapsed_ms=elapsed_ms, **route)
                # Event streams stay open for the whole subscription
                if elapsed_ms > self.slow_request_threshold_ms and not request.url.path.endswith("/stream"):
                    logger.warning("Slow request", threshold_ms=self.slow_request_threshold_ms, elapsed_ms=elapsed_ms, **route)

            response.headers[CORRELATION_HEADER] = correlation_id
            response.headers[TIMING_HEADER] = str(elapsed_ms)
            return response

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 2)
