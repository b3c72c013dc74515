"""
FastAPI middleware for structured logging with request context.

Automatically:
- Generates request_id for each request (or reads X-Request-ID)
- Extracts trace_id from X-Trace-ID header (distributed tracing)
- Injects the calling organization from X-Org-Id
- Logs request/response with latency
- Propagates context to all log calls
"""

import time
import uuid
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from meterly.observability.logging import RequestContext, get_logger

logger = get_logger(__name__)

# Kubernetes probes and Prometheus scrapes would drown out real traffic
EXCLUDED_PATHS = frozenset(
    {
        "/health/liveness",
        "/health/readiness",
        "/metrics",
        "/docs",
        "/redoc",
        "/openapi.json",
    }
)


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for automatic request logging with structured context.

    Headers:
    - X-Request-ID: Client-provided request ID (optional, auto-generated if missing)
    - X-Trace-ID: Distributed trace ID (optional, auto-generated if missing)
    - Returns X-Request-ID and X-Trace-ID in response headers
    """

    def __init__(self, app: ASGIApp, slow_request_warning_ms: float = 100.0):
        super().__init__(app)
        self.slow_request_warning_ms = slow_request_warning_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:16]}"
        trace_id = request.headers.get("x-trace-id") or f"trace_{uuid.uuid4().hex[:16]}"
        org_id = request.headers.get("x-org-id")

        path = request.url.path
        should_log = path not in EXCLUDED_PATHS

        with RequestContext(request_id=request_id, trace_id=trace_id, org_id=org_id):
            start_time = time.perf_counter()

            if should_log:
                logger.debug(
                    "HTTP request started",
                    method=request.method,
                    path=path,
                    client_host=request.client.host if request.client else None,
                )

            try:
                response = await call_next(request)
            except Exception as exc:
                latency_ms = (time.perf_counter() - start_time) * 1000
                logger.error(
                    "HTTP request failed",
                    method=request.method,
                    path=path,
                    latency_ms=round(latency_ms, 2),
                    exception_type=type(exc).__name__,
                    exc_info=True,
                )
                raise

            latency_ms = (time.perf_counter() - start_time) * 1000

            if should_log:
                log = logger.warning if latency_ms > self.slow_request_warning_ms else logger.info
                log(
                    "HTTP request completed",
                    method=request.method,
                    path=path,
                    status_code=response.status_code,
                    latency_ms=round(latency_ms, 2),
                )

            # Echo correlation headers for client-side correlation
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Trace-ID"] = trace_id
            return response
