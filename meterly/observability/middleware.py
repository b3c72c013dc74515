"""
Observability middleware for automatic metric tracking.

PrometheusMiddleware tracks latency, count and in-flight requests for every
HTTP request, with dynamic path segments collapsed to keep label cardinality
bounded.
"""

import logging
import re
import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from meterly.observability.metrics import (
    http_requests_active,
    track_error,
    track_request,
)

logger = logging.getLogger(__name__)

_ORG_SEGMENT = re.compile(r"/organizations/[^/]+")


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metric cardinality.

    Examples:
        /api/v1/admin/organizations/org_2abc -> /api/v1/admin/organizations/{external_ref}
        /api/v1/quota/check -> /api/v1/quota/check (unchanged)
    """
    return _ORG_SEGMENT.sub("/organizations/{external_ref}", path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware for automatic Prometheus metric tracking."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        endpoint = normalize_endpoint(request.url.path)
        method = request.method

        http_requests_active.labels(method=method, endpoint=endpoint).inc()
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as exc:
            logger.error(f"Request failed: {exc}", exc_info=True)
            track_error(error_type="internal", endpoint=endpoint)
            raise
        finally:
            duration_seconds = time.perf_counter() - start_time
            http_requests_active.labels(method=method, endpoint=endpoint).dec()
            track_request(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
                duration_seconds=duration_seconds,
            )

        return response
