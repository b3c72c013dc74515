"""
FastAPI application for the metering service.

Provides REST API for:
- Quota checks and usage recording for calling organizations
- Billing webhook convergence
- Administrative provisioning
- Health monitoring and Prometheus metrics
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from meterly.billing.errors import ErrorKind, MeteringError, StoreUnavailableError
from meterly.config import get_settings
from meterly.observability.health import (
    LivenessResponse,
    ReadinessResponse,
    get_health_checker,
)
from meterly.observability.logging import configure_logging, get_logger
from meterly.observability.logging_middleware import StructuredLoggingMiddleware
from meterly.observability.metrics import (
    generate_metrics,
    track_error,
    track_rate_limit_exceeded,
    track_store_error,
)
from meterly.observability.middleware import PrometheusMiddleware, normalize_endpoint
from meterly.rate_limits import limiter
from meterly.routers import admin_router, metering_router, webhooks_router
from meterly.services import build_services, set_services
from meterly.storage.database import MeteringDatabase, set_metering_db

# Initialize structured logging
settings = get_settings()
configure_logging(
    log_level=settings.logging.level,
    json_output=settings.logging.json_output,
    colorized=settings.logging.colorized,
)
logger = get_logger(__name__)


# Global store instance (initialized in lifespan)
metering_db: MeteringDatabase | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown:
    - Open and migrate the metering store
    - Wire quota, usage, webhook and provisioning services
    """
    global metering_db

    settings = get_settings()

    logger.info("=== Metering Service Starting ===")

    metering_db = MeteringDatabase(
        db_path=settings.storage.db_path,
        busy_timeout_seconds=settings.storage.busy_timeout_seconds,
    )
    await metering_db.initialize()
    set_metering_db(metering_db)
    logger.info("Metering store initialized", db_path=settings.storage.db_path)

    set_services(build_services(settings, metering_db))
    logger.info(
        "Metering services ready",
        timezone=settings.billing.timezone,
        default_metric=settings.billing.default_metric,
        stripe_enabled=settings.stripe.is_configured,
    )

    try:
        yield
    finally:
        logger.info("=== Metering Service Shutting Down ===")
        set_services(None)
        set_metering_db(None)
        await metering_db.close()
        metering_db = None
        logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Meterly",
    description="Usage-metered subscription quota engine",
    version=settings.logging.service_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Rate limiter state
app.state.limiter = limiter


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    track_rate_limit_exceeded(normalize_endpoint(request.url.path))
    return _rate_limit_exceeded_handler(request, exc)


app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Observability middleware
# Order matters (processed in reverse order of registration):
# 1. PrometheusMiddleware (innermost) - Tracks metrics
# 2. StructuredLoggingMiddleware (outermost) - Sets request context
app.add_middleware(PrometheusMiddleware)
app.add_middleware(
    StructuredLoggingMiddleware,
    slow_request_warning_ms=settings.logging.slow_request_warning_ms,
)

# Include routers
app.include_router(metering_router)
app.include_router(webhooks_router)
app.include_router(admin_router)


@app.exception_handler(MeteringError)
async def metering_error_handler(request: Request, exc: MeteringError):
    """Render metering errors as {"error": {kind, code, message, details}}."""
    endpoint = normalize_endpoint(request.url.path)
    track_error(error_type=exc.kind.value, endpoint=endpoint)

    if isinstance(exc, StoreUnavailableError):
        track_store_error(endpoint)

    if exc.kind == ErrorKind.UPSTREAM:
        logger.error(
            "Upstream dependency failed",
            path=request.url.path,
            method=request.method,
            error_code=exc.code,
            exc_info=exc,
        )
    else:
        logger.info(
            "Request rejected",
            path=request.url.path,
            method=request.method,
            error_kind=exc.kind.value,
            error_code=exc.code,
        )

    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.to_dict()},
        headers=headers,
    )


# Health check endpoints
# Kubernetes-ready liveness and readiness checks


@app.get(
    "/health/liveness",
    response_model=LivenessResponse,
    tags=["Health"],
    summary="Liveness probe for Kubernetes",
)
async def liveness_probe():
    """Liveness probe. Performs no I/O."""
    health_checker = get_health_checker()
    return await health_checker.check_liveness()


@app.get(
    "/health/readiness",
    response_model=ReadinessResponse,
    tags=["Health"],
    summary="Readiness probe for Kubernetes",
    status_code=200,
    responses={
        200: {"description": "Service is ready"},
        503: {"description": "Service is not ready"},
    },
)
async def readiness_probe(response: Response):
    """
    Readiness probe for Kubernetes.

    Returns:
        HTTP 200: Service is ready (healthy or degraded)
        HTTP 503: Metering store unavailable
    """
    health_checker = get_health_checker()
    readiness = await health_checker.check_readiness(metering_db)

    if not readiness.ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    logger.debug(
        "Readiness probe completed",
        ready=readiness.ready,
        status=readiness.status.value,
        num_components=len(readiness.components),
    )
    return readiness


# Prometheus metrics endpoint
@app.get("/metrics", tags=["System"])
async def metrics():
    """
    Prometheus metrics endpoint.

    Metrics include HTTP latency and counts, quota decisions, usage units and
    idempotent replays, webhook outcomes, and store errors.
    """
    content, content_type = generate_metrics()
    return Response(content=content, media_type=content_type)


# Root endpoint
@app.get("/", tags=["System"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Meterly",
        "version": settings.logging.service_version,
        "docs": "/docs",
        "health": "/health/readiness",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "meterly.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
        workers=settings.service.workers,
        log_level=settings.service.log_level.lower(),
    )
