"""
Structured logging with JSON output for production observability.

Features:
- JSON output for log aggregation (ELK, Loki, CloudWatch)
- Request context propagation (request_id, org_id, trace_id)
- Redaction of credentials and signatures
- Console output for development

Architecture:
- structlog for structured logging
- Context variables for request-scoped data
- Processors for formatting and enrichment
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor

# Context variables for request-scoped data
# These propagate across async boundaries automatically
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
org_id_var: ContextVar[str | None] = ContextVar("org_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)


# ============================================================================
# CUSTOM PROCESSORS
# ============================================================================


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add request context to log events.

    Injects:
    - request_id: Unique ID for each HTTP request
    - org_id: Calling organization reference (if known)
    - trace_id: Distributed tracing ID (for multi-service correlation)
    """
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    org_id = org_id_var.get()
    if org_id:
        event_dict.setdefault("org_id", org_id)

    trace_id = trace_id_var.get()
    if trace_id:
        event_dict["trace_id"] = trace_id

    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add ISO 8601 UTC timestamp with microsecond precision (2025-01-15T10:30:45.123456Z)."""
    now = time.time()
    event_dict["timestamp"] = (
        time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(now)) + f".{int((now % 1) * 1000000):06d}Z"
    )
    return event_dict


def add_service_metadata(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add service metadata for log aggregation.

    Injects service, version and environment from LOGGING_SERVICE_NAME,
    LOGGING_SERVICE_VERSION and LOGGING_ENVIRONMENT.
    """
    # Import here to avoid circular dependency
    from meterly.config import get_settings

    settings = get_settings()
    event_dict["service"] = settings.logging.service_name
    event_dict["version"] = settings.logging.service_version
    event_dict["environment"] = settings.logging.environment
    return event_dict


SENSITIVE_FIELDS = frozenset(
    {
        "api_key",
        "admin_key",
        "password",
        "authorization",
        "secret",
        "webhook_secret",
        "signature",
        "stripe_signature",
        "token",
    }
)


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Redact credentials to prevent leakage into logs.

    Long values keep a short prefix/suffix for debugging
    (sk_live_abcd...xyz -> sk_live_abcd***xyz); short values are fully masked.
    """
    for key in list(event_dict.keys()):
        if key.lower() in SENSITIVE_FIELDS:
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 12:
                event_dict[key] = f"{value[:12]}***{value[-3:]}"
            elif value is not None:
                event_dict[key] = "***REDACTED***"
    return event_dict


def add_exception_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add exception_type and exception_message for error aggregation.

    Metering errors also contribute their kind and code so alerts can group
    on them without parsing messages.
    """
    exc_info = event_dict.get("exc_info")
    if exc_info is True:
        exc_info = sys.exc_info()
    if isinstance(exc_info, BaseException):
        exc_info = (type(exc_info), exc_info, exc_info.__traceback__)

    if exc_info and isinstance(exc_info, tuple) and len(exc_info) == 3:
        exc_type, exc_value, _ = exc_info
        event_dict["exception_type"] = exc_type.__name__ if exc_type else "Unknown"
        event_dict["exception_message"] = str(exc_value) if exc_value else ""
        kind = getattr(exc_value, "kind", None)
        if kind is not None:
            event_dict["error_kind"] = getattr(kind, "value", str(kind))
            event_dict["error_code"] = getattr(exc_value, "code", None)

    return event_dict


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
) -> None:
    """
    Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON output (True for production, False for development)
        colorized: Colorize console output (only for development)

    JSON output:
        {
          "timestamp": "2025-10-01T10:30:45.123456Z",
          "level": "info",
          "event": "HTTP request completed",
          "service": "meterly",
          "request_id": "req_abc123",
          "org_id": "org_2abc",
          "path": "/api/v1/quota/check",
          "status_code": 200,
          "latency_ms": 3.1
        }
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        add_service_metadata,
        redact_sensitive_fields,
        add_timestamp,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        add_exception_info,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=colorized),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


# ============================================================================
# LOGGER FACTORY
# ============================================================================


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("Quota checked", allow=True, remaining=12)
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT MANAGERS
# ============================================================================


class RequestContext:
    """
    Context manager for request-scoped logging.

    Generates request_id/trace_id when absent and propagates org_id to every
    log call made while the context is active.

    Usage:
        with RequestContext(org_id="org_2abc"):
            logger.info("Processing request")  # request_id auto-injected
    """

    def __init__(
        self,
        org_id: str | None = None,
        trace_id: str | None = None,
        request_id: str | None = None,
    ):
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.org_id = org_id
        self.trace_id = trace_id or f"trace_{uuid.uuid4().hex[:16]}"

        self._request_id_token = None
        self._org_id_token = None
        self._trace_id_token = None

    def __enter__(self):
        self._request_id_token = request_id_var.set(self.request_id)
        # Always set org_id (even if None) so a later set_org_id() cannot leak
        # across requests
        self._org_id_token = org_id_var.set(self.org_id)
        self._trace_id_token = trace_id_var.set(self.trace_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._request_id_token is not None:
            request_id_var.reset(self._request_id_token)
        if self._org_id_token is not None:
            org_id_var.reset(self._org_id_token)
        if self._trace_id_token is not None:
            trace_id_var.reset(self._trace_id_token)


class OperationContext:
    """
    Context manager for operation-level logging with timing.

    Usage:
        with OperationContext("webhook_convergence", event_id="evt_123"):
            await processor.process(event)
        # Logs: "webhook_convergence completed" with latency_ms
    """

    def __init__(self, operation: str, **kwargs):
        self.operation = operation
        self.context = kwargs
        self.logger = get_logger(f"operation.{operation}")
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"{self.operation} started", **self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type is None:
            self.logger.info(
                f"{self.operation} completed",
                latency_ms=round(duration_ms, 2),
                **self.context,
            )
        else:
            self.logger.error(
                f"{self.operation} failed",
                latency_ms=round(duration_ms, 2),
                exception_type=exc_type.__name__,
                **self.context,
                exc_info=(exc_type, exc_val, exc_tb),
            )


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def set_request_id(request_id: str) -> None:
    """Set request ID for current context."""
    request_id_var.set(request_id)


def set_org_id(org_id: str) -> None:
    """Set organization reference for current context."""
    org_id_var.set(org_id)


def set_trace_id(trace_id: str) -> None:
    """Set trace ID for current context."""
    trace_id_var.set(trace_id)


def get_request_id() -> str | None:
    return request_id_var.get()


def get_org_id() -> str | None:
    return org_id_var.get()


def get_trace_id() -> str | None:
    return trace_id_var.get()
