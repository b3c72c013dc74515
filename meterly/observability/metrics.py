"""
Prometheus metrics for production observability.

Metrics tracked:
- Request latency (histogram) and count per endpoint
- Active requests (gauge)
- Quota decisions by outcome (counter)
- Usage units recorded and idempotent replays (counters)
- Webhook events by outcome (counter)
- Store failures (counter)
- Errors by kind (counter)

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
- Labels never carry organization ids (unbounded cardinality)
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

# Quota checks sit on the hot path of every metered request
http_request_duration_seconds = Histogram(
    "meterly_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(
        0.001,  # 1ms
        0.005,  # 5ms
        0.010,  # 10ms
        0.025,  # 25ms
        0.050,  # 50ms
        0.100,  # 100ms
        0.250,  # 250ms
        0.500,  # 500ms
        1.000,  # 1s
        2.500,  # 2.5s
    ),
)

http_requests_total = Counter(
    "meterly_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

http_requests_active = Gauge(
    "meterly_http_requests_active",
    "Number of in-flight HTTP requests",
    labelnames=["method", "endpoint"],
)

# ============================================================================
# METERING METRICS
# ============================================================================

quota_decisions_total = Counter(
    "meterly_quota_decisions_total",
    "Quota check decisions",
    labelnames=["metric", "outcome"],  # allowed, quota_exceeded, counter_missing
)

usage_units_recorded_total = Counter(
    "meterly_usage_units_recorded_total",
    "Usage units added to counters",
    labelnames=["metric", "plan_code"],
)

usage_idempotent_replays_total = Counter(
    "meterly_usage_idempotent_replays_total",
    "Usage submissions answered from the idempotency ledger",
    labelnames=["metric"],
)

usage_overage_total = Counter(
    "meterly_usage_overage_total",
    "Usage recordings that left the counter at or past its ceiling",
    labelnames=["metric", "plan_code"],
)

counters_seeded_total = Counter(
    "meterly_counters_seeded_total",
    "Usage counters created for a new period",
    labelnames=["source"],  # provisioning, webhook, ledger
)

# ============================================================================
# BILLING CONVERGENCE METRICS
# ============================================================================

webhook_events_total = Counter(
    "meterly_webhook_events_total",
    "Billing events processed",
    labelnames=["event_type", "outcome"],  # applied, ignored, rejected, replayed
)

billing_provider_calls_total = Counter(
    "meterly_billing_provider_calls_total",
    "Billing provider API calls",
    labelnames=["operation", "success"],
)

# ============================================================================
# ERROR METRICS
# ============================================================================

errors_total = Counter(
    "meterly_errors_total",
    "Total errors by kind",
    labelnames=["error_type", "endpoint"],
)

store_errors_total = Counter(
    "meterly_store_errors_total",
    "Durable store failures surfaced as StoreUnavailable",
    labelnames=["operation"],
)

rate_limit_exceeded_total = Counter(
    "meterly_rate_limit_exceeded_total",
    "Requests rejected by the HTTP rate limiter",
    labelnames=["endpoint"],
)


# ============================================================================
# TRACKING FUNCTIONS
# ============================================================================


def track_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: API endpoint path (normalized)
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).observe(duration_seconds)

    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).inc()


def track_quota_decision(metric: str, outcome: str) -> None:
    """
    Track a quota decision.

    Args:
        metric: Metric checked
        outcome: allowed, quota_exceeded or counter_missing
    """
    quota_decisions_total.labels(metric=metric, outcome=outcome).inc()


def track_usage_recorded(metric: str, plan_code: str, quantity: int, exhausted: bool) -> None:
    """Track units added by a committed usage recording."""
    usage_units_recorded_total.labels(metric=metric, plan_code=plan_code).inc(quantity)
    if exhausted:
        usage_overage_total.labels(metric=metric, plan_code=plan_code).inc()


def track_usage_replay(metric: str) -> None:
    usage_idempotent_replays_total.labels(metric=metric).inc()


def track_counter_seeded(source: str) -> None:
    counters_seeded_total.labels(source=source).inc()


def track_webhook_event(event_type: str, outcome: str) -> None:
    """
    Track a processed billing event.

    Args:
        event_type: Normalized event type (subscription.updated, ...)
        outcome: applied, ignored, rejected or replayed
    """
    webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()


def track_billing_provider_call(operation: str, success: bool) -> None:
    billing_provider_calls_total.labels(operation=operation, success=str(success).lower()).inc()


def track_error(error_type: str, endpoint: str) -> None:
    """
    Track error occurrence.

    Args:
        error_type: Error category (not_found, validation, conflict, upstream, internal)
        endpoint: Endpoint where the error occurred
    """
    errors_total.labels(error_type=error_type, endpoint=endpoint).inc()


def track_store_error(operation: str) -> None:
    store_errors_total.labels(operation=operation).inc()


def track_rate_limit_exceeded(endpoint: str) -> None:
    rate_limit_exceeded_total.labels(endpoint=endpoint).inc()


# ============================================================================
# METRICS ENDPOINT
# ============================================================================


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format (bytes).

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    metrics_data = generate_latest(REGISTRY)
    return metrics_data, CONTENT_TYPE_LATEST
