"""
Observability infrastructure for production monitoring.

Components:
- metrics.py: Prometheus metrics (counters, histograms, gauges)
- logging.py: Structured JSON logging with request context
- health.py: Liveness and readiness probes
"""

from meterly.observability.metrics import (
    track_quota_decision,
    track_request,
    track_usage_recorded,
    track_webhook_event,
)

__all__ = [
    "track_request",
    "track_quota_decision",
    "track_usage_recorded",
    "track_webhook_event",
]
