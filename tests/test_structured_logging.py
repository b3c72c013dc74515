"""
Tests for structured logging infrastructure.

Tests:
- Renderer configuration
- Request context propagation
- Credential redaction
- Metering error enrichment
- Operation context timing
"""

import pytest

from meterly.billing.errors import IdempotencyKeyConflictError
from meterly.observability.logging import (
    OperationContext,
    RequestContext,
    add_exception_info,
    add_request_context,
    configure_logging,
    get_logger,
    get_org_id,
    get_request_id,
    get_trace_id,
    redact_sensitive_fields,
)


def test_configure_logging_json_output():
    configure_logging(log_level="INFO", json_output=True, colorized=False)

    logger = get_logger("test")
    logger.info("Quota checked", allow=True, remaining=12)


def test_configure_logging_console_output():
    configure_logging(log_level="INFO", json_output=False, colorized=False)

    logger = get_logger("test")
    logger.info("Usage recorded", used=3)


def test_request_context_sets_and_resets():
    with RequestContext(org_id="org_acme", request_id="req_123"):
        assert get_request_id() == "req_123"
        assert get_org_id() == "org_acme"
        assert get_trace_id().startswith("trace_")

    assert get_request_id() is None
    assert get_org_id() is None


def test_nested_request_contexts():
    with RequestContext(org_id="org_1", request_id="req1"):
        with RequestContext(org_id="org_2", request_id="req2"):
            assert get_org_id() == "org_2"
        assert get_org_id() == "org_1"
        assert get_request_id() == "req1"


def test_request_context_processor_injects_ids():
    with RequestContext(org_id="org_acme", request_id="req_ctx", trace_id="trace_ctx"):
        event = add_request_context(None, "info", {"event": "x"})

    assert event["request_id"] == "req_ctx"
    assert event["org_id"] == "org_acme"
    assert event["trace_id"] == "trace_ctx"


def test_explicit_org_id_wins_over_context():
    with RequestContext(org_id="org_ctx"):
        event = add_request_context(None, "info", {"event": "x", "org_id": "org_explicit"})

    assert event["org_id"] == "org_explicit"


def test_redacts_long_secrets_with_prefix():
    event = redact_sensitive_fields(
        None, "info", {"event": "x", "api_key": "sk_live_abcdefghijklmnop"}
    )

    assert event["api_key"] == "sk_live_abcd***nop"


def test_redacts_short_secrets_fully():
    event = redact_sensitive_fields(None, "info", {"event": "x", "signature": "v1=abc"})

    assert event["signature"] == "***REDACTED***"


def test_non_sensitive_fields_untouched():
    event = redact_sensitive_fields(None, "info", {"event": "x", "metric": "api_call"})

    assert event["metric"] == "api_call"


def test_exception_info_includes_error_kind_and_code():
    error = IdempotencyKeyConflictError("Idempotency key already used")

    event = add_exception_info(None, "error", {"event": "x", "exc_info": error})

    assert event["exception_type"] == "IdempotencyKeyConflictError"
    assert event["error_kind"] == "conflict"
    assert event["error_code"] == "IDEMPOTENCY_KEY_CONFLICT"


def test_operation_context_success():
    configure_logging(log_level="INFO", json_output=False, colorized=False)

    with OperationContext("webhook_convergence", event_id="evt_1"):
        pass


def test_operation_context_propagates_exception():
    configure_logging(log_level="INFO", json_output=False, colorized=False)

    with pytest.raises(ValueError):
        with OperationContext("webhook_convergence", event_id="evt_1"):
            raise ValueError("boom")
