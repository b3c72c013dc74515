"""
Circuit breaker and retry policy for the billing provider.

The metering core never calls Stripe on the quota or recording path; only
provisioning does. The breaker keeps a Stripe outage from piling up slow
provisioning requests.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Failure threshold exceeded, requests fail immediately
- HALF_OPEN: Testing if service recovered, limited requests allowed
"""

import functools
import logging

import stripe
from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from meterly.billing.errors import BillingProviderError

logger = logging.getLogger(__name__)


class BillingProviderCircuitOpenError(BillingProviderError):
    """Circuit breaker open for Stripe operations."""

    code = "BILLING_PROVIDER_CIRCUIT_OPEN"


def _on_circuit_open(breaker: CircuitBreaker) -> None:
    logger.error(
        f"Circuit breaker OPENED: {breaker.name}",
        extra={
            "breaker_name": breaker.name,
            "fail_count": breaker.fail_counter,
            "fail_max": breaker.fail_max,
            "state": "OPEN",
        },
    )


def _on_circuit_close(breaker: CircuitBreaker) -> None:
    logger.info(
        f"Circuit breaker CLOSED: {breaker.name} (service recovered)",
        extra={"breaker_name": breaker.name, "state": "CLOSED"},
    )


def _on_circuit_half_open(breaker: CircuitBreaker) -> None:
    logger.warning(
        f"Circuit breaker HALF-OPEN: {breaker.name} (testing recovery)",
        extra={"breaker_name": breaker.name, "state": "HALF_OPEN"},
    )


class _StateListener(CircuitBreakerListener):
    """Routes breaker state changes to the log callbacks above."""

    def state_change(self, breaker: CircuitBreaker, old_state, new_state) -> None:
        name = new_state.name
        if name == "open":
            _on_circuit_open(breaker)
        elif name == "closed":
            _on_circuit_close(breaker)
        elif name == "half-open":
            _on_circuit_half_open(breaker)


# Opens after 3 consecutive failures, stays open for 30 seconds.
# Request errors (bad price id, invalid params) are not outages.
stripe_breaker = CircuitBreaker(
    fail_max=3,
    reset_timeout=30,
    name="Stripe",
    exclude=[stripe.InvalidRequestError, stripe.CardError],
    listeners=[_StateListener()],
)


def get_stripe_breaker() -> CircuitBreaker:
    """
    Get Stripe circuit breaker instance.

    Usage:
        breaker = get_stripe_breaker()

        @breaker
        def create_subscription(...):
            return stripe.Subscription.create(...)
    """
    return stripe_breaker


def reset_all_breakers() -> None:
    """
    Reset all circuit breakers to CLOSED state.

    Use for testing or manual recovery.
    """
    stripe_breaker.close()
    logger.info("All circuit breakers reset to CLOSED state")


def with_stripe_circuit_breaker(func):
    """
    Decorator to wrap Stripe operations with circuit breaker.

    Raises:
        BillingProviderCircuitOpenError: If circuit is open

    Usage:
        @with_stripe_circuit_breaker
        def create_customer(...):
            return stripe.Customer.create(...)
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return stripe_breaker.call(func, *args, **kwargs)
        except CircuitBreakerError as e:
            logger.warning(
                "Stripe circuit breaker OPEN - failing fast",
                extra={
                    "function": func.__name__,
                    "state": stripe_breaker.current_state,
                },
            )
            raise BillingProviderCircuitOpenError(
                "Stripe service unavailable (circuit breaker open)",
                retry_after_seconds=stripe_breaker.reset_timeout,
            ) from e

    return wrapper


def with_retry(
    max_attempts: int = 3,
    min_wait: int = 1,
    max_wait: int = 10,
    exceptions: tuple[type[Exception], ...] = (Exception,),
):
    """
    Retry decorator with exponential backoff.

    Args:
        max_attempts: Maximum number of retry attempts
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds
        exceptions: Exception types to retry on

    Usage:
        @with_retry(max_attempts=3, exceptions=(stripe.APIConnectionError,))
        def create_customer(...):
            return stripe.Customer.create(...)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        reraise=True,
    )
