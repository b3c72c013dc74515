"""
Resilience patterns for the billing provider.
"""

from meterly.resilience.circuit_breakers import (
    BillingProviderCircuitOpenError,
    get_stripe_breaker,
    reset_all_breakers,
    with_retry,
    with_stripe_circuit_breaker,
)

__all__ = [
    "BillingProviderCircuitOpenError",
    "get_stripe_breaker",
    "reset_all_breakers",
    "with_retry",
    "with_stripe_circuit_breaker",
]
