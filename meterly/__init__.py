"""
Meterly - usage-metered subscription core.

Organizations subscribe to a plan with a fixed per-period quota; usage is
recorded against that quota exactly once, and quota checks answer whether an
organization may proceed with a metered action.

Key Features:
    - Canonical billing-period keys in one application timezone
    - Durable per-(organization, metric, period) usage counters
    - Idempotent usage recording keyed by caller-supplied tokens
    - Webhook convergence with the billing provider (Stripe)

Example:
    >>> from meterly import get_settings
    >>> settings = get_settings()
    >>> print(settings.billing.timezone)
"""

from meterly.config import get_settings

__all__ = ["get_settings"]
