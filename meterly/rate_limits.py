"""
HTTP rate limiting (slowapi).

Quota checks sit in front of every metered action, so they are limited per
calling organization rather than per client IP; a gateway fronting many
organizations would otherwise share one budget.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from meterly.config import get_settings


def get_org_ref_for_rate_limit(request: Request) -> str:
    """Rate-limit key: X-Org-Id when present, client address otherwise."""
    org_ref = request.headers.get("x-org-id")
    if org_ref:
        return f"org:{org_ref}"
    return get_remote_address(request)


def quota_check_limit() -> str:
    return get_settings().service.quota_check_rate_limit


def usage_record_limit() -> str:
    return get_settings().service.usage_record_rate_limit


limiter = Limiter(key_func=get_org_ref_for_rate_limit)
