"""Caller identification and admin authorization for the HTTP API."""

from meterly.auth.dependencies import (
    ensure_same_org,
    get_caller_org_ref,
    verify_admin_key,
)

__all__ = [
    "ensure_same_org",
    "get_caller_org_ref",
    "verify_admin_key",
]
