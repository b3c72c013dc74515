"""
FastAPI dependencies for caller identification and admin authorization.

Security:
- The calling organization is taken from X-Org-Id, which the identity-provider
  gateway sets after authenticating the user. Bodies naming another
  organization are rejected (prevents spoofing).
- Admin endpoints require X-Admin-Key, compared in constant time. They are
  blocked entirely when ADMIN_API_KEY is not configured.
"""

import hmac
import logging

from fastapi import Header, HTTPException, Request, status

from meterly.billing.errors import InvalidOrgReferenceError
from meterly.billing.resolution import check_org_reference
from meterly.config import get_settings
from meterly.observability.logging import set_org_id

logger = logging.getLogger(__name__)


async def get_caller_org_ref(
    request: Request,
    x_org_id: str | None = Header(None, alias="X-Org-Id"),
) -> str:
    """
    Return the calling organization's external reference.

    Args:
        request: FastAPI request (caller reference attached to request.state)
        x_org_id: Organization reference injected by the gateway

    Raises:
        HTTPException 401: Header missing
        HTTPException 400: Header is not a valid organization reference
    """
    if not x_org_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity. Provide the organization via X-Org-Id header.",
        )

    try:
        org_ref = check_org_reference(x_org_id)
    except InvalidOrgReferenceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e

    request.state.org_ref = org_ref
    set_org_id(org_ref)
    return org_ref


def ensure_same_org(body_org_id: str, caller_org_ref: str) -> None:
    """
    Reject requests whose body names a different organization than the caller.

    Raises:
        HTTPException 403: org_id mismatch
    """
    if not hmac.compare_digest(body_org_id.encode(), caller_org_ref.encode()):
        logger.warning(
            "Organization mismatch between body and caller",
            extra={"caller_org_ref": caller_org_ref},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="org_id does not match the calling organization",
        )


async def verify_admin_key(
    x_admin_key: str | None = Header(None, alias="X-Admin-Key"),
) -> bool:
    """
    Verify the admin API key.

    Raises:
        HTTPException 503: Admin endpoints disabled (ADMIN_API_KEY unset)
        HTTPException 401: Missing or invalid key
    """
    admin_key = get_settings().admin_api_key
    if admin_key is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin endpoints are disabled",
        )

    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), admin_key.encode()):
        logger.warning("Admin API key rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
        )
    return True
