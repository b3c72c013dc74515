"""
API routers for the metering service.

Routers:
- metering: quota checks, usage recording, entitlements
- webhooks: billing provider and normalized event intake
- admin: organization, subscription and counter provisioning
"""

from meterly.routers.admin import router as admin_router
from meterly.routers.metering import router as metering_router
from meterly.routers.webhooks import router as webhooks_router

__all__ = ["admin_router", "metering_router", "webhooks_router"]
