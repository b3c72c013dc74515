"""
Organization (tenant) data models.

An organization is the billing unit: it owns at most one active subscription
and one usage counter per (metric, period). Its external reference is the
opaque identifier issued by the identity provider.
"""

import re
from datetime import UTC, datetime

from pydantic import BaseModel, Field, field_validator

# Identity-provider org ids are opaque, but we still refuse anything that
# could not have come from one (whitespace, control chars, absurd length).
_EXTERNAL_REF_PATTERN = re.compile(r"^[A-Za-z0-9_\-:.]+$")


def validate_external_ref(v: str) -> str:
    """Validate an identity-provider organization reference."""
    if not v or len(v) > 128:
        raise ValueError("external_ref must be 1-128 characters")
    if not _EXTERNAL_REF_PATTERN.match(v):
        raise ValueError("external_ref may only contain letters, digits, '_', '-', ':' and '.'")
    return v


class Organization(BaseModel):
    """
    Organization known to the metering core.

    org_id is internal and immutable once created.
    """

    org_id: str = Field(..., description="Internal organization identifier")
    external_ref: str = Field(..., description="Identity-provider organization id")
    name: str = Field(..., min_length=1, max_length=200)
    billing_customer_ref: str | None = Field(
        default=None, description="Billing provider customer id (cus_xxx)"
    )

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("external_ref")
    @classmethod
    def validate_external_ref_format(cls, v: str) -> str:
        return validate_external_ref(v)


class OrganizationCreate(BaseModel):
    """Schema for ensuring an organization exists."""

    external_ref: str = Field(..., min_length=1, max_length=128)
    name: str | None = Field(default=None, min_length=1, max_length=200)
    billing_customer_ref: str | None = Field(default=None, max_length=255)

    @field_validator("external_ref")
    @classmethod
    def validate_external_ref_format(cls, v: str) -> str:
        return validate_external_ref(v)

    def display_name(self) -> str:
        """Name to store when none was supplied."""
        return self.name or f"Organization {self.external_ref}"
