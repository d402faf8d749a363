"""
Core data models for the orgaccess service.

These are the membership facts owned by the persistence layer.
Credentials are derived from them; they never flow the other way.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from orgaccess.core.roles import Role
from orgaccess.core.utils import utc_now


# =============================================================================
# Organization
# =============================================================================


class Organization(BaseModel):
    """An organization principals can be enrolled in."""
    
    id: int = Field(gt=0)
    name: str
    is_public: bool = True
    
    # Self-enrolled members wait for an admin to verify them
    should_verify_enrollment: bool = True
    
    # Self-enrollment can be switched off entirely
    allow_self_enrollment: bool = True
    enrollment_key: str | None = None


# =============================================================================
# Membership
# =============================================================================


class Membership(BaseModel):
    """
    A principal's role within one organization.
    
    At most one per (principal, organization). Unverified memberships are
    visible to their owner but never grant access.
    """
    
    model_config = ConfigDict(frozen=True)
    
    organization_id: int = Field(gt=0)
    role: Role
    verified: bool = False


class MembershipRecord(Membership):
    """A stored membership, with the bookkeeping the store keeps around it."""
    
    principal_id: str
    joined_at: datetime = Field(default_factory=utc_now)
    verified_by: str | None = None
    verified_at: datetime | None = None
    
    def as_membership(self) -> Membership:
        return Membership(
            organization_id=self.organization_id,
            role=self.role,
            verified=self.verified,
        )


# =============================================================================
# Principal
# =============================================================================


class Principal(BaseModel):
    """An authenticated actor. Global access lives here, not on memberships."""
    
    id: str
    email: str
    name: str
    password_hash: str = ""
    global_access: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
