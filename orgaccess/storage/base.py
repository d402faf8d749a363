"""
Storage abstraction layer.

Membership facts are owned here. Everything else (credentials, decisions)
is derived from them. Implementations publish a `membership.<kind>` event
on the event bus after every successful mutation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from orgaccess.core.models import MembershipRecord, Organization
from orgaccess.core.roles import Role


# =============================================================================
# Errors
# =============================================================================


class MembershipError(Exception):
    """Base exception for membership operations."""
    pass


class MembershipNotFoundError(MembershipError):
    """No such organization or membership."""
    pass


class MembershipRuleError(MembershipError):
    """The mutation would break a membership rule."""
    pass


# =============================================================================
# Storage Interface
# =============================================================================


class MembershipStore(ABC):
    """
    Source of truth for organizations and memberships.
    
    Production Implementation: relational database
    Local Implementation: in-memory
    """
    
    # -------------------------------------------------------------------------
    # Organizations
    # -------------------------------------------------------------------------
    
    @abstractmethod
    async def create_organization(self, organization: Organization, president_id: str) -> Organization:
        """Create an organization with `president_id` as its verified PRESIDENT."""
        pass
    
    @abstractmethod
    async def next_organization_id(self) -> int:
        """Allocate an id for a new organization."""
        pass
    
    @abstractmethod
    async def get_organization(self, organization_id: int) -> Organization | None:
        pass
    
    @abstractmethod
    async def delete_organization(self, organization_id: int) -> bool:
        """Delete an organization and every membership in it."""
        pass
    
    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------
    
    @abstractmethod
    async def lookup_membership(self, organization_id: int, principal_id: str) -> MembershipRecord | None:
        """The principal's membership in one organization, if any."""
        pass
    
    @abstractmethod
    async def list_memberships(self, principal_id: str, verified_only: bool = False) -> list[MembershipRecord]:
        """Every membership the principal holds."""
        pass
    
    @abstractmethod
    async def list_members(self, organization_id: int) -> list[MembershipRecord]:
        """Every membership in one organization."""
        pass
    
    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------
    
    @abstractmethod
    async def enroll(
        self,
        organization_id: int,
        principal_id: str,
        enrollment_key: str | None = None,
    ) -> MembershipRecord:
        """Self-enroll as MEMBER."""
        pass
    
    @abstractmethod
    async def verify(self, organization_id: int, principal_id: str, verified_by: str) -> MembershipRecord:
        pass
    
    @abstractmethod
    async def change_role(
        self,
        organization_id: int,
        principal_id: str,
        role: Role,
        changed_by: str,
    ) -> MembershipRecord:
        pass
    
    @abstractmethod
    async def remove(self, organization_id: int, principal_id: str, removed_by: str) -> None:
        pass
    
    @abstractmethod
    async def leave(self, organization_id: int, principal_id: str) -> None:
        pass
    
    @abstractmethod
    async def transfer_presidency(
        self,
        organization_id: int,
        from_principal_id: str,
        to_principal_id: str,
    ) -> tuple[MembershipRecord, MembershipRecord]:
        """Hand PRESIDENT to a verified member; the old president becomes ADMIN."""
        pass
