"""
Local storage implementations for development.

In-memory implementations that work without any external services.
"""

from __future__ import annotations

import asyncio
import logging

from orgaccess.core.events import (
    ENROLLED,
    LEFT,
    PRESIDENCY_TRANSFERRED,
    REMOVED,
    ROLE_CHANGED,
    VERIFIED,
    Event,
    EventBus,
    get_event_bus,
    membership_changed,
)
from orgaccess.core.models import MembershipRecord, Organization
from orgaccess.core.roles import Role
from orgaccess.core.utils import utc_now
from orgaccess.storage.base import (
    MembershipNotFoundError,
    MembershipRuleError,
    MembershipStore,
)

logger = logging.getLogger(__name__)


# =============================================================================
# In-Memory Membership Storage
# =============================================================================


class InMemoryMembershipStore(MembershipStore):
    """
    In-memory membership store for development and tests.
    
    Mutations run under one asyncio lock; events are published after the
    lock is released so handlers may read back from the store.
    """
    
    def __init__(self, event_bus: EventBus | None = None):
        self._event_bus = event_bus
        self._organizations: dict[int, Organization] = {}
        # (organization id, principal id) -> record
        self._memberships: dict[tuple[int, str], MembershipRecord] = {}
        self._lock = asyncio.Lock()
        self._next_id = 1
    
    @property
    def event_bus(self) -> EventBus:
        return self._event_bus or get_event_bus()
    
    async def _publish(self, events: list[Event]) -> None:
        for event in events:
            await self.event_bus.publish(event)
    
    def _require_organization(self, organization_id: int) -> Organization:
        organization = self._organizations.get(organization_id)
        if organization is None:
            raise MembershipNotFoundError(f"Organization {organization_id} not found")
        return organization
    
    def _require_membership(self, organization_id: int, principal_id: str) -> MembershipRecord:
        record = self._memberships.get((organization_id, principal_id))
        if record is None:
            raise MembershipNotFoundError(
                f"Principal {principal_id} is not a member of organization {organization_id}"
            )
        return record
    
    # -------------------------------------------------------------------------
    # Organizations
    # -------------------------------------------------------------------------
    
    async def create_organization(self, organization: Organization, president_id: str) -> Organization:
        if not organization.is_public and organization.allow_self_enrollment and not organization.enrollment_key:
            raise MembershipRuleError(
                "Private organizations must have an enrollment key or disable self-enrollment"
            )
        
        async with self._lock:
            if organization.id in self._organizations:
                raise MembershipRuleError(f"Organization {organization.id} already exists")
            
            now = utc_now()
            self._organizations[organization.id] = organization
            self._memberships[(organization.id, president_id)] = MembershipRecord(
                organization_id=organization.id,
                principal_id=president_id,
                role=Role.PRESIDENT,
                verified=True,
                verified_by=president_id,
                verified_at=now,
                joined_at=now,
            )
        
        logger.info(
            "Organization created",
            extra={"organization_id": organization.id, "president_id": president_id},
        )
        await self._publish([
            membership_changed(ENROLLED, organization.id, president_id, role=Role.PRESIDENT.value),
        ])
        return organization
    
    async def next_organization_id(self) -> int:
        async with self._lock:
            while self._next_id in self._organizations:
                self._next_id += 1
            allocated = self._next_id
            self._next_id += 1
        return allocated
    
    async def get_organization(self, organization_id: int) -> Organization | None:
        return self._organizations.get(organization_id)
    
    async def delete_organization(self, organization_id: int) -> bool:
        async with self._lock:
            if self._organizations.pop(organization_id, None) is None:
                return False
            removed = [
                key for key in self._memberships
                if key[0] == organization_id
            ]
            for key in removed:
                del self._memberships[key]
        
        logger.info("Organization deleted", extra={"organization_id": organization_id})
        await self._publish([
            membership_changed(REMOVED, organization_id, principal_id, reason="organization_deleted")
            for _, principal_id in removed
        ])
        return True
    
    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------
    
    async def lookup_membership(self, organization_id: int, principal_id: str) -> MembershipRecord | None:
        return self._memberships.get((organization_id, principal_id))
    
    async def list_memberships(self, principal_id: str, verified_only: bool = False) -> list[MembershipRecord]:
        records = [
            record for (_, pid), record in self._memberships.items()
            if pid == principal_id
        ]
        if verified_only:
            records = [r for r in records if r.verified]
        return sorted(records, key=lambda r: r.organization_id)
    
    async def list_members(self, organization_id: int) -> list[MembershipRecord]:
        self._require_organization(organization_id)
        records = [
            record for (oid, _), record in self._memberships.items()
            if oid == organization_id
        ]
        return sorted(records, key=lambda r: (-r.role.level, r.principal_id))
    
    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------
    
    async def enroll(
        self,
        organization_id: int,
        principal_id: str,
        enrollment_key: str | None = None,
    ) -> MembershipRecord:
        async with self._lock:
            organization = self._require_organization(organization_id)
            
            if not organization.allow_self_enrollment:
                raise MembershipRuleError("Self-enrollment is disabled for this organization")
            
            if organization.enrollment_key:
                if not enrollment_key:
                    raise MembershipRuleError("Enrollment key is required for this organization")
                if enrollment_key != organization.enrollment_key:
                    raise MembershipRuleError("Invalid enrollment key")
            
            if (organization_id, principal_id) in self._memberships:
                raise MembershipRuleError("Principal is already enrolled in this organization")
            
            # Only the organization's verification setting decides auto-verify
            auto_verify = not organization.should_verify_enrollment
            now = utc_now()
            record = MembershipRecord(
                organization_id=organization_id,
                principal_id=principal_id,
                role=Role.MEMBER,
                verified=auto_verify,
                verified_by=principal_id if auto_verify else None,
                verified_at=now if auto_verify else None,
                joined_at=now,
            )
            self._memberships[(organization_id, principal_id)] = record
        
        await self._publish([
            membership_changed(ENROLLED, organization_id, principal_id, role=record.role.value, verified=record.verified),
        ])
        return record
    
    async def verify(self, organization_id: int, principal_id: str, verified_by: str) -> MembershipRecord:
        async with self._lock:
            self._require_organization(organization_id)
            record = self._require_membership(organization_id, principal_id)
            if record.verified:
                raise MembershipRuleError("Membership is already verified")
            
            record = record.model_copy(update={
                "verified": True,
                "verified_by": verified_by,
                "verified_at": utc_now(),
            })
            self._memberships[(organization_id, principal_id)] = record
        
        await self._publish([
            membership_changed(VERIFIED, organization_id, principal_id, verified_by=verified_by),
        ])
        return record
    
    async def change_role(
        self,
        organization_id: int,
        principal_id: str,
        role: Role,
        changed_by: str,
    ) -> MembershipRecord:
        if role == Role.PRESIDENT:
            raise MembershipRuleError("Cannot assign PRESIDENT directly. Use transfer presidency instead.")
        
        async with self._lock:
            self._require_organization(organization_id)
            record = self._require_membership(organization_id, principal_id)
            if record.role == Role.PRESIDENT:
                raise MembershipRuleError("Cannot change PRESIDENT role. Use transfer presidency instead.")
            
            previous = record.role
            record = record.model_copy(update={"role": role})
            self._memberships[(organization_id, principal_id)] = record
        
        await self._publish([
            membership_changed(
                ROLE_CHANGED,
                organization_id,
                principal_id,
                role=role.value,
                previous_role=previous.value,
                changed_by=changed_by,
            ),
        ])
        return record
    
    async def remove(self, organization_id: int, principal_id: str, removed_by: str) -> None:
        async with self._lock:
            self._require_organization(organization_id)
            record = self._require_membership(organization_id, principal_id)
            if record.role == Role.PRESIDENT:
                raise MembershipRuleError("Cannot remove PRESIDENT. Transfer presidency first.")
            del self._memberships[(organization_id, principal_id)]
        
        await self._publish([
            membership_changed(REMOVED, organization_id, principal_id, removed_by=removed_by),
        ])
    
    async def leave(self, organization_id: int, principal_id: str) -> None:
        async with self._lock:
            self._require_organization(organization_id)
            record = self._require_membership(organization_id, principal_id)
            if record.role == Role.PRESIDENT:
                raise MembershipRuleError(
                    "President cannot leave organization. Transfer the presidency to another member first."
                )
            del self._memberships[(organization_id, principal_id)]
        
        await self._publish([
            membership_changed(LEFT, organization_id, principal_id),
        ])
    
    async def transfer_presidency(
        self,
        organization_id: int,
        from_principal_id: str,
        to_principal_id: str,
    ) -> tuple[MembershipRecord, MembershipRecord]:
        if from_principal_id == to_principal_id:
            raise MembershipRuleError("Principal is already the president")
        
        async with self._lock:
            self._require_organization(organization_id)
            current = self._require_membership(organization_id, from_principal_id)
            if current.role != Role.PRESIDENT:
                raise MembershipRuleError("Only the current PRESIDENT can transfer the presidency")
            
            target = self._memberships.get((organization_id, to_principal_id))
            if target is None:
                raise MembershipRuleError("New president must be a member of the organization")
            if not target.verified:
                raise MembershipRuleError("New president must be a verified member")
            
            # Both records change together
            demoted = current.model_copy(update={"role": Role.ADMIN})
            promoted = target.model_copy(update={"role": Role.PRESIDENT})
            self._memberships[(organization_id, from_principal_id)] = demoted
            self._memberships[(organization_id, to_principal_id)] = promoted
        
        await self._publish([
            membership_changed(PRESIDENCY_TRANSFERRED, organization_id, from_principal_id, role=Role.ADMIN.value),
            membership_changed(PRESIDENCY_TRANSFERRED, organization_id, to_principal_id, role=Role.PRESIDENT.value),
        ])
        return demoted, promoted
