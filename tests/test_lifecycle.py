"""
Tests for credential issuance and reissue on membership change.
"""

import asyncio
import logging
from datetime import timedelta

import pytest

from orgaccess.auth.codec import decode
from orgaccess.auth.jwt import verify_bearer
from orgaccess.auth.lifecycle import (
    ClaimCapExceededError,
    CredentialLifecycleManager,
    MembershipLookupError,
    select_claims,
)
from orgaccess.auth.users import PrincipalCreate, UserStore
from orgaccess.config import ClaimOverflowPolicy
from orgaccess.core.events import EventBus
from orgaccess.core.models import MembershipRecord, Organization
from orgaccess.core.roles import Role
from orgaccess.core.utils import utc_now
from orgaccess.storage import InMemoryMembershipStore

from conftest import NOW


# =============================================================================
# Fixtures
# =============================================================================


class SlowStore(InMemoryMembershipStore):
    """Store whose membership reads hang."""
    
    async def list_memberships(self, principal_id, verified_only=False):
        await asyncio.sleep(5)
        return []


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def store(bus):
    return InMemoryMembershipStore(event_bus=bus)


@pytest.fixture
def users():
    return UserStore()


@pytest.fixture
def manager(store, users, settings, bus):
    manager = CredentialLifecycleManager(store, users, settings=settings, event_bus=bus)
    manager.subscribe()
    return manager


async def add_orgs(store, count, president="owner", should_verify_enrollment=False):
    for org_id in range(1, count + 1):
        await store.create_organization(
            Organization(id=org_id, name=f"Org {org_id}", should_verify_enrollment=should_verify_enrollment),
            president,
        )


# =============================================================================
# Issuance
# =============================================================================


class TestIssue:
    @pytest.mark.asyncio
    async def test_only_verified_memberships(self, store, manager):
        await add_orgs(store, 2)
        await store.enroll(1, "alice")
        await store.create_organization(Organization(id=3, name="Gated"), "owner")
        await store.enroll(3, "alice")  # waits for verification
        
        credential = await manager.issue("alice", now=NOW)
        
        assert decode(list(credential.claims)) == {1: Role.MEMBER}
        assert credential.issued_at == NOW
        assert credential.expires_at == NOW + timedelta(minutes=24 * 60)
        assert credential.credential_id.startswith("cred_")
        assert not credential.truncated

    @pytest.mark.asyncio
    async def test_global_access_comes_from_principal(self, store, users, manager):
        admin = await users.create(PrincipalCreate(
            email="root@example.com", password="long-enough", name="Root", global_access=True,
        ))
        
        credential = await manager.issue(admin.id)
        
        assert credential.global_access
        assert credential.claims == ()

    @pytest.mark.asyncio
    async def test_granting_global_access_applies_on_next_issue(self, users, manager):
        principal = await users.create(PrincipalCreate(
            email="ops@example.com", password="long-enough", name="Ops",
        ))
        assert not (await manager.issue(principal.id)).global_access

        await users.set_global_access(principal.id, True)

        assert (await manager.issue(principal.id)).global_access

    @pytest.mark.asyncio
    async def test_without_principal_store(self, store, settings):
        await add_orgs(store, 1, president="owner")
        manager = CredentialLifecycleManager(store, settings=settings)
        
        credential = await manager.issue("owner")
        
        assert credential.claims == ("P1",)
        assert not credential.global_access

    @pytest.mark.asyncio
    async def test_signed_token_round_trips(self, store, manager, settings):
        await add_orgs(store, 1, president="owner")
        
        issued = await manager.issue_token("owner")
        
        credential = verify_bearer(issued.access_token, settings)
        assert credential.claims == ("P1",)
        assert issued.expires_in > 0

    @pytest.mark.asyncio
    async def test_lookup_timeout(self, settings):
        settings = settings.model_copy(update={"membership_lookup_timeout_seconds": 0.01})
        manager = CredentialLifecycleManager(SlowStore(), settings=settings)
        
        with pytest.raises(MembershipLookupError):
            await manager.issue("alice")


# =============================================================================
# Claim Cap
# =============================================================================


class TestClaimCap:
    @pytest.mark.asyncio
    async def test_refuse_by_default(self, store, manager, settings):
        settings.max_claims = 2
        await add_orgs(store, 3, president="alice")
        
        with pytest.raises(ClaimCapExceededError) as exc_info:
            await manager.issue("alice")
        assert exc_info.value.count == 3
        assert exc_info.value.cap == 2

    @pytest.mark.asyncio
    async def test_at_cap_is_fine(self, store, manager, settings):
        settings.max_claims = 3
        await add_orgs(store, 3, president="alice")
        
        credential = await manager.issue("alice")
        assert len(credential.claims) == 3

    @pytest.mark.asyncio
    async def test_truncate_keeps_highest_roles(self, store, manager, settings, caplog):
        settings.max_claims = 2
        settings.claim_overflow_policy = ClaimOverflowPolicy.TRUNCATE
        await add_orgs(store, 4)
        for org_id in range(1, 5):
            await store.enroll(org_id, "alice")
        await store.change_role(3, "alice", Role.ADMIN, changed_by="owner")
        
        with caplog.at_level(logging.ERROR, logger="orgaccess.auth.lifecycle"):
            credential = await manager.issue("alice")
        
        # ADMIN of 3 first, then the lowest organization id among the MEMBERs
        assert decode(list(credential.claims)) == {3: Role.ADMIN, 1: Role.MEMBER}
        assert credential.truncated
        assert credential.to_payload()["t"] == 1
        assert any("truncated" in r.getMessage() for r in caplog.records)

    def test_select_claims_is_deterministic(self):
        records = [
            MembershipRecord(organization_id=org_id, principal_id="p", role=role, verified=True)
            for org_id, role in [(9, Role.MEMBER), (2, Role.MODERATOR), (5, Role.MODERATOR), (1, Role.MEMBER)]
        ]
        selected = select_claims(records, 3)
        assert [(r.organization_id, r.role) for r in selected] == [
            (2, Role.MODERATOR),
            (5, Role.MODERATOR),
            (1, Role.MEMBER),
        ]
        assert select_claims(list(reversed(records)), 3) == selected


# =============================================================================
# Refresh
# =============================================================================


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_reflects_new_memberships(self, store, manager, settings):
        await add_orgs(store, 2)
        await store.enroll(1, "alice")
        old = await manager.issue("alice")
        await store.enroll(2, "alice")
        
        issued = await manager.refresh(old)
        
        assert decode(list(issued.credential.claims)) == {1: Role.MEMBER, 2: Role.MEMBER}
        assert issued.credential.credential_id != old.credential_id
        # The old credential is untouched
        assert old.claims == ("M1",)

    def test_needs_refresh(self, manager):
        from conftest import make_credential
        
        assert not manager.needs_refresh(make_credential(expires_at=NOW + timedelta(hours=2)), now=NOW)
        assert manager.needs_refresh(make_credential(expires_at=NOW + timedelta(minutes=30)), now=NOW)
        assert manager.needs_refresh(make_credential(expires_at=NOW - timedelta(minutes=1)), now=NOW)


# =============================================================================
# Membership Events
# =============================================================================


class TestMembershipEvents:
    @pytest.mark.asyncio
    async def test_role_change_reissues(self, store, manager, settings):
        await add_orgs(store, 1)
        await store.enroll(1, "alice")
        
        await store.change_role(1, "alice", Role.MODERATOR, changed_by="owner")
        
        issued = manager.latest_for("alice")
        assert issued is not None
        assert verify_bearer(issued.access_token, settings).claims == ("O1",)

    @pytest.mark.asyncio
    async def test_verification_reissues(self, store, manager):
        await store.create_organization(Organization(id=1, name="Gated"), "owner")
        await store.enroll(1, "alice")
        assert manager.latest_for("alice").credential.claims == ()
        
        await store.verify(1, "alice", verified_by="owner")
        
        assert manager.latest_for("alice").credential.claims == ("M1",)

    @pytest.mark.asyncio
    async def test_removal_reissues(self, store, manager):
        await add_orgs(store, 1)
        await store.enroll(1, "alice")
        
        await store.remove(1, "alice", removed_by="owner")
        
        assert manager.latest_for("alice").credential.claims == ()

    @pytest.mark.asyncio
    async def test_refreshed_event_is_published(self, store, manager, bus):
        await add_orgs(store, 1)
        await store.enroll(1, "alice")
        
        refreshed = bus.get_history(event_type="credential.refreshed")
        assert refreshed[-1].principal_id == "alice"
        assert refreshed[-1].payload["trigger"] == "membership.enrolled"
        assert refreshed[-1].causation_id is not None

    @pytest.mark.asyncio
    async def test_failed_reissue_keeps_previous(self, store, manager, settings):
        await add_orgs(store, 2, president="alice")
        previous = manager.latest_for("alice")
        settings.max_claims = 2
        
        await store.create_organization(Organization(id=3, name="Third"), "alice")
        
        assert manager.latest_for("alice").credential.credential_id == previous.credential.credential_id

    @pytest.mark.asyncio
    async def test_take_latest_clears(self, store, manager):
        await add_orgs(store, 1)
        await store.enroll(1, "alice")
        
        assert manager.take_latest("alice") is not None
        assert manager.take_latest("alice") is None

    @pytest.mark.asyncio
    async def test_resubscribe_does_not_double_handle(self, store, manager, bus):
        manager.subscribe()
        await add_orgs(store, 1)
        
        assert len(bus.get_history(event_type="credential.refreshed")) == 1


# =============================================================================
# Outbox
# =============================================================================


class TestOutbox:
    @pytest.mark.asyncio
    async def test_expired_reissue_is_not_delivered(self, store, manager):
        await add_orgs(store, 1)
        await store.enroll(1, "alice")
        
        # Alice only comes back two days later, past the credential lifetime
        later = utc_now() + timedelta(days=2)
        
        assert manager.latest_for("alice", now=later) is None
        assert manager.take_latest("alice", now=later) is None
        assert manager.pending == 0

    @pytest.mark.asyncio
    async def test_reissue_due_for_refresh_is_not_delivered(self, store, manager, settings):
        await add_orgs(store, 1)
        await store.enroll(1, "alice")
        
        almost_expired = utc_now() + timedelta(minutes=settings.credential_ttl_minutes) - timedelta(minutes=10)
        
        assert manager.take_latest("alice", now=almost_expired) is None

    @pytest.mark.asyncio
    async def test_expires_in_counts_from_delivery(self, store, manager):
        await add_orgs(store, 1)
        await store.enroll(1, "alice")
        
        delivered_at = utc_now() + timedelta(hours=3)
        issued = manager.take_latest("alice", now=delivered_at)
        
        assert issued is not None
        remaining = (issued.credential.expires_at - delivered_at).total_seconds()
        assert abs(issued.expires_in - remaining) <= 1

    @pytest.mark.asyncio
    async def test_outbox_is_bounded(self, store, manager, settings):
        settings.refresh_outbox_max_entries = 2
        await store.create_organization(Organization(id=1, name="Open", should_verify_enrollment=False), "owner")
        
        for principal_id in ("alice", "bob", "carol"):
            await store.enroll(1, principal_id)
        
        assert manager.pending == 2
        # owner and alice were the oldest
        assert manager.latest_for("owner") is None
        assert manager.latest_for("alice") is None
        assert manager.latest_for("carol") is not None

    @pytest.mark.asyncio
    async def test_reissue_moves_principal_to_newest(self, store, manager, settings):
        settings.refresh_outbox_max_entries = 2
        await store.create_organization(Organization(id=1, name="Open", should_verify_enrollment=False), "owner")
        await store.enroll(1, "alice")
        await store.enroll(1, "bob")
        
        await store.change_role(1, "alice", Role.ADMIN, changed_by="owner")
        await store.enroll(1, "carol")
        
        assert manager.latest_for("alice").credential.claims == ("A1",)
        assert manager.latest_for("carol") is not None
        assert manager.latest_for("bob") is None
