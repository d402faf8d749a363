"""
orgaccess - Main entry point.

Walks through the credential lifecycle end to end and can be run to
verify the installation.
"""

from __future__ import annotations

import asyncio

from dotenv import load_dotenv

from orgaccess.auth import (
    CredentialLifecycleManager,
    PrincipalCreate,
    UserStore,
    decide,
    verify_bearer,
)
from orgaccess.core.events import get_event_bus, reset_event_bus
from orgaccess.core.models import Organization
from orgaccess.core.roles import Role
from orgaccess.storage import InMemoryMembershipStore


async def demo():
    """
    Run a demonstration of the access layer.
    
    Creates an organization, enrolls a member, and shows how the member's
    credential follows their membership changes.
    """
    print("=" * 60)
    print("ORGACCESS DEMO")
    print("=" * 60)
    print()
    
    reset_event_bus()
    bus = get_event_bus()
    store = InMemoryMembershipStore(event_bus=bus)
    users = UserStore()
    lifecycle = CredentialLifecycleManager(store, users, event_bus=bus)
    lifecycle.subscribe()
    
    print("Creating principals...")
    alice = await users.create(PrincipalCreate(email="alice@example.com", password="correct-horse", name="Alice"))
    bob = await users.create(PrincipalCreate(email="bob@example.com", password="battery-staple", name="Bob"))
    print(f"  ✓ {alice.name}: {alice.id}")
    print(f"  ✓ {bob.name}: {bob.id}")
    print()
    
    print("Creating organization...")
    org = Organization(id=await store.next_organization_id(), name="Chess Club", should_verify_enrollment=True)
    await store.create_organization(org, alice.id)
    print(f"  ✓ {org.name} (id {org.id}), president {alice.name}")
    print()
    
    print("Bob enrolls and waits for verification...")
    await store.enroll(org.id, bob.id)
    issued = await lifecycle.issue_token(bob.id)
    print(f"  ✓ Claims: {list(issued.credential.claims) or 'none'}")
    decision = decide(issued.credential, org.id, Role.MEMBER)
    print(f"  ✓ Read members: {decision.reason.value}")
    print()
    
    print("Alice verifies Bob and promotes him to moderator...")
    await store.verify(org.id, bob.id, verified_by=alice.id)
    await store.change_role(org.id, bob.id, Role.MODERATOR, changed_by=alice.id)
    refreshed = lifecycle.latest_for(bob.id)
    credential = verify_bearer(refreshed.access_token)
    print(f"  ✓ Reissued claims: {list(credential.claims)}")
    for role in (Role.MEMBER, Role.MODERATOR, Role.ADMIN):
        decision = decide(credential, org.id, role)
        print(f"  • requires {role.value:<9} -> {decision.reason.value}")
    print()
    
    events = bus.get_history(event_type="membership.*", organization_id=org.id)
    print(f"Membership events ({len(events)}):")
    for event in events:
        print(f"  • {event.event_type} {event.principal_id}")
    print()
    
    print("=" * 60)
    print("Demo complete!")
    print()
    print("Try the API: uvicorn orgaccess.api.app:app --reload")
    print("=" * 60)


def main():
    """Main entry point."""
    load_dotenv()
    asyncio.run(demo())


if __name__ == "__main__":
    main()
