"""
Credential lifecycle - issue at login, reissue when memberships change.

Credentials are never mutated or revoked. A membership change produces a
new credential for the affected principal; the old one stays valid until
its own expiry, so staleness is bounded by the credential lifetime.

Issuance reads verified memberships from the store with a timeout. If the
read times out, issuance fails and whatever credential the caller already
holds remains the authoritative one.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from pydantic import BaseModel

from orgaccess.auth.codec import encode
from orgaccess.auth.credentials import Credential
from orgaccess.auth.jwt import sign_credential
from orgaccess.auth.users import UserStore
from orgaccess.config import ClaimOverflowPolicy, Settings, get_settings
from orgaccess.core.events import Event, EventBus, Subscription, credential_refreshed, get_event_bus
from orgaccess.core.models import MembershipRecord
from orgaccess.core.utils import generate_id, utc_now
from orgaccess.storage.base import MembershipStore

logger = logging.getLogger(__name__)


class ClaimCapExceededError(Exception):
    """A principal holds more verified memberships than one credential may carry."""
    
    def __init__(self, principal_id: str, count: int, cap: int):
        self.principal_id = principal_id
        self.count = count
        self.cap = cap
        super().__init__(
            f"Principal {principal_id} has {count} verified memberships; "
            f"the credential cap is {cap}"
        )


class MembershipLookupError(Exception):
    """Memberships could not be read in time; nothing was issued."""
    pass


class IssuedCredential(BaseModel):
    """A signed credential ready for the transport."""
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds until the credential expires
    credential: Credential


def select_claims(
    memberships: list[MembershipRecord],
    cap: int,
) -> list[MembershipRecord]:
    """
    Deterministic subset under the cap: highest roles first, then lowest
    organization id.
    """
    ranked = sorted(memberships, key=lambda m: (-m.role.level, m.organization_id))
    return ranked[:cap]


class CredentialLifecycleManager:
    """
    Builds credentials from live membership facts.
    
    Usage:
        manager = CredentialLifecycleManager(store, users)
        manager.subscribe()
        issued = await manager.issue_token(principal.id)
    """
    
    def __init__(
        self,
        store: MembershipStore,
        users: UserStore | None = None,
        settings: Settings | None = None,
        event_bus: EventBus | None = None,
    ):
        self.store = store
        self.users = users
        self._settings = settings
        self._event_bus = event_bus
        self._subscription: Subscription | None = None
        # principal id -> most recent reissue, waiting for the transport
        self._outbox: dict[str, IssuedCredential] = {}
    
    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()
    
    # =========================================================================
    # Issuance
    # =========================================================================
    
    async def issue(self, principal_id: str, now: datetime | None = None) -> Credential:
        """
        Build a credential from the principal's current verified memberships.
        
        Raises:
            MembershipLookupError: the membership read timed out
            ClaimCapExceededError: over the cap under the refuse policy
        """
        settings = self.settings
        now = (now or utc_now()).replace(microsecond=0)
        
        try:
            records, global_access = await asyncio.wait_for(
                self._load(principal_id),
                timeout=settings.membership_lookup_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.warning(
                "Membership lookup timed out",
                extra={"principal_id": principal_id, "timeout": settings.membership_lookup_timeout_seconds},
            )
            raise MembershipLookupError(f"Membership lookup timed out for {principal_id}") from e
        
        truncated = False
        if len(records) > settings.max_claims:
            if settings.claim_overflow_policy == ClaimOverflowPolicy.REFUSE:
                logger.error(
                    "Claim cap exceeded, refusing to issue",
                    extra={"principal_id": principal_id, "count": len(records), "cap": settings.max_claims},
                )
                raise ClaimCapExceededError(principal_id, len(records), settings.max_claims)
            
            kept = select_claims(records, settings.max_claims)
            dropped = sorted({r.organization_id for r in records} - {r.organization_id for r in kept})
            logger.error(
                "Claim cap exceeded, issuing truncated credential",
                extra={
                    "principal_id": principal_id,
                    "count": len(records),
                    "cap": settings.max_claims,
                    "dropped_organization_ids": dropped,
                },
            )
            records = kept
            truncated = True
        
        claims = encode(r.as_membership() for r in records)
        
        credential = Credential(
            subject_id=principal_id,
            claims=tuple(claims),
            global_access=global_access,
            issued_at=now,
            expires_at=now + timedelta(minutes=settings.credential_ttl_minutes),
            credential_id=generate_id("cred"),
            truncated=truncated,
        )
        
        logger.info(
            "Credential issued",
            extra={
                "principal_id": principal_id,
                "credential_id": credential.credential_id,
                "claims": len(claims),
                "global_access": global_access,
            },
        )
        return credential
    
    async def issue_token(self, principal_id: str, now: datetime | None = None) -> IssuedCredential:
        """Issue and sign a credential."""
        credential = await self.issue(principal_id, now=now)
        return self._sign(credential, now)
    
    async def refresh(self, credential: Credential, now: datetime | None = None) -> IssuedCredential:
        """Reissue for the credential's subject. The old credential is left alone."""
        issued = await self.issue_token(credential.subject_id, now=now)
        logger.info(
            "Credential refreshed",
            extra={
                "principal_id": credential.subject_id,
                "previous_credential_id": credential.credential_id,
                "credential_id": issued.credential.credential_id,
            },
        )
        return issued
    
    def needs_refresh(self, credential: Credential, now: datetime | None = None) -> bool:
        """True once the credential is within the refresh threshold of expiry."""
        now = now or utc_now()
        return credential.seconds_until_expiry(now) <= self.settings.refresh_threshold_seconds
    
    async def _load(self, principal_id: str) -> tuple[list[MembershipRecord], bool]:
        records = await self.store.list_memberships(principal_id, verified_only=True)
        global_access = False
        if self.users is not None:
            principal = await self.users.get(principal_id)
            global_access = bool(principal and principal.global_access)
        return records, global_access
    
    def _sign(self, credential: Credential, now: datetime | None = None) -> IssuedCredential:
        now = now or utc_now()
        return IssuedCredential(
            access_token=sign_credential(credential, self.settings),
            expires_in=max(0, int(credential.seconds_until_expiry(now))),
            credential=credential,
        )
    
    # =========================================================================
    # Membership events
    # =========================================================================
    
    def subscribe(self, event_bus: EventBus | None = None) -> Subscription:
        """Reissue on every membership-changed event."""
        bus = event_bus or self._event_bus or get_event_bus()
        if self._subscription is not None:
            bus.unsubscribe(self._subscription)
        self._subscription = bus.subscribe("membership.*", self.handle_membership_event)
        return self._subscription
    
    async def handle_membership_event(self, event: Event) -> list[Event]:
        principal_id = event.principal_id
        if not principal_id:
            return []
        
        try:
            issued = await self.issue_token(principal_id)
        except (ClaimCapExceededError, MembershipLookupError):
            logger.exception(
                "Reissue after membership change failed; previous credential remains valid",
                extra={"principal_id": principal_id, "event_type": event.event_type},
            )
            return []
        
        self._hold(principal_id, issued)
        return [
            credential_refreshed(
                principal_id,
                issued.credential.credential_id,
                trigger=event.event_type,
            ).caused_by(event)
        ]
    
    # =========================================================================
    # Outbox
    # =========================================================================
    
    def latest_for(self, principal_id: str, now: datetime | None = None) -> IssuedCredential | None:
        """Most recent reissue for the principal, if one is waiting and still fresh."""
        issued = self._outbox.get(principal_id)
        if issued is None:
            return None
        return self._deliverable(principal_id, issued, now or utc_now())
    
    def take_latest(self, principal_id: str, now: datetime | None = None) -> IssuedCredential | None:
        """
        Hand the waiting reissue to the transport and clear it.
        
        A reissue that has expired or is already due for refresh is dropped
        and None returned, so the caller issues a fresh one instead.
        """
        issued = self._outbox.pop(principal_id, None)
        if issued is None:
            return None
        return self._deliverable(principal_id, issued, now or utc_now())
    
    def _deliverable(self, principal_id: str, issued: IssuedCredential, now: datetime) -> IssuedCredential | None:
        if self.needs_refresh(issued.credential, now):
            self._outbox.pop(principal_id, None)
            logger.debug(
                "Dropped stale reissue",
                extra={"principal_id": principal_id, "credential_id": issued.credential.credential_id},
            )
            return None
        # expires_in counts from delivery, not from issuance
        return issued.model_copy(update={
            "expires_in": max(0, int(issued.credential.seconds_until_expiry(now))),
        })
    
    def _hold(self, principal_id: str, issued: IssuedCredential) -> None:
        """Keep the reissue, newest last; evict stale entries, then the oldest, past the cap."""
        self._outbox.pop(principal_id, None)
        self._outbox[principal_id] = issued
        
        cap = self.settings.refresh_outbox_max_entries
        if len(self._outbox) <= cap:
            return
        
        now = utc_now()
        for stale in [p for p, i in self._outbox.items() if self.needs_refresh(i.credential, now)]:
            del self._outbox[stale]
        while len(self._outbox) > cap:
            evicted = next(iter(self._outbox))
            del self._outbox[evicted]
            logger.info("Evicted undelivered reissue", extra={"principal_id": evicted})
    
    
    def pending(self) -> int:
        """Number of reissues waiting for delivery."""
        return len(self._outbox)
