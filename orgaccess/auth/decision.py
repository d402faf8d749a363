"""
Access decision engine.

`decide()` is a pure function of its inputs: the credential, the requested
organization, the required role, and the time. No I/O and no shared state,
so it can run concurrently from any number of request handlers.

Verification status is not re-checked here. Only verified memberships are
ever encoded, so a claim present in the credential is authoritative until
the credential expires.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from orgaccess.auth.codec import ClaimDecodeError, decode
from orgaccess.auth.credentials import Credential
from orgaccess.core.roles import HIGHEST_ROLE, Role, at_least
from orgaccess.core.utils import utc_now


DEFAULT_GRACE_SECONDS = 30


class ReasonCode(str, Enum):
    """Why a request was allowed or denied."""
    
    OK = "OK"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    NOT_A_MEMBER = "NOT_A_MEMBER"
    UNVERIFIED_MEMBER = "UNVERIFIED_MEMBER"
    INSUFFICIENT_ROLE = "INSUFFICIENT_ROLE"
    RATE_LIMITED = "RATE_LIMITED"
    MALFORMED_CREDENTIAL = "MALFORMED_CREDENTIAL"
    EXPIRED = "EXPIRED"
    
    @property
    def status_code(self) -> int:
        return REASON_STATUS_CODES[self]


# Transport mapping. OK proceeds to the handler, which picks its own status.
REASON_STATUS_CODES: dict[ReasonCode, int] = {
    ReasonCode.OK: 200,
    ReasonCode.NOT_AUTHENTICATED: 401,
    ReasonCode.MALFORMED_CREDENTIAL: 401,
    ReasonCode.EXPIRED: 401,
    ReasonCode.NOT_A_MEMBER: 403,
    ReasonCode.UNVERIFIED_MEMBER: 403,
    ReasonCode.INSUFFICIENT_ROLE: 403,
    ReasonCode.RATE_LIMITED: 429,
}


@dataclass(frozen=True)
class Decision:
    """The outcome of evaluating a request. Never persisted."""
    
    allowed: bool
    reason: ReasonCode
    matched_role: Role | None = None
    detail: str | None = None
    
    # Seconds until a throttled caller may retry
    retry_after: int | None = None
    
    @property
    def status_code(self) -> int:
        return self.reason.status_code
    
    @classmethod
    def ok(cls, matched_role: Role | None = None, detail: str | None = None) -> Decision:
        return cls(allowed=True, reason=ReasonCode.OK, matched_role=matched_role, detail=detail)
    
    @classmethod
    def deny(
        cls,
        reason: ReasonCode,
        detail: str | None = None,
        matched_role: Role | None = None,
        retry_after: int | None = None,
    ) -> Decision:
        if reason is ReasonCode.OK:
            raise ValueError("A denial needs a non-OK reason")
        return cls(
            allowed=False,
            reason=reason,
            matched_role=matched_role,
            detail=detail,
            retry_after=retry_after,
        )


def decide(
    credential: Credential,
    requested_org_id: int,
    required_role: Role,
    now: datetime | None = None,
    grace_seconds: int = DEFAULT_GRACE_SECONDS,
) -> Decision:
    """
    Decide whether `credential` may act on `requested_org_id` as `required_role`.
    
    Checks, first match wins:
        1. expired beyond the grace period -> EXPIRED
        2. global access                   -> OK (highest role)
        3. claims fail to decode           -> MALFORMED_CREDENTIAL
        4. no claim for the organization   -> NOT_A_MEMBER
        5. role below the required role    -> INSUFFICIENT_ROLE, else OK
    """
    now = now or utc_now()
    
    if credential.is_expired(now, grace_seconds):
        return Decision.deny(ReasonCode.EXPIRED, "Credential has expired")
    
    if credential.global_access:
        return Decision.ok(HIGHEST_ROLE, "Global access")
    
    try:
        memberships = decode(list(credential.claims))
    except ClaimDecodeError as e:
        return Decision.deny(ReasonCode.MALFORMED_CREDENTIAL, str(e))
    
    role = memberships.get(requested_org_id)
    if role is None:
        detail = f"Not a member of organization {requested_org_id}"
        if credential.truncated:
            detail += " (credential memberships were truncated at issuance)"
        return Decision.deny(ReasonCode.NOT_A_MEMBER, detail)
    
    if not at_least(role, required_role):
        return Decision.deny(
            ReasonCode.INSUFFICIENT_ROLE,
            f"Requires {required_role.value} or higher, has {role.value}",
            matched_role=role,
        )
    
    return Decision.ok(role)


def decide_any(
    credential: Credential,
    required_role: Role,
    now: datetime | None = None,
    grace_seconds: int = DEFAULT_GRACE_SECONDS,
) -> Decision:
    """
    Decide whether `credential` holds `required_role` in at least one organization.
    
    For routes that are not scoped to a single organization. Reports the
    highest role found.
    """
    now = now or utc_now()
    
    if credential.is_expired(now, grace_seconds):
        return Decision.deny(ReasonCode.EXPIRED, "Credential has expired")
    
    if credential.global_access:
        return Decision.ok(HIGHEST_ROLE, "Global access")
    
    try:
        memberships = decode(list(credential.claims))
    except ClaimDecodeError as e:
        return Decision.deny(ReasonCode.MALFORMED_CREDENTIAL, str(e))
    
    if not memberships:
        return Decision.deny(ReasonCode.NOT_A_MEMBER, "Not a member of any organization")
    
    best = max(memberships.values(), key=lambda r: r.level)
    if not at_least(best, required_role):
        return Decision.deny(
            ReasonCode.INSUFFICIENT_ROLE,
            f"Requires {required_role.value} or higher in some organization",
            matched_role=best,
        )
    
    return Decision.ok(best)
