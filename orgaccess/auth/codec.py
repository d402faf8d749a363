"""
Compact claim codec.

One membership travels as `<RoleCode><OrganizationId>`, e.g. "A4" for
ADMIN of organization 4. No separator and no field names, because the
claim array rides along on every request.

Order inside the array carries no meaning. An organization id may appear
at most once; anything that does not parse exactly is rejected.
"""

from __future__ import annotations

import re
from typing import Any, Iterable

from orgaccess.core.roles import Role, role_for_code
from orgaccess.core.models import Membership


# Width of the backing store's 64-bit ids
MAX_ORG_ID_DIGITS = 19

# ASCII digits only, no leading zeros, never zero
_ORG_ID_PATTERN = re.compile(r"[1-9][0-9]*")


class ClaimCodecError(Exception):
    """Base exception for claim encoding errors."""
    pass


class ClaimEncodeError(ClaimCodecError):
    """Memberships cannot be expressed as a valid claim array."""
    pass


class ClaimDecodeError(ClaimCodecError):
    """A claim array is malformed."""
    
    def __init__(self, message: str, claim: Any = None):
        self.claim = claim
        super().__init__(message)


# =============================================================================
# Encode
# =============================================================================


def encode_claim(organization_id: int, role: Role) -> str:
    """Encode a single (organization, role) pair."""
    org_str = str(organization_id)
    if organization_id <= 0 or len(org_str) > MAX_ORG_ID_DIGITS:
        raise ClaimEncodeError(f"Organization id out of range: {organization_id}")
    return f"{role.code}{org_str}"


def encode(memberships: Iterable[Membership]) -> list[str]:
    """
    Encode verified memberships into compact claims, in input order.
    
    Unverified memberships must be filtered out by the caller; passing one
    in is a programming error, as is listing an organization twice.
    """
    claims: list[str] = []
    seen: set[int] = set()
    
    for membership in memberships:
        if not membership.verified:
            raise ClaimEncodeError(
                f"Unverified membership for organization {membership.organization_id} "
                "cannot be encoded"
            )
        if membership.organization_id in seen:
            raise ClaimEncodeError(
                f"Duplicate membership for organization {membership.organization_id}"
            )
        seen.add(membership.organization_id)
        claims.append(encode_claim(membership.organization_id, membership.role))
    
    return claims


# =============================================================================
# Decode
# =============================================================================


def decode_claim(claim: Any) -> tuple[int, Role]:
    """Decode one compact claim into (organization_id, role)."""
    if not isinstance(claim, str) or len(claim) < 2:
        raise ClaimDecodeError(f"Malformed claim: {claim!r}", claim)
    
    role = role_for_code(claim[0])
    if role is None:
        raise ClaimDecodeError(f"Unknown role code in claim: {claim!r}", claim)
    
    org_str = claim[1:]
    if len(org_str) > MAX_ORG_ID_DIGITS or not _ORG_ID_PATTERN.fullmatch(org_str):
        raise ClaimDecodeError(f"Invalid organization id in claim: {claim!r}", claim)
    
    return int(org_str), role


def decode(claims: Any) -> dict[int, Role]:
    """
    Decode a claim array into {organization_id: role}.
    
    Raises:
        ClaimDecodeError: on any malformed entry or a repeated organization
    """
    if not isinstance(claims, (list, tuple)):
        raise ClaimDecodeError(f"Claims must be an array, got {type(claims).__name__}", claims)
    
    memberships: dict[int, Role] = {}
    for claim in claims:
        organization_id, role = decode_claim(claim)
        if organization_id in memberships:
            raise ClaimDecodeError(
                f"Organization {organization_id} appears more than once", claim
            )
        memberships[organization_id] = role
    
    return memberships


def parse_organization_id(value: Any) -> int:
    """
    Parse an organization id from a path or body value.
    
    Raises:
        ValueError: not a canonical positive decimal within the id width
    """
    text = str(value).strip()
    if len(text) > MAX_ORG_ID_DIGITS or not _ORG_ID_PATTERN.fullmatch(text):
        raise ValueError(f"Invalid organization id: {value!r}")
    return int(text)
