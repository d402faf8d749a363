"""
Credential model and its wire payloads.

Two payload shapes are accepted on the wire:

    Compact (v2):  {"v": 2, "s": "42", "o": ["A4", "M7"], "g": 0,
                    "iat": ..., "exp": ..., "jti": "..."}
    Legacy  (v1):  {"sub": "42", "email": ..., "orgAccess": ["Aorg-4"],
                    "isGlobalAdmin": false, "iat": ..., "exp": ...}

`parse_payload()` sniffs which one it is looking at. Both normalize to a
single `Credential`, which is the only thing the decision engine sees.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from orgaccess.core.utils import from_timestamp, to_timestamp


COMPACT_VERSION = 2
LEGACY_ORG_PREFIX = "org-"


class CredentialFormat(str, Enum):
    """Which wire payload a credential was read from."""
    
    COMPACT = "compact"
    LEGACY = "legacy"


class CredentialFormatError(ValueError):
    """Payload does not match any known credential shape."""
    pass


# =============================================================================
# Normalized credential
# =============================================================================


class Credential(BaseModel):
    """
    A principal's issued credential.
    
    Immutable once issued; a refresh produces a new one. `claims` may be
    empty, e.g. for a principal with global access and no memberships.
    Claims are kept as raw strings and decoded at decision time.
    """
    
    model_config = ConfigDict(frozen=True)
    
    subject_id: str = Field(min_length=1)
    claims: tuple[str, ...] = ()
    global_access: bool = False
    issued_at: datetime
    expires_at: datetime
    credential_id: str = ""
    
    # Set when the claim cap forced memberships out at issuance
    truncated: bool = False
    
    format: CredentialFormat = CredentialFormat.COMPACT
    
    def is_expired(self, now: datetime, grace_seconds: int = 0) -> bool:
        """Expired once `now` is more than `grace_seconds` past expiry."""
        return (now - self.expires_at).total_seconds() > grace_seconds
    
    def in_grace_period(self, now: datetime, grace_seconds: int) -> bool:
        """Past expiry but still tolerated for clock skew."""
        return now > self.expires_at and not self.is_expired(now, grace_seconds)
    
    def seconds_until_expiry(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds()
    
    def age_seconds(self, now: datetime) -> float:
        return (now - self.issued_at).total_seconds()
    
    def to_payload(self, issuer: str | None = None) -> dict[str, Any]:
        """Compact wire payload for signing."""
        payload: dict[str, Any] = {
            "v": COMPACT_VERSION,
            "s": self.subject_id,
            "o": list(self.claims),
            "g": 1 if self.global_access else 0,
            "iat": to_timestamp(self.issued_at),
            "exp": to_timestamp(self.expires_at),
            "jti": self.credential_id,
        }
        if self.truncated:
            payload["t"] = 1
        if issuer:
            payload["iss"] = issuer
        return payload


# =============================================================================
# Wire payloads
# =============================================================================


class CompactPayload(BaseModel):
    """Current payload shape: short field names, 1/0 booleans."""
    
    model_config = ConfigDict(extra="ignore")
    
    v: Literal[2] = COMPACT_VERSION
    s: str = Field(min_length=1)
    o: list[str] = Field(default_factory=list)
    g: Literal[0, 1] = 0
    iat: int
    exp: int
    jti: str = ""
    t: Literal[0, 1] = 0
    iss: str | None = None
    
    def to_credential(self) -> Credential:
        return Credential(
            subject_id=self.s,
            claims=tuple(self.o),
            global_access=self.g == 1,
            issued_at=from_timestamp(self.iat),
            expires_at=from_timestamp(self.exp),
            credential_id=self.jti,
            truncated=self.t == 1,
            format=CredentialFormat.COMPACT,
        )


class LegacyPayload(BaseModel):
    """Verbose v1 payload still carried by long-lived clients."""
    
    model_config = ConfigDict(extra="ignore")
    
    sub: str = Field(min_length=1)
    email: str = ""
    name: str = ""
    orgAccess: list[str]
    isGlobalAdmin: bool = False
    iat: int | None = None
    exp: int
    
    def to_credential(self) -> Credential:
        issued = self.iat if self.iat is not None else self.exp
        return Credential(
            subject_id=self.sub,
            claims=tuple(normalize_legacy_claim(c) for c in self.orgAccess),
            global_access=self.isGlobalAdmin,
            issued_at=from_timestamp(issued),
            expires_at=from_timestamp(self.exp),
            format=CredentialFormat.LEGACY,
        )


def normalize_legacy_claim(entry: str) -> str:
    """
    Rewrite a v1 entry like "Aorg-4" as the compact "A4".
    
    Entries already in compact form pass through untouched. Anything else
    is left as-is so the codec rejects it.
    """
    if len(entry) > 1 and entry[1:].startswith(LEGACY_ORG_PREFIX):
        return entry[0] + entry[1 + len(LEGACY_ORG_PREFIX):]
    return entry


def parse_payload(
    payload: dict[str, Any],
    accept_legacy: bool = True,
) -> CompactPayload | LegacyPayload:
    """
    Identify and validate a decoded payload.
    
    Raises:
        CredentialFormatError: unknown shape, or known shape with bad fields
    """
    if not isinstance(payload, dict):
        raise CredentialFormatError("Payload must be an object")
    
    try:
        if "v" in payload or "s" in payload:
            return CompactPayload.model_validate(payload)
        if "sub" in payload and "orgAccess" in payload:
            if not accept_legacy:
                raise CredentialFormatError("Legacy credentials are no longer accepted")
            return LegacyPayload.model_validate(payload)
    except ValidationError as e:
        raise CredentialFormatError(f"Invalid credential payload: {e.error_count()} error(s)") from e
    
    raise CredentialFormatError("Unrecognized credential payload")


def credential_from_payload(
    payload: dict[str, Any],
    accept_legacy: bool = True,
) -> Credential:
    """Parse any accepted payload shape straight into a `Credential`."""
    return parse_payload(payload, accept_legacy=accept_legacy).to_credential()
