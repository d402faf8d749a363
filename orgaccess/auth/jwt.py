# =============================================================================
# Bearer Credential Format
# =============================================================================
#
# Credentials travel as standard signed tokens: three base64url segments
# (header, payload, signature). The payload is the compact claim set from
# credentials.py. This module only signs and verifies; it never decides
# whether access is allowed.
#
# Expiry is checked here with an explicit grace period instead of PyJWT's
# built-in check, so callers can tell "inside the grace window" apart from
# "expired".
#
# =============================================================================

from __future__ import annotations

from datetime import datetime
import logging

import jwt

from orgaccess.auth.credentials import (
    Credential,
    CredentialFormatError,
    credential_from_payload,
)
from orgaccess.config import Settings, get_settings
from orgaccess.core.utils import utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================


class TokenError(Exception):
    """Base exception for token errors."""
    pass


class TokenExpiredError(TokenError):
    """Token has expired beyond the grace period."""
    
    def __init__(self, message: str, credential: Credential | None = None):
        self.credential = credential
        super().__init__(message)


class TokenInvalidError(TokenError):
    """Token is invalid, badly signed, or malformed."""
    pass


# =============================================================================
# Signing
# =============================================================================


def sign_credential(credential: Credential, settings: Settings | None = None) -> str:
    """Serialize and sign a credential as a bearer token."""
    settings = settings or get_settings()
    payload = credential.to_payload(issuer=settings.credential_issuer)
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


# =============================================================================
# Verification
# =============================================================================


def read_bearer(token: str, settings: Settings | None = None) -> Credential:
    """
    Verify a bearer token's signature and structure.
    
    Expiry is NOT checked here; see `verify_bearer`.
    
    Raises:
        TokenInvalidError: bad format, signature, or payload shape
    """
    settings = settings or get_settings()
    
    if not token or token.count(".") != 2:
        raise TokenInvalidError("Invalid token format")
    
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"verify_exp": False, "require": ["exp"]},
        )
    except jwt.InvalidTokenError as e:
        raise TokenInvalidError(f"Invalid token: {e}") from e
    
    issuer = payload.get("iss")
    if issuer is not None and issuer != settings.credential_issuer:
        raise TokenInvalidError(f"Unexpected issuer: {issuer}")
    
    try:
        return credential_from_payload(
            payload,
            accept_legacy=settings.accept_legacy_credentials,
        )
    except CredentialFormatError as e:
        raise TokenInvalidError(str(e)) from e


def verify_bearer(
    token: str,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> Credential:
    """
    Verify a bearer token including expiry with the configured grace period.
    
    Returns:
        The decoded credential
    
    Raises:
        TokenInvalidError: bad format, signature, or payload shape
        TokenExpiredError: past expiry by more than the grace period
    """
    settings = settings or get_settings()
    now = now or utc_now()
    credential = read_bearer(token, settings)
    
    grace = settings.credential_grace_seconds
    if credential.is_expired(now, grace):
        raise TokenExpiredError("Token has expired beyond grace period", credential)
    
    if credential.in_grace_period(now, grace):
        logger.warning(
            "Credential in grace period",
            extra={"principal_id": credential.subject_id, "credential_id": credential.credential_id},
        )
    
    return credential
