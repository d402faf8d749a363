"""
Access control - compact credentials, one decision engine, ordered guards.

Design principles:
1. Memberships are the source of truth; credentials are derived from them
2. One pure function decides allow/deny for every route
3. Guards run in a fixed order and the first denial wins
4. Zero boilerplate in route handlers
"""

from orgaccess.auth.codec import (
    ClaimDecodeError,
    ClaimEncodeError,
    encode,
    decode,
)
from orgaccess.auth.credentials import (
    Credential,
    CredentialFormat,
    CompactPayload,
    LegacyPayload,
    parse_payload,
)
from orgaccess.auth.decision import (
    Decision,
    ReasonCode,
    decide,
    decide_any,
)
from orgaccess.auth.context import AccessContext
from orgaccess.auth.jwt import (
    TokenError,
    TokenExpiredError,
    TokenInvalidError,
    sign_credential,
    verify_bearer,
)
from orgaccess.auth.rate_limit import (
    RateLimiter,
    RateLimitResult,
    InMemoryRateLimiter,
    RedisRateLimiter,
    get_rate_limiter,
    set_rate_limiter,
)
from orgaccess.auth.policies import (
    AccessDenied,
    Guard,
    GuardPipeline,
    build_pipeline,
    require_role,
    require_auth,
    rate_limited,
)
from orgaccess.auth.users import (
    UserStore,
    PrincipalCreate,
    hash_password,
    verify_password,
)
from orgaccess.auth.lifecycle import (
    ClaimCapExceededError,
    CredentialLifecycleManager,
    IssuedCredential,
    MembershipLookupError,
)
from orgaccess.auth.routes import router as auth_router

__all__ = [
    # Main interface
    "require_role",
    "require_auth",
    "rate_limited",
    "AccessContext",
    "AccessDenied",
    # Codec
    "ClaimDecodeError",
    "ClaimEncodeError",
    "encode",
    "decode",
    # Credentials
    "Credential",
    "CredentialFormat",
    "CompactPayload",
    "LegacyPayload",
    "parse_payload",
    # Decisions
    "Decision",
    "ReasonCode",
    "decide",
    "decide_any",
    # Bearer format
    "TokenError",
    "TokenExpiredError",
    "TokenInvalidError",
    "sign_credential",
    "verify_bearer",
    # Guards
    "Guard",
    "GuardPipeline",
    "build_pipeline",
    "RateLimiter",
    "RateLimitResult",
    "InMemoryRateLimiter",
    "RedisRateLimiter",
    "get_rate_limiter",
    "set_rate_limiter",
    # Principals and lifecycle
    "UserStore",
    "PrincipalCreate",
    "hash_password",
    "verify_password",
    "ClaimCapExceededError",
    "CredentialLifecycleManager",
    "IssuedCredential",
    "MembershipLookupError",
    # Router
    "auth_router",
]
