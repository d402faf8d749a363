# =============================================================================
# Auth API Routes
# =============================================================================
#
# Endpoints:
#   POST /auth/register  - Create a principal, get a credential
#   POST /auth/login     - Get a credential
#   POST /auth/refresh   - Reissue from current memberships
#   GET  /auth/me        - Decoded claims of the caller
#
# =============================================================================

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, EmailStr

from orgaccess.auth.codec import ClaimDecodeError, decode
from orgaccess.auth.context import AccessContext
from orgaccess.auth.decision import Decision, ReasonCode
from orgaccess.auth.lifecycle import CredentialLifecycleManager, IssuedCredential
from orgaccess.auth.policies import AccessDenied, rate_limited, require_auth
from orgaccess.auth.users import PrincipalCreate, UserStore
from orgaccess.core.roles import Role

router = APIRouter(prefix="/auth", tags=["auth"])


# =============================================================================
# Dependencies
# =============================================================================

def get_lifecycle(request: Request) -> CredentialLifecycleManager:
    return request.app.state.lifecycle


def get_users(request: Request) -> UserStore:
    return request.app.state.users


# =============================================================================
# Request/Response Models
# =============================================================================

class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class CredentialResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    expires_at: datetime
    truncated: bool = False
    
    @classmethod
    def from_issued(cls, issued: IssuedCredential) -> "CredentialResponse":
        return cls(
            access_token=issued.access_token,
            token_type=issued.token_type,
            expires_in=issued.expires_in,
            expires_at=issued.credential.expires_at,
            truncated=issued.credential.truncated,
        )


class ClaimResponse(BaseModel):
    organization_id: int
    role: Role


class MeResponse(BaseModel):
    principal_id: str
    global_access: bool
    memberships: list[ClaimResponse]
    issued_at: datetime
    expires_at: datetime
    truncated: bool
    refresh_recommended: bool


# =============================================================================
# Public Endpoints
# =============================================================================

@router.post("/register", response_model=CredentialResponse)
async def register(
    data: PrincipalCreate,
    _: AccessContext = Depends(rate_limited()),
    users: UserStore = Depends(get_users),
    lifecycle: CredentialLifecycleManager = Depends(get_lifecycle),
):
    """Create a principal. Global access cannot be self-granted."""
    try:
        principal = await users.create(data.model_copy(update={"global_access": False}))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    
    return CredentialResponse.from_issued(await lifecycle.issue_token(principal.id))


@router.post("/login", response_model=CredentialResponse)
async def login(
    data: LoginRequest,
    _: AccessContext = Depends(rate_limited()),
    users: UserStore = Depends(get_users),
    lifecycle: CredentialLifecycleManager = Depends(get_lifecycle),
):
    """Authenticate and get a credential."""
    principal = await users.authenticate(data.email, data.password)
    if not principal:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    
    return CredentialResponse.from_issued(await lifecycle.issue_token(principal.id))


# =============================================================================
# Authenticated Endpoints
# =============================================================================

@router.post("/refresh", response_model=CredentialResponse)
async def refresh(
    ctx: AccessContext = Depends(require_auth()),
    lifecycle: CredentialLifecycleManager = Depends(get_lifecycle),
):
    """
    Reissue the caller's credential from current memberships.
    
    The presented credential stays valid until its own expiry.
    """
    issued = lifecycle.take_latest(ctx.principal_id, now=ctx.now)
    if issued is None:
        issued = await lifecycle.refresh(ctx.credential, now=ctx.now)
    return CredentialResponse.from_issued(issued)


@router.get("/me", response_model=MeResponse)
async def me(
    ctx: AccessContext = Depends(require_auth()),
    lifecycle: CredentialLifecycleManager = Depends(get_lifecycle),
):
    """What the caller's credential says, decoded."""
    credential = ctx.credential
    try:
        memberships = decode(list(credential.claims))
    except ClaimDecodeError as e:
        raise AccessDenied(Decision.deny(ReasonCode.MALFORMED_CREDENTIAL, str(e)))
    
    return MeResponse(
        principal_id=credential.subject_id,
        global_access=credential.global_access,
        memberships=[
            ClaimResponse(organization_id=org_id, role=role)
            for org_id, role in sorted(memberships.items())
        ],
        issued_at=credential.issued_at,
        expires_at=credential.expires_at,
        truncated=credential.truncated,
        refresh_recommended=lifecycle.needs_refresh(credential, now=ctx.now),
    )
