"""
FastAPI application for the orgaccess service.

Organization membership routes sit behind the guard pipeline; every
mutation publishes a membership event, and the lifecycle manager reissues
the affected principal's credential in response.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orgaccess.auth import (
    AccessContext,
    AccessDenied,
    ClaimCapExceededError,
    CredentialLifecycleManager,
    Decision,
    MembershipLookupError,
    RateLimiter,
    ReasonCode,
    UserStore,
    auth_router,
    require_auth,
    require_role,
    set_rate_limiter,
)
from orgaccess.config import RateLimitBackend, Settings, configure_logging, get_settings
from orgaccess.core.events import EventBus
from orgaccess.core.models import MembershipRecord, Organization
from orgaccess.core.redis import close_redis
from orgaccess.core.roles import Role
from orgaccess.integrations.sentry import capture_message, init_sentry
from orgaccess.storage import (
    InMemoryMembershipStore,
    MembershipNotFoundError,
    MembershipRuleError,
    MembershipStore,
)

logger = logging.getLogger(__name__)

# Reissued credentials for the caller ride back on this header
REFRESHED_CREDENTIAL_HEADER = "X-Refreshed-Credential"


# =============================================================================
# Lifespan
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup app resources."""
    settings: Settings = app.state.settings
    configure_logging(settings)
    settings.validate_for_production()
    
    if init_sentry(settings):
        logger.info("Sentry error tracking enabled")
    
    logger.info(f"orgaccess API starting in {settings.environment} mode")
    
    yield
    
    if settings.rate_limit_backend == RateLimitBackend.REDIS:
        await close_redis()
    logger.info("orgaccess API shutting down")


# =============================================================================
# Request/Response Models
# =============================================================================


class CreateOrganizationRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    is_public: bool = True
    should_verify_enrollment: bool = True
    allow_self_enrollment: bool = True
    enrollment_key: str | None = None


class EnrollRequest(BaseModel):
    enrollment_key: str | None = None


class ChangeRoleRequest(BaseModel):
    role: Role


class TransferPresidencyRequest(BaseModel):
    new_president_id: str


class MemberResponse(BaseModel):
    principal_id: str
    role: Role
    verified: bool
    
    @classmethod
    def from_record(cls, record: MembershipRecord) -> "MemberResponse":
        return cls(principal_id=record.principal_id, role=record.role, verified=record.verified)


# =============================================================================
# Dependencies
# =============================================================================


def get_store(request: Request) -> MembershipStore:
    return request.app.state.store


def get_lifecycle(request: Request) -> CredentialLifecycleManager:
    return request.app.state.lifecycle


def attach_refreshed_credential(
    response: Response,
    lifecycle: CredentialLifecycleManager,
    principal_id: str,
) -> None:
    """Hand the caller's reissued credential back, if their memberships changed."""
    issued = lifecycle.take_latest(principal_id)
    if issued is not None:
        response.headers[REFRESHED_CREDENTIAL_HEADER] = issued.access_token


# =============================================================================
# Exception Handlers
# =============================================================================


async def refine_denial(request: Request, decision: Decision) -> Decision:
    """
    Tell a pending member apart from a stranger.

    Credentials only carry verified memberships, so the pipeline reports
    NOT_A_MEMBER for both. One store read on the denial path tells them apart.
    """
    if decision.reason is not ReasonCode.NOT_A_MEMBER:
        return decision

    ctx: AccessContext | None = getattr(request.state, "access", None)
    if ctx is None or ctx.principal_id is None or ctx.requested_org_id is None:
        return decision

    record = await request.app.state.store.lookup_membership(ctx.requested_org_id, ctx.principal_id)
    if record is not None and not record.verified:
        return Decision.deny(
            ReasonCode.UNVERIFIED_MEMBER,
            f"Membership in organization {ctx.requested_org_id} is awaiting verification",
        )
    return decision


async def access_denied_handler(request: Request, exc: AccessDenied) -> JSONResponse:
    decision = await refine_denial(request, exc.decision)
    headers = {}
    if decision.retry_after is not None:
        headers["Retry-After"] = str(decision.retry_after)
    return JSONResponse(
        status_code=decision.status_code,
        content={"reason": decision.reason.value, "detail": decision.detail},
        headers=headers,
    )


async def claim_cap_handler(request: Request, exc: ClaimCapExceededError) -> JSONResponse:
    capture_message(
        "Claim cap exceeded",
        level="error",
        principal_id=exc.principal_id,
        count=exc.count,
        cap=exc.cap,
    )
    return JSONResponse(
        status_code=500,
        content={
            "reason": "CLAIM_CAP_EXCEEDED",
            "detail": "Too many memberships to issue a credential; contact an operator",
        },
    )


async def lookup_error_handler(request: Request, exc: MembershipLookupError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": str(exc)}, headers={"Retry-After": "1"})


async def rule_error_handler(request: Request, exc: MembershipRuleError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def not_found_handler(request: Request, exc: MembershipNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


# =============================================================================
# App Setup
# =============================================================================


def create_app(
    settings: Settings | None = None,
    store: MembershipStore | None = None,
    users: UserStore | None = None,
    event_bus: EventBus | None = None,
    rate_limiter: RateLimiter | None = None,
) -> FastAPI:
    """Build the application with its stores wired together."""
    settings = settings or get_settings()
    event_bus = event_bus or EventBus()
    store = store or InMemoryMembershipStore(event_bus=event_bus)
    users = users or UserStore()
    
    lifecycle = CredentialLifecycleManager(store, users, settings=settings, event_bus=event_bus)
    lifecycle.subscribe()
    
    if rate_limiter is not None:
        set_rate_limiter(rate_limiter)
    
    app = FastAPI(
        title="orgaccess API",
        description="Organization membership with compact access credentials",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.event_bus = event_bus
    app.state.store = store
    app.state.users = users
    app.state.lifecycle = lifecycle
    
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REFRESHED_CREDENTIAL_HEADER, "Retry-After"],
    )
    
    app.add_exception_handler(AccessDenied, access_denied_handler)
    app.add_exception_handler(ClaimCapExceededError, claim_cap_handler)
    app.add_exception_handler(MembershipLookupError, lookup_error_handler)
    app.add_exception_handler(MembershipRuleError, rule_error_handler)
    app.add_exception_handler(MembershipNotFoundError, not_found_handler)
    
    app.include_router(auth_router)
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    
    # =========================================================================
    # Health
    # =========================================================================
    
    @app.get("/health")
    async def health():
        return {"status": "healthy", "version": "0.1.0"}
    
    # =========================================================================
    # Organizations
    # =========================================================================
    
    @app.post("/organizations", status_code=201)
    async def create_organization(
        data: CreateOrganizationRequest,
        response: Response,
        ctx: AccessContext = Depends(require_auth()),
        store: MembershipStore = Depends(get_store),
        lifecycle: CredentialLifecycleManager = Depends(get_lifecycle),
    ) -> dict[str, Any]:
        """Create an organization with the caller as its PRESIDENT."""
        organization = Organization(
            id=await store.next_organization_id(),
            **data.model_dump(),
        )
        await store.create_organization(organization, ctx.principal_id)
        attach_refreshed_credential(response, lifecycle, ctx.principal_id)
        return {"organization_id": organization.id, "name": organization.name}
    
    @app.get("/organizations/{org_id}/members", response_model=list[MemberResponse])
    async def list_members(
        org_id: int,
        ctx: AccessContext = Depends(require_role(Role.MEMBER)),
        store: MembershipStore = Depends(get_store),
    ):
        """Everyone in the organization. Unverified members are shown to admins and up."""
        records = await store.list_members(org_id)
        if not ctx.has_role(org_id, Role.ADMIN):
            records = [r for r in records if r.verified]
        return [MemberResponse.from_record(r) for r in records]
    
    @app.delete("/organizations/{org_id}", status_code=204)
    async def delete_organization(
        org_id: int,
        ctx: AccessContext = Depends(require_role(Role.PRESIDENT, high_risk=True)),
        store: MembershipStore = Depends(get_store),
    ):
        if not await store.delete_organization(org_id):
            raise MembershipNotFoundError(f"Organization {org_id} not found")
        logger.warning(
            "Organization deleted",
            extra={"organization_id": org_id, "principal_id": ctx.principal_id},
        )
        return Response(status_code=204)
    
    # =========================================================================
    # Enrollment
    # =========================================================================
    
    @app.post("/organizations/{org_id}/enroll", response_model=MemberResponse)
    async def enroll(
        org_id: int,
        data: EnrollRequest,
        response: Response,
        ctx: AccessContext = Depends(require_auth()),
        store: MembershipStore = Depends(get_store),
        lifecycle: CredentialLifecycleManager = Depends(get_lifecycle),
    ):
        """Self-enroll as MEMBER; verified now only if the organization allows it."""
        record = await store.enroll(org_id, ctx.principal_id, data.enrollment_key)
        attach_refreshed_credential(response, lifecycle, ctx.principal_id)
        return MemberResponse.from_record(record)
    
    @app.post("/organizations/{org_id}/members/{principal_id}/verify", response_model=MemberResponse)
    async def verify_member(
        org_id: int,
        principal_id: str,
        ctx: AccessContext = Depends(require_role(Role.ADMIN)),
        store: MembershipStore = Depends(get_store),
    ):
        record = await store.verify(org_id, principal_id, verified_by=ctx.principal_id)
        return MemberResponse.from_record(record)
    
    @app.post("/organizations/{org_id}/leave", status_code=204)
    async def leave(
        org_id: int,
        ctx: AccessContext = Depends(require_auth()),
        store: MembershipStore = Depends(get_store),
        lifecycle: CredentialLifecycleManager = Depends(get_lifecycle),
    ):
        await store.leave(org_id, ctx.principal_id)
        response = Response(status_code=204)
        attach_refreshed_credential(response, lifecycle, ctx.principal_id)
        return response
    
    # =========================================================================
    # Roles
    # =========================================================================
    
    @app.put("/organizations/{org_id}/members/{principal_id}/role", response_model=MemberResponse)
    async def change_role(
        org_id: int,
        principal_id: str,
        data: ChangeRoleRequest,
        ctx: AccessContext = Depends(require_role(Role.ADMIN)),
        store: MembershipStore = Depends(get_store),
    ):
        record = await store.change_role(org_id, principal_id, data.role, changed_by=ctx.principal_id)
        return MemberResponse.from_record(record)
    
    @app.delete("/organizations/{org_id}/members/{principal_id}", status_code=204)
    async def remove_member(
        org_id: int,
        principal_id: str,
        ctx: AccessContext = Depends(require_role(Role.ADMIN)),
        store: MembershipStore = Depends(get_store),
    ):
        await store.remove(org_id, principal_id, removed_by=ctx.principal_id)
        return Response(status_code=204)
    
    @app.post("/organizations/{org_id}/transfer-presidency", response_model=list[MemberResponse])
    async def transfer_presidency(
        org_id: int,
        data: TransferPresidencyRequest,
        response: Response,
        ctx: AccessContext = Depends(require_role(Role.PRESIDENT, high_risk=True)),
        store: MembershipStore = Depends(get_store),
        lifecycle: CredentialLifecycleManager = Depends(get_lifecycle),
    ):
        """Hand PRESIDENT to a verified member; the caller becomes ADMIN."""
        demoted, promoted = await store.transfer_presidency(org_id, ctx.principal_id, data.new_president_id)
        attach_refreshed_credential(response, lifecycle, ctx.principal_id)
        return [MemberResponse.from_record(demoted), MemberResponse.from_record(promoted)]


app = create_app()
