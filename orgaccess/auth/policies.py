"""
Guard pipeline - the ordered checks in front of every route.

Each route gets an explicit pipeline at registration time:

    1. CredentialGuard     signature, structure, expiry (with grace)
    2. RateLimitGuard      per principal, or per IP when anonymous
    3. AnomalyGuard        heuristics; logs, escalates only on high-risk routes
    4. AuthorizationGuard  the decision engine
    5. the route handler   only reached when all of the above pass

The first guard that denies stops the pipeline, and its reason code goes
back to the caller unchanged.

Usage:
    @router.get("/organizations/{org_id}/members")
    async def list_members(
        org_id: int,
        ctx: AccessContext = Depends(require_role(Role.MEMBER)),
    ):
        ...
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Sequence

from fastapi import HTTPException, Request, Response

from orgaccess.auth.anomaly import DEFAULT_HEURISTICS, Heuristic, score_request
from orgaccess.auth.codec import parse_organization_id
from orgaccess.auth.context import AccessContext
from orgaccess.auth.decision import Decision, ReasonCode, decide, decide_any
from orgaccess.auth.jwt import TokenExpiredError, TokenInvalidError, verify_bearer
from orgaccess.auth.rate_limit import RateLimiter, get_rate_limiter
from orgaccess.config import Settings, get_settings
from orgaccess.core.roles import Role
from orgaccess.integrations.sentry import set_user

logger = logging.getLogger(__name__)


class AccessDenied(Exception):
    """Raised when a pipeline denies a request; carries the decision."""
    
    def __init__(self, decision: Decision):
        self.decision = decision
        super().__init__(decision.detail or decision.reason.value)


def log_security_event(event: str, **data: Any) -> None:
    """Audit log for access attempts. Denials at WARNING, grants at DEBUG."""
    if "DENIED" in event or "ERROR" in event:
        logger.warning("Security event: %s", event, extra={"security_event": event, **data})
    else:
        logger.debug("Security event: %s", event, extra={"security_event": event, **data})


# =============================================================================
# Guards
# =============================================================================


class Guard(ABC):
    """One stage of the pipeline."""
    
    name: str = "guard"
    
    @abstractmethod
    async def check(self, ctx: AccessContext) -> Decision | None:
        """Return a denial to stop the pipeline, or None to continue."""
        pass
    
    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


class CredentialGuard(Guard):
    """Verify the bearer credential and attach it to the context."""
    
    name = "credential"
    
    def __init__(self, settings: Settings | None = None, required: bool = True):
        self._settings = settings
        self.required = required
    
    async def check(self, ctx: AccessContext) -> Decision | None:
        if not ctx.token:
            if self.required:
                return Decision.deny(ReasonCode.NOT_AUTHENTICATED, "Authentication required")
            return None
        
        settings = self._settings or ctx.settings or get_settings()
        try:
            ctx.credential = verify_bearer(ctx.token, settings, now=ctx.now)
        except TokenExpiredError:
            return Decision.deny(ReasonCode.EXPIRED, "Credential has expired")
        except TokenInvalidError as e:
            return Decision.deny(ReasonCode.MALFORMED_CREDENTIAL, str(e))
        
        return None


class RateLimitGuard(Guard):
    """Throttle before any authorization work is done."""
    
    name = "rate_limit"
    
    def __init__(self, limiter: RateLimiter | None = None, fail_closed: bool | None = None):
        self._limiter = limiter
        self.fail_closed = fail_closed
    
    async def check(self, ctx: AccessContext) -> Decision | None:
        limiter = self._limiter or get_rate_limiter()
        result = await limiter.hit(ctx.rate_limit_key, fail_closed=self.fail_closed)
        ctx.rate_limit = result
        
        if not result.allowed:
            detail = f"Rate limit exceeded. Maximum {result.limit} requests per {limiter.window_seconds} seconds."
            if result.degraded:
                detail = "Rate limiter unavailable"
            return Decision.deny(ReasonCode.RATE_LIMITED, detail, retry_after=result.retry_after)
        
        return None


class AnomalyGuard(Guard):
    """
    Score the request against the heuristics.
    
    Only high-risk routes can be denied here: once the score reaches the
    threshold the caller must re-authenticate with a fresh credential.
    """
    
    name = "anomaly"
    
    def __init__(
        self,
        settings: Settings | None = None,
        heuristics: tuple[Heuristic, ...] = DEFAULT_HEURISTICS,
    ):
        self._settings = settings
        self.heuristics = heuristics
    
    async def check(self, ctx: AccessContext) -> Decision | None:
        settings = self._settings or ctx.settings or get_settings()
        score, signals = score_request(ctx, settings, self.heuristics)
        ctx.anomaly_score = score
        ctx.anomaly_signals = signals
        
        if signals:
            logger.info(
                "Anomaly signals on request",
                extra={
                    "principal_id": ctx.principal_id,
                    "path": ctx.path,
                    "score": score,
                    "signals": signals,
                },
            )
        
        if ctx.high_risk and score >= settings.anomaly_escalation_threshold:
            return Decision.deny(
                ReasonCode.NOT_AUTHENTICATED,
                "Re-authentication required for this operation",
            )
        
        return None


class AuthorizationGuard(Guard):
    """Run the decision engine for the route's organization and role."""
    
    name = "authorization"
    
    def __init__(self, settings: Settings | None = None):
        self._settings = settings
    
    async def check(self, ctx: AccessContext) -> Decision | None:
        if ctx.required_role is None:
            # Route only needs the guards above
            ctx.decision = Decision.ok()
            return None
        
        if ctx.credential is None:
            return Decision.deny(ReasonCode.NOT_AUTHENTICATED, "Authentication required")
        
        settings = self._settings or ctx.settings or get_settings()
        if ctx.requested_org_id is None:
            decision = decide_any(
                ctx.credential,
                ctx.required_role,
                now=ctx.now,
                grace_seconds=settings.credential_grace_seconds,
            )
        else:
            decision = decide(
                ctx.credential,
                ctx.requested_org_id,
                ctx.required_role,
                now=ctx.now,
                grace_seconds=settings.credential_grace_seconds,
            )
        
        ctx.decision = decision
        return None if decision.allowed else decision


# =============================================================================
# Pipeline
# =============================================================================


class GuardPipeline:
    """An ordered list of guards; stops at the first denial."""
    
    def __init__(self, guards: Sequence[Guard]):
        self.guards = list(guards)
    
    async def run(self, ctx: AccessContext) -> Decision:
        for guard in self.guards:
            denial = await guard.check(ctx)
            if denial is not None:
                ctx.decision = denial
                log_security_event(
                    "ACCESS_DENIED",
                    guard=guard.name,
                    reason=denial.reason.value,
                    principal_id=ctx.principal_id,
                    organization_id=ctx.requested_org_id,
                    required_role=ctx.required_role.value if ctx.required_role else None,
                    method=ctx.method,
                    path=ctx.path,
                )
                return denial
        
        if ctx.decision is None:
            ctx.decision = Decision.ok()
        
        log_security_event(
            "ACCESS_GRANTED",
            principal_id=ctx.principal_id,
            organization_id=ctx.requested_org_id,
            matched_role=ctx.matched_role.value if ctx.matched_role else None,
            path=ctx.path,
        )
        return ctx.decision
    
    async def enforce(self, ctx: AccessContext) -> AccessContext:
        """Run the pipeline and raise `AccessDenied` on denial."""
        decision = await self.run(ctx)
        if not decision.allowed:
            raise AccessDenied(decision)
        return ctx
    
    def __repr__(self) -> str:
        return f"<GuardPipeline({', '.join(g.name for g in self.guards)})>"


def build_pipeline(
    settings: Settings | None = None,
    limiter: RateLimiter | None = None,
    require_credential: bool = True,
    fail_closed: bool | None = None,
    heuristics: tuple[Heuristic, ...] = DEFAULT_HEURISTICS,
) -> GuardPipeline:
    """The standard four-guard pipeline."""
    return GuardPipeline([
        CredentialGuard(settings, required=require_credential),
        RateLimitGuard(limiter, fail_closed=fail_closed),
        AnomalyGuard(settings, heuristics),
        AuthorizationGuard(settings),
    ])


# =============================================================================
# Main Interface - route dependencies
# =============================================================================


def require_role(
    role: Role,
    org_param: str | None = "org_id",
    high_risk: bool = False,
    fail_closed: bool | None = None,
    pipeline: GuardPipeline | None = None,
) -> Callable:
    """
    Require a minimum organization role to access a route.
    
    Args:
        role: Lowest role that may use the route
        org_param: Path parameter holding the organization id; None checks
            the role in any organization
        high_risk: Let anomaly heuristics escalate to a denial
        fail_closed: Rate-limiter failure policy for this route
        pipeline: Custom pipeline (defaults to `build_pipeline`)
    
    Returns:
        FastAPI dependency that resolves to AccessContext
    """
    pipeline = pipeline or build_pipeline(fail_closed=fail_closed)
    return _create_dependency(pipeline, role, org_param, high_risk)


def require_auth(fail_closed: bool | None = None) -> Callable:
    """Just require a valid credential, no specific role."""
    return _create_dependency(build_pipeline(fail_closed=fail_closed), None, None, False)


def rate_limited() -> Callable:
    """Anonymous-friendly pipeline: optional credential, rate limit by principal or IP."""
    return _create_dependency(build_pipeline(require_credential=False), None, None, False)


# =============================================================================
# Internal: Create the FastAPI Dependency
# =============================================================================


def _create_dependency(
    pipeline: GuardPipeline,
    role: Role | None,
    org_param: str | None,
    high_risk: bool,
) -> Callable:
    """Create a FastAPI Depends from a pipeline."""
    
    async def dependency(request: Request, response: Response) -> AccessContext:
        org_id = None
        if role is not None and org_param is not None:
            raw = request.path_params.get(org_param)
            if raw is None:
                raise HTTPException(status_code=400, detail=f"Organization id parameter '{org_param}' not found")
            try:
                org_id = parse_organization_id(raw)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
        
        settings = getattr(request.app.state, "settings", None) or get_settings()
        ctx = AccessContext.from_headers(
            request.headers,
            client_ip=request.client.host if request.client else None,
            trusted_proxy_hops=settings.trusted_proxy_hops,
            settings=settings,
            method=request.method,
            path=request.url.path,
            requested_org_id=org_id,
            required_role=role,
            high_risk=high_risk,
        )
        request.state.access = ctx
        await pipeline.enforce(ctx)
        if ctx.principal_id:
            set_user(ctx.principal_id)
        
        if ctx.rate_limit is not None:
            response.headers["X-RateLimit-Limit"] = str(ctx.rate_limit.limit)
            response.headers["X-RateLimit-Remaining"] = str(ctx.rate_limit.remaining)
        return ctx
    
    return dependency
