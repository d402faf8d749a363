"""
Access context - everything the guard pipeline knows about one request.

Guards read the request facts and fill in what they learn (the decoded
credential, the rate-limit result, anomaly signals). Route handlers get
the finished context back once every guard has passed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from orgaccess.auth.credentials import Credential
from orgaccess.auth.decision import Decision, decide
from orgaccess.auth.rate_limit import RateLimitResult, rate_limit_key
from orgaccess.config import Settings
from orgaccess.core.roles import Role
from orgaccess.core.utils import utc_now


@dataclass
class AccessContext:
    """
    Per-request access context.
    
    Usage in routes:
        async def my_route(ctx: AccessContext = Depends(require_role(Role.ADMIN))):
            print(f"{ctx.principal_id} acting as {ctx.matched_role} in {ctx.requested_org_id}")
    """
    
    # Request facts
    token: str | None = None
    client_ip: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    method: str = "GET"
    path: str = "/"
    
    # What the route asks for
    requested_org_id: int | None = None
    required_role: Role | None = None
    high_risk: bool = False
    
    now: datetime = field(default_factory=utc_now)
    
    # Filled in by guards
    credential: Credential | None = None
    rate_limit: RateLimitResult | None = None
    anomaly_score: int = 0
    anomaly_signals: list[str] = field(default_factory=list)
    decision: Decision | None = None
    
    # Settings of the app serving the request; guards fall back to get_settings()
    settings: Settings | None = None
    
    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}
    
    @property
    def principal_id(self) -> str | None:
        return self.credential.subject_id if self.credential else None
    
    @property
    def is_authenticated(self) -> bool:
        return self.credential is not None
    
    @property
    def matched_role(self) -> Role | None:
        return self.decision.matched_role if self.decision else None
    
    @property
    def rate_limit_key(self) -> str:
        return rate_limit_key(self.principal_id, self.client_ip)
    
    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())
    
    def has_role(self, organization_id: int, role: Role) -> bool:
        """
        Secondary check inside a handler, e.g. against a second organization.
        
        Usage:
            if ctx.has_role(target_org_id, Role.ADMIN):
                ...
        """
        if self.credential is None:
            return False
        return decide(self.credential, organization_id, role, now=self.now).allowed
    
    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        client_ip: str | None = None,
        trusted_proxy_hops: int = 0,
        **kwargs: Any,
    ) -> AccessContext:
        """Build a context from raw request headers, pulling out the bearer token."""
        lowered = {k.lower(): v for k, v in headers.items()}
        return cls(
            token=extract_bearer_token(lowered.get("authorization")),
            client_ip=client_ip_from_headers(lowered, client_ip, trusted_proxy_hops),
            headers=lowered,
            **kwargs,
        )


def extract_bearer_token(authorization: str | None) -> str | None:
    """Token from an Authorization header; bare tokens are accepted too."""
    if not authorization:
        return None
    authorization = authorization.strip()
    if authorization.lower().startswith("bearer "):
        authorization = authorization[7:].strip()
    return authorization or None


def client_ip_from_headers(
    headers: Mapping[str, str],
    fallback: str | None = None,
    trusted_hops: int = 0,
) -> str | None:
    """
    Address to rate-limit an anonymous request by.
    
    Forwarding headers are set by the client unless a proxy we run rewrites
    them, so they are only read when `trusted_hops` proxies sit in front of
    the app. With N trusted proxies the client is the Nth address from the
    right of X-Forwarded-For; anything left of it is client-supplied.
    """
    if trusted_hops <= 0:
        return fallback
    
    forwarded_for = [a.strip() for a in headers.get("x-forwarded-for", "").split(",") if a.strip()]
    if forwarded_for:
        return forwarded_for[-min(trusted_hops, len(forwarded_for))]
    return headers.get("x-real-ip") or fallback
