"""
Tests for the guard pipeline and anomaly heuristics.
"""

from datetime import timedelta

import pytest

from orgaccess.auth.anomaly import DEFAULT_HEURISTICS, score_request
from orgaccess.auth.context import AccessContext, extract_bearer_token, client_ip_from_headers
from orgaccess.auth.decision import Decision, ReasonCode
from orgaccess.auth.jwt import sign_credential
from orgaccess.auth.policies import (
    AccessDenied,
    AnomalyGuard,
    AuthorizationGuard,
    CredentialGuard,
    Guard,
    GuardPipeline,
    RateLimitGuard,
    build_pipeline,
)
from orgaccess.auth.rate_limit import InMemoryRateLimiter
from orgaccess.core.roles import Role

from conftest import NOW, FakeClock, make_credential


BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0",
    "Referer": "https://app.example.com/orgs",
}


def bearer(settings, **kwargs) -> str:
    return sign_credential(make_credential(**kwargs), settings)


def make_context(token=None, headers=None, **kwargs) -> AccessContext:
    headers = dict(BROWSER_HEADERS if headers is None else headers)
    if token:
        headers["Authorization"] = f"Bearer {token}"
    kwargs.setdefault("now", NOW)
    return AccessContext.from_headers(headers, client_ip="10.0.0.1", **kwargs)


class RecordingGuard(Guard):
    name = "recording"
    
    def __init__(self):
        self.calls = 0
    
    async def check(self, ctx):
        self.calls += 1
        return None


@pytest.fixture
def limiter():
    return InMemoryRateLimiter(max_requests=5, window_seconds=15 * 60, clock=FakeClock())


@pytest.fixture
def pipeline(settings, limiter):
    return build_pipeline(settings=settings, limiter=limiter)


# =============================================================================
# Context Tests
# =============================================================================


class TestAccessContext:
    def test_bearer_extraction(self):
        assert extract_bearer_token("Bearer abc.def.ghi") == "abc.def.ghi"
        assert extract_bearer_token("bearer  abc") == "abc"
        assert extract_bearer_token("abc") == "abc"
        assert extract_bearer_token("Bearer ") is None
        assert extract_bearer_token(None) is None

    def test_forwarding_headers_ignored_without_trusted_proxy(self):
        headers = {"x-forwarded-for": "1.2.3.4", "x-real-ip": "5.6.7.8"}
        assert client_ip_from_headers(headers, "9.9.9.9") == "9.9.9.9"
        assert client_ip_from_headers({}, "9.9.9.9") == "9.9.9.9"

    def test_trusted_proxy_hops(self):
        # The client prepended 6.6.6.6 itself; the proxy appended 1.2.3.4
        headers = {"x-forwarded-for": "6.6.6.6, 1.2.3.4"}
        assert client_ip_from_headers(headers, "10.0.0.1", trusted_hops=1) == "1.2.3.4"
        assert client_ip_from_headers(headers, "10.0.0.1", trusted_hops=2) == "6.6.6.6"
        assert client_ip_from_headers({"x-real-ip": "5.6.7.8"}, "10.0.0.1", trusted_hops=1) == "5.6.7.8"
        assert client_ip_from_headers({}, "10.0.0.1", trusted_hops=1) == "10.0.0.1"

    def test_headers_are_case_insensitive(self):
        ctx = make_context(headers={"User-Agent": "Mozilla/5.0"})
        assert ctx.header("user-agent") == "Mozilla/5.0"
        assert ctx.header("USER-AGENT") == "Mozilla/5.0"

    def test_rate_limit_key_follows_credential(self):
        ctx = make_context()
        assert ctx.rate_limit_key == "ip:10.0.0.1"
        ctx.credential = make_credential(subject_id="user_9")
        assert ctx.rate_limit_key == "user:user_9"


# =============================================================================
# Credential Guard
# =============================================================================


class TestCredentialGuard:
    @pytest.mark.asyncio
    async def test_missing_token(self, pipeline, limiter):
        decision = await pipeline.run(make_context(requested_org_id=4, required_role=Role.MEMBER))
        
        assert decision.reason == ReasonCode.NOT_AUTHENTICATED
        assert limiter.tracked_keys == 0

    @pytest.mark.asyncio
    async def test_garbage_token(self, pipeline):
        decision = await pipeline.run(make_context(token="not-a-token", requested_org_id=4, required_role=Role.MEMBER))
        assert decision.reason == ReasonCode.MALFORMED_CREDENTIAL

    @pytest.mark.asyncio
    async def test_expired_token(self, settings, pipeline):
        token = bearer(settings, claims=["A4"], expires_at=NOW - timedelta(minutes=5))
        decision = await pipeline.run(make_context(token=token, requested_org_id=4, required_role=Role.MEMBER))
        assert decision.reason == ReasonCode.EXPIRED

    @pytest.mark.asyncio
    async def test_uses_settings_carried_on_context(self, settings, limiter):
        app_settings = settings.model_copy(update={"jwt_secret_key": "s" * 40})
        token = bearer(app_settings, claims=["M4"])
        pipeline = GuardPipeline([CredentialGuard(), AuthorizationGuard()])

        decision = await pipeline.run(
            make_context(token=token, requested_org_id=4, required_role=Role.MEMBER, settings=app_settings)
        )
        assert decision.allowed

        # Without them the process-wide default secret rejects the signature
        decision = await pipeline.run(make_context(token=token, requested_org_id=4, required_role=Role.MEMBER))
        assert decision.reason == ReasonCode.MALFORMED_CREDENTIAL

    @pytest.mark.asyncio
    async def test_optional_credential(self, settings, limiter):
        pipeline = build_pipeline(settings=settings, limiter=limiter, require_credential=False)
        ctx = make_context()
        
        decision = await pipeline.run(ctx)
        
        assert decision.allowed
        assert ctx.credential is None
        assert ctx.rate_limit.limit == 5


# =============================================================================
# Full Pipeline
# =============================================================================


class TestPipeline:
    @pytest.mark.asyncio
    async def test_allows_and_fills_context(self, settings, pipeline):
        token = bearer(settings, claims=["A4"])
        ctx = make_context(token=token, requested_org_id=4, required_role=Role.ADMIN)
        
        decision = await pipeline.run(ctx)
        
        assert decision.allowed
        assert ctx.matched_role == Role.ADMIN
        assert ctx.principal_id == "user_1"
        assert ctx.rate_limit.remaining == 4

    @pytest.mark.asyncio
    async def test_authorization_reasons_pass_through(self, settings, pipeline):
        token = bearer(settings, claims=["M4"])
        
        not_member = await pipeline.run(make_context(token=token, requested_org_id=5, required_role=Role.MEMBER))
        wrong_role = await pipeline.run(make_context(token=token, requested_org_id=4, required_role=Role.PRESIDENT))
        
        assert not_member.reason == ReasonCode.NOT_A_MEMBER
        assert wrong_role.reason == ReasonCode.INSUFFICIENT_ROLE

    @pytest.mark.asyncio
    async def test_rate_limited_principal(self, settings, pipeline):
        token = bearer(settings, claims=["M4"])
        
        for _ in range(5):
            decision = await pipeline.run(make_context(token=token, requested_org_id=4, required_role=Role.MEMBER))
            assert decision.allowed
        
        decision = await pipeline.run(make_context(token=token, requested_org_id=4, required_role=Role.MEMBER))
        assert decision.reason == ReasonCode.RATE_LIMITED
        assert decision.status_code == 429
        assert decision.retry_after > 0

    @pytest.mark.asyncio
    async def test_rate_limit_runs_before_authorization(self, settings, pipeline):
        """A throttled caller learns nothing about memberships."""
        token = bearer(settings, claims=["M4"])
        for _ in range(5):
            await pipeline.run(make_context(token=token, requested_org_id=99, required_role=Role.MEMBER))
        
        ctx = make_context(token=token, requested_org_id=99, required_role=Role.MEMBER)
        decision = await pipeline.run(ctx)
        
        assert decision.reason == ReasonCode.RATE_LIMITED
        assert ctx.decision is decision

    @pytest.mark.asyncio
    async def test_stops_at_first_denial(self, settings, limiter):
        recorder = RecordingGuard()
        pipeline = GuardPipeline([
            CredentialGuard(settings),
            recorder,
            AuthorizationGuard(settings),
        ])
        
        await pipeline.run(make_context(requested_org_id=4, required_role=Role.MEMBER))
        assert recorder.calls == 0
        
        await pipeline.run(make_context(token=bearer(settings, claims=["M4"]), requested_org_id=4, required_role=Role.MEMBER))
        assert recorder.calls == 1

    @pytest.mark.asyncio
    async def test_authentication_only_route(self, settings, pipeline):
        ctx = make_context(token=bearer(settings, claims=[]))
        decision = await pipeline.run(ctx)
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_role_anywhere(self, settings, pipeline):
        ctx = make_context(token=bearer(settings, claims=["M1", "A2"]), required_role=Role.ADMIN)
        decision = await pipeline.run(ctx)
        assert decision.allowed
        assert decision.matched_role == Role.ADMIN

    @pytest.mark.asyncio
    async def test_enforce_raises(self, settings, pipeline):
        ctx = make_context(token=bearer(settings, claims=["M4"]), requested_org_id=4, required_role=Role.ADMIN)
        
        with pytest.raises(AccessDenied) as exc_info:
            await pipeline.enforce(ctx)
        assert exc_info.value.decision.reason == ReasonCode.INSUFFICIENT_ROLE

    def test_repr(self, pipeline):
        assert repr(pipeline) == "<GuardPipeline(credential, rate_limit, anomaly, authorization)>"


# =============================================================================
# Anomaly Heuristics
# =============================================================================


class TestAnomaly:
    def test_clean_browser_request(self, settings):
        ctx = make_context()
        ctx.credential = make_credential()
        assert score_request(ctx, settings) == (0, [])

    def test_signals(self, settings):
        ctx = make_context(headers={"User-Agent": "python-requests/2.31"})
        ctx.credential = make_credential(issued_at=NOW - timedelta(days=2))
        
        score, signals = score_request(ctx, settings, DEFAULT_HEURISTICS)
        
        assert set(signals) == {"credential_too_old", "suspicious_user_agent", "missing_origin"}
        assert score == 4

    def test_missing_user_agent(self, settings):
        ctx = make_context(headers={"Origin": "https://app.example.com"})
        assert score_request(ctx, settings) == (1, ["missing_user_agent"])

    @pytest.mark.asyncio
    async def test_low_risk_route_only_logs(self, settings, pipeline):
        token = bearer(settings, claims=["P4"], issued_at=NOW - timedelta(days=2))
        ctx = make_context(token=token, headers={"User-Agent": "curl/8.0"}, requested_org_id=4, required_role=Role.PRESIDENT)
        
        decision = await pipeline.run(ctx)
        
        assert decision.allowed
        assert ctx.anomaly_score >= settings.anomaly_escalation_threshold

    @pytest.mark.asyncio
    async def test_high_risk_route_escalates(self, settings, pipeline):
        token = bearer(settings, claims=["P4"], issued_at=NOW - timedelta(days=2))
        ctx = make_context(
            token=token,
            headers={"User-Agent": "curl/8.0"},
            requested_org_id=4,
            required_role=Role.PRESIDENT,
            high_risk=True,
        )
        
        decision = await pipeline.run(ctx)
        
        assert decision.reason == ReasonCode.NOT_AUTHENTICATED
        assert "Re-authentication" in decision.detail

    @pytest.mark.asyncio
    async def test_high_risk_route_below_threshold(self, settings, pipeline):
        token = bearer(settings, claims=["P4"])
        ctx = make_context(token=token, requested_org_id=4, required_role=Role.PRESIDENT, high_risk=True)
        assert (await pipeline.run(ctx)).allowed

    @pytest.mark.asyncio
    async def test_guard_alone(self, settings):
        guard = AnomalyGuard(settings)
        ctx = make_context(headers={}, high_risk=True)
        assert await guard.check(ctx) is None
        assert ctx.anomaly_signals == ["missing_user_agent", "missing_origin"]


# =============================================================================
# Rate Limit Guard
# =============================================================================


class TestRateLimitGuard:
    @pytest.mark.asyncio
    async def test_anonymous_requests_keyed_by_ip(self, limiter):
        guard = RateLimitGuard(limiter)
        for _ in range(5):
            assert await guard.check(make_context()) is None
        
        denial = await guard.check(make_context())
        assert isinstance(denial, Decision)
        assert denial.reason == ReasonCode.RATE_LIMITED
        
        other_ip = AccessContext.from_headers({}, client_ip="10.0.0.2", now=NOW)
        assert await guard.check(other_ip) is None

    @pytest.mark.asyncio
    async def test_spoofed_forwarding_headers_share_one_bucket(self, limiter):
        guard = RateLimitGuard(limiter)
        results = []
        for i in range(8):
            ctx = make_context(headers={**BROWSER_HEADERS, "X-Forwarded-For": f"10.9.0.{i}"})
            results.append(await guard.check(ctx))
        
        assert results[:5] == [None] * 5
        assert all(r.reason == ReasonCode.RATE_LIMITED for r in results[5:])
