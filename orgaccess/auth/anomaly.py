"""
Anomaly heuristics.

Informational checks on a request: they add up to a score and get logged.
On their own they never deny; a high-risk route can ask the pipeline to
escalate once the score reaches the configured threshold.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

from orgaccess.auth.context import AccessContext
from orgaccess.config import Settings


SUSPICIOUS_USER_AGENT = re.compile(r"bot|crawler|spider|scraper|curl|wget|python", re.IGNORECASE)


@dataclass(frozen=True)
class Heuristic:
    """A named check with a weight added to the score when it fires."""
    
    name: str
    weight: int
    check: Callable[[AccessContext, Settings], bool]


def credential_too_old(ctx: AccessContext, settings: Settings) -> bool:
    if ctx.credential is None:
        return False
    return ctx.credential.age_seconds(ctx.now) > settings.anomaly_max_credential_age_seconds


def credential_in_grace(ctx: AccessContext, settings: Settings) -> bool:
    if ctx.credential is None:
        return False
    return ctx.credential.in_grace_period(ctx.now, settings.credential_grace_seconds)


def missing_user_agent(ctx: AccessContext, settings: Settings) -> bool:
    return not ctx.header("user-agent")


def suspicious_user_agent(ctx: AccessContext, settings: Settings) -> bool:
    user_agent = ctx.header("user-agent")
    return bool(user_agent) and SUSPICIOUS_USER_AGENT.search(user_agent) is not None


def missing_origin(ctx: AccessContext, settings: Settings) -> bool:
    return not (ctx.header("referer") or ctx.header("origin"))


DEFAULT_HEURISTICS: tuple[Heuristic, ...] = (
    Heuristic("credential_too_old", 2, credential_too_old),
    Heuristic("credential_in_grace", 1, credential_in_grace),
    Heuristic("missing_user_agent", 1, missing_user_agent),
    Heuristic("suspicious_user_agent", 1, suspicious_user_agent),
    Heuristic("missing_origin", 1, missing_origin),
)


def score_request(
    ctx: AccessContext,
    settings: Settings,
    heuristics: tuple[Heuristic, ...] = DEFAULT_HEURISTICS,
) -> tuple[int, list[str]]:
    """Total weight and names of the heuristics that fired."""
    fired = [h for h in heuristics if h.check(ctx, settings)]
    return sum(h.weight for h in fired), [h.name for h in fired]
