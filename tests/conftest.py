"""Shared fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from orgaccess.auth.credentials import Credential
from orgaccess.auth.rate_limit import set_rate_limiter
from orgaccess.config import Settings, get_settings
from orgaccess.core.events import reset_event_bus


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Fresh settings, event bus and rate limiter for every test."""
    get_settings.cache_clear()
    reset_event_bus()
    set_rate_limiter(None)
    yield
    get_settings.cache_clear()
    reset_event_bus()
    set_rate_limiter(None)


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def now():
    return NOW


def make_credential(
    claims=(),
    global_access=False,
    issued_at=NOW - timedelta(minutes=5),
    expires_at=NOW + timedelta(hours=1),
    subject_id="user_1",
    **kwargs,
) -> Credential:
    return Credential(
        subject_id=subject_id,
        claims=tuple(claims),
        global_access=global_access,
        issued_at=issued_at,
        expires_at=expires_at,
        credential_id=kwargs.pop("credential_id", "cred_test"),
        **kwargs,
    )


class FakeClock:
    """Monotonic clock the test moves by hand."""
    
    def __init__(self, start: float = 1000.0):
        self.now = start
    
    def __call__(self) -> float:
        return self.now
    
    def advance(self, seconds: float) -> None:
        self.now += seconds
