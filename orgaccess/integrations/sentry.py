# =============================================================================
# Sentry Error Tracking Integration
# =============================================================================
#
# Setup:
#   Copy the project DSN to .env: SENTRY_DSN=https://...@sentry.io/...
#
# Usage:
#   Call init_sentry() at app startup (in orgaccess/api/app.py)
#
# Expected denials (401/403/429) are normal traffic for an access layer
# and never reach Sentry. Claim-cap overflow does, as an operator message.
#
# =============================================================================

import logging

import sentry_sdk
from fastapi import HTTPException
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from orgaccess.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Status codes that are part of normal access-control traffic
EXPECTED_STATUS_CODES = (400, 401, 403, 404, 422, 429)

SENSITIVE_HEADERS = ("authorization", "cookie", "x-api-key")


def init_sentry(settings: Settings | None = None) -> bool:
    """
    Initialize Sentry error tracking.
    
    Returns True if initialized, False if skipped.
    """
    settings = settings or get_settings()
    
    if not settings.sentry_dsn:
        logger.info("SENTRY_DSN not set - error tracking disabled")
        return False
    
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        traces_sample_rate=0.1 if settings.is_production else 1.0,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            StarletteIntegration(transaction_style="endpoint"),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR,
            ),
        ],
        send_default_pii=False,
        before_send=_filter_events,
        before_send_transaction=_filter_transactions,
    )
    
    logger.info(f"Sentry initialized for {settings.environment}")
    return True


def _filter_events(event: dict, hint: dict) -> dict | None:
    """Filter out expected denials and scrub credentials."""
    if "exc_info" in hint:
        _, exc_value, _ = hint["exc_info"]
        
        # Imported here: policies imports the full guard stack
        from orgaccess.auth.policies import AccessDenied
        if isinstance(exc_value, AccessDenied):
            return None
        if isinstance(exc_value, HTTPException) and exc_value.status_code in EXPECTED_STATUS_CODES:
            return None
    
    if "request" in event:
        headers = event["request"].get("headers") or {}
        for key in list(headers.keys()):
            if key.lower() in SENSITIVE_HEADERS:
                headers[key] = "[Filtered]"
    
    return event


def _filter_transactions(event: dict, hint: dict) -> dict | None:
    """Skip health checks."""
    if event.get("transaction", "") in ("/health", "/healthz", "/ready"):
        return None
    return event


def capture_message(message: str, level: str = "info", **context) -> str | None:
    """
    Capture a message to Sentry.
    
    Falls back to the log when Sentry is not initialized.
    Levels: fatal, error, warning, info, debug
    """
    if not sentry_sdk.get_client().is_active():
        logger.log(getattr(logging, level.upper(), logging.INFO), message, extra=context)
        return None
    
    with sentry_sdk.new_scope() as scope:
        for key, value in context.items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_message(message, level=level)


def set_user(principal_id: str, **extra) -> None:
    """Set the current principal for error reports."""
    if sentry_sdk.get_client().is_active():
        sentry_sdk.set_user({"id": principal_id, **extra})
