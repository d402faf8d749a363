"""
Application configuration.

Loads settings from environment variables with sensible defaults.
"""

from __future__ import annotations

import logging
from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


DEV_JWT_SECRET = "dev-jwt-secret-change-in-production"


class ClaimOverflowPolicy(str, Enum):
    """What to do when a principal has more memberships than `max_claims`."""
    
    REFUSE = "refuse"      # Do not issue; operator must raise the cap
    TRUNCATE = "truncate"  # Keep highest roles, mark the credential, log an error


class RateLimitBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class Settings(BaseSettings):
    """Application settings loaded from environment."""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
    
    # ==========================================================================
    # Environment
    # ==========================================================================
    
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    
    # ==========================================================================
    # API Server
    # ==========================================================================
    
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "http://localhost:3000,http://localhost:5173"
    
    # Reverse proxies in front of the app that append to X-Forwarded-For.
    # 0 means forwarding headers are ignored and the socket peer is the client.
    trusted_proxy_hops: int = 0
    
    # ==========================================================================
    # Credentials
    # ==========================================================================
    
    jwt_secret_key: str = DEV_JWT_SECRET
    jwt_algorithm: str = "HS256"
    credential_issuer: str = "orgaccess"
    credential_ttl_minutes: int = 60 * 24
    
    # Tolerated clock skew past `exp`
    credential_grace_seconds: int = 30
    
    # Refresh is offered once a credential is this close to expiry
    refresh_threshold_seconds: int = 3600
    
    # Reissued credentials held for delivery, oldest dropped beyond this
    refresh_outbox_max_entries: int = 10_000
    
    # Accept v1 payloads (sub/orgAccess/isGlobalAdmin) alongside compact ones
    accept_legacy_credentials: bool = True
    
    # ==========================================================================
    # Claim cap
    # ==========================================================================
    
    max_claims: int = 100
    claim_overflow_policy: ClaimOverflowPolicy = ClaimOverflowPolicy.REFUSE
    
    # Persistence read bound for issuance/refresh
    membership_lookup_timeout_seconds: float = 2.0
    
    # ==========================================================================
    # Rate limiting
    # ==========================================================================
    
    rate_limit_backend: RateLimitBackend = RateLimitBackend.MEMORY
    rate_limit_max_requests: int = 100
    rate_limit_window_seconds: int = 15 * 60
    rate_limit_max_keys: int = 100_000
    
    # Only applies to the redis backend
    rate_limit_timeout_ms: int = 50
    rate_limit_fail_closed: bool = False
    
    # ==========================================================================
    # Anomaly heuristics
    # ==========================================================================
    
    anomaly_max_credential_age_seconds: int = 24 * 3600
    anomaly_escalation_threshold: int = 3
    
    # ==========================================================================
    # Optional Services
    # ==========================================================================
    
    redis_url: str = "redis://localhost:6379/0"
    sentry_dsn: str = ""
    
    # ==========================================================================
    # Helpers
    # ==========================================================================
    
    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
    
    @property
    def is_production(self) -> bool:
        return self.environment == "production"
    
    def validate_for_production(self) -> None:
        """Refuse to run production with development secrets."""
        if self.is_production and self.jwt_secret_key == DEV_JWT_SECRET:
            raise ValueError("JWT_SECRET_KEY must be set in production")
        if self.max_claims < 1:
            raise ValueError("MAX_CLAIMS must be at least 1")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    """Apply the configured log level to the root logger."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
