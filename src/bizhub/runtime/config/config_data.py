"""Typed view of ``config.yaml``.

Each section of the file maps to one model below; defaults are the values
used in development when a key is omitted.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, computed_field


class CORSConfig(BaseModel):
    """Browser origins allowed to call the API with credentials."""

    origins: list[str] = Field(
        default=["http://localhost:5173", "http://localhost:3000"]
    )
    allow_credentials: bool = True
    allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "DELETE", "OPTIONS"]
    )
    allow_headers: list[str] = Field(
        default=["Content-Type", "x-auth-token", "Authorization"]
    )
    max_age: int = Field(default=86400, description="Preflight cache lifetime in seconds")


class RateLimiterConfig(BaseModel):
    """Per-client request quotas: a general tier and a stricter credential tier."""

    enabled: bool = Field(default=True, description="Enable rate limiting")
    requests: int = Field(
        default=100, description="Number of requests allowed per window"
    )
    window_ms: int = Field(
        default=10 * 60 * 1000, description="Time window in milliseconds"
    )
    auth_requests: int = Field(
        default=5, description="Requests allowed per window on credential endpoints"
    )
    auth_window_ms: int = Field(
        default=15 * 60 * 1000,
        description="Time window for credential endpoints in milliseconds",
    )


class RedisConfig(BaseModel):
    """Connection settings for the Redis document store backend."""

    enabled: bool = Field(default=False, description="Enable Redis service")
    url: str = Field(default="", description="Redis connection URL")
    password: str | None = Field(
        default=None, description="Password for Redis authentication"
    )
    key_prefix: str = Field(default="bizhub", description="Prefix for every document key")
    socket_timeout: float = Field(default=2.0, description="Socket timeout in seconds")

    @computed_field
    @property
    def connection_string(self) -> str:
        """``url`` with ``password`` injected unless the URL already carries credentials."""
        if self.password:
            if "@" in self.url:
                return self.url
            parts = self.url.split("://", 1)
            if len(parts) == 2:
                scheme, rest = parts
                return f"{scheme}://:{self.password}@{rest}"
        return self.url


class StoreConfig(BaseModel):
    """Document store selection."""

    backend: Literal["memory", "redis"] = Field(
        default="memory", description="Document store backend"
    )
    cas_retries: int = Field(
        default=5, description="Compare-and-swap attempts before giving up"
    )


class IdentityProviderConfig(BaseModel):
    """External identity provider (OIDC ID tokens) configuration."""

    issuer: str = Field(
        default="https://securetoken.google.com/bizhub-dev",
        description="Expected iss claim of external ID tokens",
    )
    audience: str = Field(
        default="bizhub-dev", description="Expected aud claim of external ID tokens"
    )
    jwks_uri: str = Field(
        default="https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com",
        description="JWKS endpoint used to verify external ID tokens",
    )
    allowed_algorithms: list[str] = Field(
        default_factory=lambda: ["RS256"],
        description="Signing algorithms accepted for external ID tokens",
    )
    credential_update_endpoint: str = Field(
        default="https://identitytoolkit.googleapis.com/v1/accounts:update",
        description="Endpoint used to set a new password for a subject",
    )
    api_key: str | None = Field(
        default=None, description="API key sent with credential updates"
    )
    verification_timeout_seconds: float = Field(
        default=10.0, description="Upper bound for a single token verification"
    )
    http_timeout_seconds: float = Field(
        default=5.0, description="Timeout for JWKS and credential update calls"
    )
    jwks_cache_ttl_seconds: int = Field(default=3600, description="JWKS cache TTL")
    clock_skew: int = Field(default=60, description="Clock skew tolerance in seconds")


class SessionConfig(BaseModel):
    """Self-issued session token configuration."""

    signing_secret: str | None = Field(
        default=None, description="Secret for signing session JWTs"
    )
    algorithm: str = Field(default="HS256", description="Session JWT algorithm")
    issuer: str = Field(default="bizhub-api", description="Issuer of session tokens")
    ttl_seconds: int = Field(
        default=7 * 24 * 3600, description="Session token lifetime (7 days)"
    )
    clock_skew: int = Field(default=0, description="Clock skew tolerance in seconds")
    header_name: str = Field(
        default="x-auth-token", description="Header carrying the session token"
    )
    reset_token_ttl_seconds: int = Field(
        default=3600, description="Password reset token lifetime (1 hour)"
    )


class LockoutConfig(BaseModel):
    """Brute-force lockout thresholds."""

    max_failed_attempts: int = Field(default=5, description="Failures before lock")
    reset_window_minutes: int = Field(
        default=30, description="Inactivity gap after which the counter restarts at 1"
    )
    lock_duration_minutes: int = Field(default=15, description="Lock duration")


class EntitlementConfig(BaseModel):
    """Subscription lifecycle defaults."""

    trial_days: int = Field(default=30, description="Length of the registration trial")
    paid_plan_months: int = Field(
        default=12, description="Length of a paid plan after payment verification"
    )
    bulk_activation_months: int = Field(
        default=12, description="Default length used by admin bulk activation"
    )


class PaymentConfig(BaseModel):
    """Payment verification provider configuration."""

    base_url: str = Field(default="https://api.paystack.co", description="Provider API base URL")
    secret_key: str | None = Field(default=None, description="Provider secret key")
    timeout_seconds: float = Field(default=10.0, description="HTTP timeout")


class EmailConfig(BaseModel):
    """Outbound email provider configuration."""

    enabled: bool = Field(default=False, description="Enable outbound email")
    api_url: str = Field(
        default="https://api.sendgrid.com/v3/mail/send", description="Provider endpoint"
    )
    api_key: str | None = Field(default=None, description="Provider API key")
    sender: str = Field(default="no-reply@bizhub.local", description="From address")
    sender_name: str = Field(default="Multi SaaS Platform", description="From display name")
    frontend_url: str = Field(
        default="http://localhost:5173", description="Base URL used in email links"
    )
    timeout_seconds: float = Field(default=10.0, description="HTTP timeout")


class LoggingConfig(BaseModel):
    """Loguru sink settings."""

    level: str = Field(default="INFO", description="Logging level")
    format: Literal["json", "plain"] = Field(default="json", description="Log format")
    file: str | None = Field(default=None, description="Log file path")
    max_size_mb: int = Field(default=10, description="Maximum log file size in MB")
    backup_count: int = Field(
        default=5, description="Number of backup log files to keep"
    )


class AppConfig(BaseModel):
    """Process-level settings: environment, bind address, route prefix and CORS."""

    environment: Literal["development", "production", "test"] = Field(
        default="development", description="Application environment"
    )
    host: str = Field(default="localhost", description="Application host")
    port: int = Field(default=5000, description="Application port")
    api_prefix: str = Field(default="/api", description="Prefix for every API route")
    trusted_proxies: list[str] = Field(
        default_factory=list,
        description="Peer addresses whose X-Forwarded-For / X-Real-IP headers are believed",
    )
    cors: CORSConfig = Field(
        default_factory=CORSConfig, description="CORS configuration"
    )

    @property
    def base_url(self) -> str:
        """Public base URL; https in production."""
        scheme = "https" if self.environment == "production" else "http"
        return f"{scheme}://{self.host}:{self.port}"


class ConfigData(BaseModel):
    """Everything under the ``config`` key of ``config.yaml``."""

    app: AppConfig = Field(
        default_factory=AppConfig, description="Application configuration"
    )
    session: SessionConfig = Field(
        default_factory=SessionConfig, description="Session token configuration"
    )
    identity_provider: IdentityProviderConfig = Field(
        default_factory=IdentityProviderConfig,
        description="External identity provider configuration",
    )
    lockout: LockoutConfig = Field(
        default_factory=LockoutConfig, description="Lockout configuration"
    )
    entitlement: EntitlementConfig = Field(
        default_factory=EntitlementConfig, description="Entitlement configuration"
    )
    rate_limiter: RateLimiterConfig = Field(
        default_factory=RateLimiterConfig, description="Rate limiter configuration"
    )
    redis: RedisConfig = Field(
        default_factory=RedisConfig, description="Redis configuration"
    )
    store: StoreConfig = Field(
        default_factory=StoreConfig, description="Document store configuration"
    )
    payment: PaymentConfig = Field(
        default_factory=PaymentConfig, description="Payment provider configuration"
    )
    email: EmailConfig = Field(
        default_factory=EmailConfig, description="Email provider configuration"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )
