"""Application settings using Pydantic for environment-based configuration."""
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_publishable_key: str = Field(..., description="Stripe publishable key (pk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy database URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    redis_lock_timeout_ms: int = Field(
        default=30000, description="Workshop lock TTL (milliseconds)"
    )
    redis_lock_retry_count: int = Field(
        default=50, description="Lock acquisition attempts before giving up"
    )
    redis_lock_retry_delay: float = Field(
        default=0.1, description="Delay between lock acquisition attempts (seconds)"
    )

    # Backends
    store_backend: str = Field(default="sql", description="Enrollment store (sql/memory)")
    lock_backend: str = Field(default="local", description="Workshop lock backend (local/redis)")
    dedup_backend: str = Field(default="redis", description="Webhook dedup backend (memory/redis)")

    # Application Configuration
    app_name: str = Field(default="workshop-enrollment", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")
    public_base_url: str = Field(
        default="http://localhost:8000", description="Public URL used in claim and checkout links"
    )

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Admission
    webhook_dedup_ttl_seconds: int = Field(
        default=86400 * 7, description="Webhook event dedup retention window (seconds)"
    )
    waitlist_claim_ttl_hours: float = Field(
        default=48.0, description="How long a promoted waitlist customer may claim the seat"
    )
    waitlist_sweep_interval_seconds: float = Field(
        default=60.0, description="Interval between expired-claim sweeps"
    )
    refund_retry_attempts: int = Field(
        default=2, ge=1, le=2, description="Refund provider attempts (2 = one retry)"
    )
    refund_retry_backoff_seconds: float = Field(
        default=1.0, description="Base backoff before retrying a failed refund"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key starts with sk_test_ or sk_live_."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        if v.lower() not in ("sql", "memory"):
            raise ValueError("store_backend must be 'sql' or 'memory'")
        return v.lower()

    @field_validator("lock_backend")
    @classmethod
    def validate_lock_backend(cls, v: str) -> str:
        if v.lower() not in ("local", "redis"):
            raise ValueError("lock_backend must be 'local' or 'redis'")
        return v.lower()

    @field_validator("dedup_backend")
    @classmethod
    def validate_dedup_backend(cls, v: str) -> str:
        if v.lower() not in ("memory", "redis"):
            raise ValueError("dedup_backend must be 'memory' or 'redis'")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def uses_redis(self) -> bool:
        """Check if any backend depends on Redis."""
        return self.lock_backend == "redis" or self.dedup_backend == "redis"


@dataclass(frozen=True)
class AdmissionPolicy:
    """
    Explicit admission configuration handed to EnrollmentCore.

    Capacity and waitlist flags are not part of the policy; they are read
    from the store on every admission decision.
    """

    claim_ttl: timedelta = timedelta(hours=48)
    refund_retry_attempts: int = 2
    refund_retry_backoff_seconds: float = 1.0
    public_base_url: str = "http://localhost:8000"

    @classmethod
    def from_settings(cls, settings: Settings) -> "AdmissionPolicy":
        return cls(
            claim_ttl=timedelta(hours=settings.waitlist_claim_ttl_hours),
            refund_retry_attempts=settings.refund_retry_attempts,
            refund_retry_backoff_seconds=settings.refund_retry_backoff_seconds,
            public_base_url=settings.public_base_url.rstrip("/"),
        )

    def claim_url(self, workshop_id: int, token: str) -> str:
        """Build the link a promoted customer follows to claim their seat."""
        return f"{self.public_base_url}/waitlist/claim?workshop_id={workshop_id}&token={token}"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
