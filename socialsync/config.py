"""Settings for the SocialSync pipeline, loaded with Pydantic Settings.

Intervals, lead windows, the retry policy and per-platform rate limits all
come from the environment or a ``.env`` file; pipeline code never hardcodes
them.

The ``ENVIRONMENT`` variable selects a profile that overrides a few of these
after loading (see :meth:`Settings.apply_environment_profile`).

Example:
    >>> from socialsync.config import settings
    >>> settings.refresh_lead
    datetime.timedelta(seconds=300)
    >>> settings.rate_limit_for("mastodon").max_concurrent
    4
"""

from datetime import timedelta
from enum import StrEnum
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    """Deployment profile selected by ``ENVIRONMENT``."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"
    STAGING = "staging"


class PlatformRateLimit(BaseModel):
    """Client-side rate limit applied to every call into one platform adapter.

    Attributes:
        max_concurrent: Maximum simultaneous adapter calls for the platform
        min_interval_seconds: Minimum spacing between two call starts
    """

    max_concurrent: int = Field(4, ge=1)
    min_interval_seconds: float = Field(0.0, ge=0.0)


class Settings(BaseSettings):
    """Pipeline settings, read from the environment or a .env file.

    Attributes:
        token_encryption_keys: Comma-separated Fernet keys; the first encrypts
        database_url: SQLAlchemy URL of the store of record
        refresh_lead_seconds: Time-before-expiry that triggers a token refresh
        refresh_max_attempts: Consecutive refresh failures before reconnect
        poll_interval_seconds: Interval between polling runs per connection
        worker_pool_size: Global bound on concurrently running jobs
        platform_rate_limits: Per-platform client-side rate limits
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Profile
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Runtime environment (development, production, testing, staging)",
    )

    # Token Vault
    token_encryption_keys: SecretStr = Field(
        ...,
        alias="TOKEN_ENCRYPTION_KEYS",
        description="Comma-separated Fernet keys; the first one encrypts new tokens",
    )

    # Storage
    data_dir: Path = Field(
        Path("./data"),
        description="Directory holding the default database and the log file",
    )

    database_url: Optional[str] = Field(
        None,
        description="SQLAlchemy URL of the store of record (defaults to data_dir/socialsync.db)",
    )

    # Token Refresh Scheduler
    refresh_interval_seconds: float = Field(60.0, gt=0, description="Refresh scan interval")
    refresh_lead_seconds: float = Field(
        300.0,
        ge=0,
        description="Refresh tokens expiring within this window",
    )
    refresh_max_attempts: int = Field(
        3,
        ge=1,
        description="Consecutive refresh failures before the connection needs reconnect",
    )
    refresh_pending_timeout_seconds: float = Field(
        120.0,
        gt=0,
        description="Age after which an unfinished refresh claim may be retaken",
    )

    # Content Polling Scheduler
    poll_interval_seconds: float = Field(120.0, gt=0, description="Polling interval per connection")
    max_pages_per_run: int = Field(5, ge=1, description="Pages fetched per stream per run")

    # Worker pool
    worker_pool_size: int = Field(8, ge=1, le=256, description="Concurrent job limit")
    propagation_workers: int = Field(2, ge=1, le=64, description="Search/delivery workers")
    shutdown_grace_seconds: float = Field(10.0, ge=0, description="Grace period on shutdown")

    # Adapter calls and retry policy
    adapter_timeout_seconds: float = Field(30.0, gt=0, description="Timeout per adapter call")
    retry_max_attempts: int = Field(4, ge=1, le=20, description="Attempts for transient failures")
    retry_backoff_multiplier: float = Field(2.0, ge=0)
    retry_backoff_min_seconds: float = Field(1.0, ge=0)
    retry_backoff_max_seconds: float = Field(60.0, ge=0)
    retry_jitter_seconds: float = Field(1.0, ge=0)

    # Per-platform rate limits, e.g. PLATFORM_RATE_LIMITS='{"twitter": {"max_concurrent": 2}}'
    platform_rate_limits: dict[str, PlatformRateLimit] = Field(default_factory=dict)
    default_rate_limit: PlatformRateLimit = Field(default_factory=PlatformRateLimit)

    # Search index
    search_url: Optional[str] = Field(
        None,
        description="Meilisearch base URL (in-memory index when unset)",
    )
    search_api_key: Optional[SecretStr] = Field(None, description="Meilisearch API key")
    reindex_batch_size: int = Field(500, ge=1, le=10000)

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_to_file: bool = Field(default=True, description="Enable file logging")
    log_json: bool = Field(default=False, description="Output logs in JSON format")

    # Tracing
    enable_tracing: bool = Field(default=False)
    otlp_endpoint: Optional[str] = Field(default=None)

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_data_dir(cls, v: str | Path) -> Path:
        """Resolve data_dir and create it."""
        path = Path(v).expanduser().resolve()
        path.mkdir(parents=True, exist_ok=True)
        return path

    @field_validator("token_encryption_keys")
    @classmethod
    def validate_encryption_keys(cls, v: SecretStr) -> SecretStr:
        """Reject keys that Fernet would not accept."""
        keys = [k.strip() for k in v.get_secret_value().split(",") if k.strip()]
        if not keys:
            raise ValueError("At least one token encryption key is required")
        for key in keys:
            try:
                Fernet(key.encode())
            except ValueError as exc:
                raise ValueError("Token encryption keys must be urlsafe base64 32-byte Fernet keys") from exc
        return v

    @model_validator(mode="after")
    def set_database_url_default(self) -> "Settings":
        """Default the store of record to a SQLite file in data_dir."""
        if not self.database_url:
            self.database_url = f"sqlite:///{self.data_dir / 'socialsync.db'}"
        return self

    @model_validator(mode="after")
    def apply_environment_profile(self) -> "Settings":
        """Override logging, tracing and retry tunables per profile.

        Production and staging log JSON with tracing on; development logs at
        DEBUG with at most 4 workers; testing silences logs and removes
        retry backoff so failure paths run instantly.
        """
        if self.environment in (Environment.PRODUCTION, Environment.STAGING):
            if self.log_level == "DEBUG":
                self.log_level = "INFO"
            self.log_json = True
            self.enable_tracing = True

        elif self.environment == Environment.DEVELOPMENT:
            self.worker_pool_size = min(self.worker_pool_size, 4)
            self.log_level = "DEBUG"
            self.log_json = False
            self.enable_tracing = False

        elif self.environment == Environment.TESTING:
            self.log_level = "ERROR"
            self.log_to_file = False
            self.log_json = False
            self.enable_tracing = False
            self.retry_backoff_min_seconds = 0.0
            self.retry_backoff_max_seconds = 0.0
            self.retry_jitter_seconds = 0.0

        return self

    @property
    def encryption_keys(self) -> list[str]:
        """Configured Fernet keys, newest first."""
        raw = self.token_encryption_keys.get_secret_value()
        return [k.strip() for k in raw.split(",") if k.strip()]

    @property
    def refresh_lead(self) -> timedelta:
        """refresh_lead_seconds as a timedelta."""
        return timedelta(seconds=self.refresh_lead_seconds)

    @property
    def refresh_pending_timeout(self) -> timedelta:
        """refresh_pending_timeout_seconds as a timedelta."""
        return timedelta(seconds=self.refresh_pending_timeout_seconds)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING

    def rate_limit_for(self, platform: str) -> PlatformRateLimit:
        """Rate limit for one platform, falling back to default_rate_limit."""
        return self.platform_rate_limits.get(platform, self.default_rate_limit)


settings = Settings()  # type: ignore[call-arg]
