from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from app.shared.core.constants import AWS_SUPPORTED_REGIONS

ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for Costwatch.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_ECHO: bool = False
    # Celery tasks each run on a fresh event loop; pooled asyncpg connections cannot cross loops.
    DB_USE_NULL_POOL: bool = True
    DB_SLOW_QUERY_THRESHOLD_SECONDS: float = 0.2

    # Celery broker (worker pool + beat)
    REDIS_URL: Optional[str] = None
    REDIS_HOST: Optional[str] = None
    REDIS_PORT: Optional[str] = None

    # Cache (Upstash REST)
    UPSTASH_REDIS_URL: Optional[str] = None
    UPSTASH_REDIS_TOKEN: Optional[str] = None

    # Credential vault: 32-byte AES-256-GCM master key as 64 hex characters
    ENCRYPTION_KEY: Optional[str] = None

    # Cloud provider
    AWS_DEFAULT_REGION: str = "us-east-1"
    AWS_SUPPORTED_REGIONS: list[str] = AWS_SUPPORTED_REGIONS
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    LIVE_PRICING_ENABLED: bool = False
    PRICING_API_REGION: str = "us-east-1"

    # Job queue
    SCAN_JOB_TIMEOUT_SECONDS: int = 300
    ALERT_JOB_TIMEOUT_SECONDS: int = 60
    JOB_LOCK_TIMEOUT_MINUTES: int = 30
    MAX_JOBS_PER_BATCH: int = 10
    QUEUE_DRAIN_INTERVAL_SECONDS: int = 10
    STALLED_JOB_SWEEP_INTERVAL_SECONDS: int = 300

    # Alerts
    ALERT_WARNING_COOLDOWN_HOURS: int = 6
    EXPENSIVE_RESOURCE_ALERT_LIMIT: int = 5

    # Notifications: shared retry policy
    NOTIFICATION_MAX_ATTEMPTS: int = 3
    NOTIFICATION_BACKOFF_BASE_SECONDS: float = 2.0
    NOTIFICATION_BACKOFF_MAX_SECONDS: float = 30.0

    # Email (SMTP)
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM: str = "alerts@costwatch.local"
    SMTP_USE_TLS: bool = True
    SMTP_TIMEOUT_SECONDS: float = 10.0

    # Chat webhooks
    CHAT_WEBHOOK_TIMEOUT_SECONDS: float = 5.0
    CHAT_WEBHOOK_ALLOWED_DOMAINS: list[str] = ["hooks.slack.com"]

    # SMS (AWS SNS)
    SMS_ENABLED: bool = True
    SMS_REGION: str = "us-east-1"
    SMS_SENDER_ID: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        if self.TESTING:
            return self

        self._validate_core_secrets()
        self._validate_database_config()
        self._validate_queue_config()

        return self

    def _validate_core_secrets(self) -> None:
        """The vault key must decode to exactly 32 bytes."""
        key = (self.ENCRYPTION_KEY or "").strip()
        if not key:
            raise ValueError("ENCRYPTION_KEY must be set (64 hex characters).")
        try:
            decoded = bytes.fromhex(key)
        except ValueError as exc:
            raise ValueError("ENCRYPTION_KEY must be hex encoded.") from exc
        if len(decoded) != 32:
            raise ValueError("ENCRYPTION_KEY must decode to exactly 32 bytes.")

    def _validate_database_config(self) -> None:
        """Validates database and redis connectivity settings."""
        if self.is_production and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")

        # Redis URL construction fallback
        if not self.REDIS_URL and self.REDIS_HOST and self.REDIS_PORT:
            self.REDIS_URL = f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

        if self.DB_SLOW_QUERY_THRESHOLD_SECONDS <= 0:
            raise ValueError("DB_SLOW_QUERY_THRESHOLD_SECONDS must be > 0.")

    def _validate_queue_config(self) -> None:
        if self.SCAN_JOB_TIMEOUT_SECONDS <= 0 or self.ALERT_JOB_TIMEOUT_SECONDS <= 0:
            raise ValueError("Job timeouts must be > 0.")
        if self.NOTIFICATION_MAX_ATTEMPTS < 1:
            raise ValueError("NOTIFICATION_MAX_ATTEMPTS must be >= 1.")
        if self.PROVIDER_TIMEOUT_SECONDS <= 0:
            raise ValueError("PROVIDER_TIMEOUT_SECONDS must be > 0.")

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
