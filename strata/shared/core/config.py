from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

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
    Main configuration for Strata.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Strata"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: Optional[str] = None  # Required in prod, optional in dev/test
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_ECHO: bool = False
    # Tests default to in-memory sqlite to avoid accidental side-effects on real databases.
    ALLOW_TEST_DATABASE_URL: bool = False

    # Sync retry envelope (per task)
    SYNC_RETRY_INITIAL_SECONDS: float = 1.0
    SYNC_RETRY_BACKOFF_COEFFICIENT: float = 2.0
    SYNC_RETRY_MAX_INTERVAL_SECONDS: float = 60.0
    SYNC_RETRY_MAX_ATTEMPTS: int = 3
    SYNC_ATTEMPT_TIMEOUT_SECONDS: float = 600.0
    SYNC_HEARTBEAT_TIMEOUT_SECONDS: float = 120.0
    # Whole provider group, including child retries
    SYNC_GROUP_TIMEOUT_SECONDS: float = 3600.0
    SYNC_GROUP_MAX_ATTEMPTS: int = 3
    SYNC_TASK_HISTORY_LIMIT: int = 200

    # Requests per second, shared by every task of a provider
    PROVIDER_RATE_LIMITS: dict[str, float] = {
        "gcp": 10.0,
        "digitalocean": 5.0,
        "aws": 20.0,
        "default": 5.0,
    }

    # Periodic dispatch
    SCHEDULER_ENABLED: bool = False
    SYNC_SCHEDULE_INTERVAL_MINUTES: int = 60
    # provider -> scopes synced by the scheduler, e.g. {"gcp": ["my-project"]}
    SYNC_SCOPES: dict[str, list[str]] = {}

    HTTP_TIMEOUT_SECONDS: float = 20.0
    # kind -> "module:attribute" of an adapter factory taking a scope
    ADAPTER_FACTORIES: dict[str, str] = {}

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        self._validate_sync_config()
        if self.TESTING:
            return self
        self._validate_database_config()
        return self

    def _validate_sync_config(self) -> None:
        """Retry and timeout values must be usable by the orchestrator."""
        if self.SYNC_RETRY_MAX_ATTEMPTS < 1 or self.SYNC_GROUP_MAX_ATTEMPTS < 1:
            raise ValueError("SYNC_RETRY_MAX_ATTEMPTS and SYNC_GROUP_MAX_ATTEMPTS must be >= 1.")
        if self.SYNC_RETRY_INITIAL_SECONDS < 0:
            raise ValueError("SYNC_RETRY_INITIAL_SECONDS must be >= 0.")
        if self.SYNC_RETRY_BACKOFF_COEFFICIENT < 1:
            raise ValueError("SYNC_RETRY_BACKOFF_COEFFICIENT must be >= 1.")
        if self.SYNC_RETRY_MAX_INTERVAL_SECONDS < self.SYNC_RETRY_INITIAL_SECONDS:
            raise ValueError(
                "SYNC_RETRY_MAX_INTERVAL_SECONDS must be >= SYNC_RETRY_INITIAL_SECONDS."
            )
        for name in (
            "SYNC_ATTEMPT_TIMEOUT_SECONDS",
            "SYNC_HEARTBEAT_TIMEOUT_SECONDS",
            "SYNC_GROUP_TIMEOUT_SECONDS",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0.")
        for provider, rate in self.PROVIDER_RATE_LIMITS.items():
            if rate <= 0:
                raise ValueError(f"PROVIDER_RATE_LIMITS[{provider}] must be > 0.")

    def _validate_database_config(self) -> None:
        if self.is_production and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
