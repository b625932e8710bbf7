"""Application configuration."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    # API Settings
    APP_NAME: str = "GRC Workflow Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    ENVIRONMENT: str = "development"  # development, staging, production

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./workflows.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

    # Redis Settings (Celery broker for step timers and SLA ticks)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Security Settings
    # MUST be set in environment for production; defaults only safe for development
    SECRET_KEY: str = ""
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours

    # Step defaults
    TASK_DEFAULT_DUE_HOURS: float = 24
    APPROVAL_DEFAULT_DUE_HOURS: float = 48

    # Notification delivery
    NOTIFICATION_SERVICE_URL: str = ""  # empty -> log-only channel
    NOTIFICATION_SERVICE_TOKEN: str = ""
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0

    # Role -> contact resolution. JSON in the environment, e.g.
    # ROLE_CONTACTS='{"manager": "manager@example.com"}'
    # ORG_ROLE_CONTACTS='{"org-1": {"manager": "ops-lead@org1.example"}}'
    ROLE_CONTACTS: dict[str, str] = {}
    ORG_ROLE_CONTACTS: dict[str, dict[str, str]] = {}
    DEFAULT_CONTACT: Optional[str] = None

    # Scheduling
    SCHEDULER_WAKEUP: bool = True  # push Celery eta hints for scheduled steps
    STEP_POLL_SECONDS: int = 30
    STEP_POLL_BATCH: int = 100
    SLA_TICK_SECONDS: int = 60
    SLA_BATCH_SIZE: int = 100  # page size of the overdue scan
    # A claimed step with no result after this long is treated as abandoned
    STEP_LEASE_SECONDS: int = 300

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    def validate_secrets(self) -> None:
        """Validate that critical secrets are not using defaults in production.

        Raises:
            RuntimeError: If production environment has an empty SECRET_KEY
        """
        if self.is_production and not self.SECRET_KEY:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY environment variable must be set in production. "
                "Do not use default values."
            )


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
