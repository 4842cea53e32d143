"""Application configuration."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Workflow core settings loaded from environment variables."""

    APP_NAME: str = "JML Workflow Core"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, testing, staging, production

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./workflow.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis (Celery broker / result backend)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Process status sync retry (milliseconds)
    SYNC_MAX_RETRIES: int = 3
    SYNC_INITIAL_DELAY_MS: int = 1000
    SYNC_MAX_DELAY_MS: int = 10000
    SYNC_BACKOFF_MULTIPLIER: float = 2.0

    # Step execution
    WEBHOOK_DEFAULT_TIMEOUT_MS: int = 30000
    WEBHOOK_BLOCK_PRIVATE_HOSTS: bool = True
    FOREACH_DEFAULT_MAX_PARALLEL: int = 5
    SUBWORKFLOW_MAX_ITERATIONS: int = 100
    STEP_RETRY_MAX_DELAY_MINUTES: float = 60.0
    BRANCH_NO_MATCH_POLICY: str = "terminate"  # terminate or fail

    # Resume polling (Celery beat)
    RESUME_POLL_INTERVAL_MINUTES: int = 5
    RESUME_POLL_BATCH_SIZE: int = 10
    SYNC_DLQ_SWEEP_INTERVAL_MINUTES: int = 15

    # Host endpoint receiving process status updates (POST, JSON)
    PROCESS_STATUS_CALLBACK_URL: Optional[str] = None

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
    def fail_on_unmatched_branch(self) -> bool:
        return self.BRANCH_NO_MATCH_POLICY.lower() == "fail"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
