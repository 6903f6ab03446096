"""
Engine Configuration

Environment variable management using Pydantic Settings.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings loaded from environment variables

    All settings can be overridden via .env file or environment variables.
    """

    # Application
    APP_NAME: str = "playbook-engine"
    ENVIRONMENT: str = "development"  # development | staging | production

    # Logging
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL
    LOG_FORMAT: str = "json"  # json | text

    # Execution
    MAX_CONCURRENT_EXECUTIONS_PER_ORG: int = 100
    NODE_MAX_ATTEMPTS: int = 3  # Default retry budget per node type
    RETRY_BASE_DELAY: float = 1.0  # seconds, doubles on every retry
    RETRY_MAX_DELAY: float = 60.0

    # Event bus
    EVENT_BUFFER_SIZE: int = 100  # Undelivered events kept per subscriber

    # Health scoring
    HEALTH_SCORE_ALERT_THRESHOLD: int = 40

    # Playbook catalog
    PLAYBOOK_VERSION_RETENTION: int = 0  # 0 keeps every version

    # Execution store
    EXECUTION_STORE: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Cron schedules
    SCHEDULER_TIMEZONE: str = "UTC"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("MAX_CONCURRENT_EXECUTIONS_PER_ORG", "NODE_MAX_ATTEMPTS")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("RETRY_BASE_DELAY", "RETRY_MAX_DELAY")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delay cannot be negative")
        return v

    @field_validator("EVENT_BUFFER_SIZE")
    @classmethod
    def validate_buffer_size(cls, v: int) -> int:
        """Subscribers must be able to see at least the last 10 events."""
        if v < 10:
            raise ValueError(f"EVENT_BUFFER_SIZE must be at least 10 (got {v})")
        return v

    @field_validator("HEALTH_SCORE_ALERT_THRESHOLD")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("HEALTH_SCORE_ALERT_THRESHOLD must be within 0..100")
        return v

    @field_validator("EXECUTION_STORE")
    @classmethod
    def validate_store(cls, v: str) -> str:
        if v not in ("memory", "redis"):
            raise ValueError("EXECUTION_STORE must be memory or redis")
        return v

    @field_validator("PLAYBOOK_VERSION_RETENTION")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        if v < 0:
            raise ValueError("PLAYBOOK_VERSION_RETENTION cannot be negative")
        return v


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """
    Accessor for the process settings

    Usage:
        settings = get_settings()
        limit = settings.MAX_CONCURRENT_EXECUTIONS_PER_ORG
    """
    return settings
