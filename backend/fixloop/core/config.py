"""
Fixloop - Configuration
=======================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Fixloop"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./fixloop.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    # When false the API keeps sessions in memory only
    PERSIST_SESSIONS: bool = True

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Session defaults
    # ==========================================================================
    DEFAULT_TIMEOUT_MINUTES: int = 60
    DEFAULT_MAX_RETRIES: int = 3
    DEFAULT_CONCURRENCY: int = 1
    DEFAULT_CHECKPOINT_INTERVAL_MINUTES: float = 10.0

    # Seconds in-flight pipelines get to finish after the deadline passes
    TIMEOUT_GRACE_SECONDS: float = 30.0

    # Upper bound for the scheduler's idle wait between deadline checks
    SCHEDULER_TICK_SECONDS: float = 1.0

    # ==========================================================================
    # Verification
    # ==========================================================================
    VERIFICATION_TIMEOUT_SECONDS: float = 300.0
    VERIFICATION_OUTPUT_LIMIT: int = 20000

    # ==========================================================================
    # Git
    # ==========================================================================
    GIT_BINARY: str = "git"
    BRANCH_PREFIX: str = "fixloop/session-"
    CHECKPOINT_TAG_PREFIX: str = "fixloop-cp-"
    GIT_AUTHOR_NAME: str = "fixloop"
    GIT_AUTHOR_EMAIL: str = "fixloop@localhost"

    # ==========================================================================
    # Fix provider
    # ==========================================================================
    FIX_PROVIDER_URL: str | None = None
    FIX_PROVIDER_API_KEY: str | None = None
    FIX_PROVIDER_TIMEOUT_SECONDS: float = 120.0
    PROVIDER_MAX_ATTEMPTS: int = 4
    PROVIDER_BACKOFF_SECONDS: float = 1.0
    PROVIDER_BACKOFF_MAX_SECONDS: float = 30.0
    PROVIDER_COST_PER_1K_TOKENS: float = 0.003

    # ==========================================================================
    # Events
    # ==========================================================================
    EVENT_HISTORY_LIMIT: int = 5000
    SUBSCRIBER_QUEUE_SIZE: int = 0  # 0 = unbounded

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
