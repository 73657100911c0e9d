"""
Application settings using Pydantic.

Provides environment-based configuration loading with SITELAYER_ prefix.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SITELAYER_",
        extra="ignore",
    )

    # State
    state_url: str = "sqlite+aiosqlite:///.sitelayer/state.db"
    lock_holder: str | None = None

    # Provider
    provider: str = "aws"
    aws_region: str = "us-east-1"
    aws_profile: str | None = None

    # Executor
    concurrency: int = Field(default=4, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    backoff_multiplier: float = 1.0
    backoff_min: float = 1.0
    backoff_max: float = 30.0

    # Condition waiter
    condition_poll_interval: float = Field(default=15.0, gt=0)
    condition_timeout: float = Field(default=1800.0, gt=0)

    # Logging
    log_level: str = "WARNING"
    log_json: bool = True


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
