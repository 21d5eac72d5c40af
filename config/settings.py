"""
Configuration settings for the Recurflow scheduling engine.
All deployment values are loaded from environment variables.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = "Recurflow"
    debug: bool = Field(default=False)
    environment: str = Field(default="production")
    log_level: str = Field(default="INFO")

    # Database (PostgreSQL)
    database_url: str = Field(default="")
    database_echo: bool = Field(default=False)
    db_pool_size: int = Field(default=5)
    db_max_overflow: int = Field(default=10)
    db_pool_timeout: int = Field(default=30)
    db_pool_recycle: int = Field(default=1800)

    # Recurrence defaults
    timezone: str = Field(default="UTC")
    default_due_time: str = Field(default="23:00")

    # Sweep scheduler
    sweep_interval_seconds: int = Field(default=60)
    sweep_concurrency: int = Field(default=8)
    firing_timeout_seconds: float = Field(default=30.0)
    claim_lease_seconds: int = Field(default=120)

    # Side effects (notifications, activity log)
    side_effect_retry_interval_seconds: int = Field(default=15)
    side_effect_max_retries: int = Field(default=5)
    side_effect_base_retry_delay_seconds: int = Field(default=30)
    event_webhook_url: Optional[str] = Field(default=None)
    event_webhook_timeout_seconds: float = Field(default=10.0)


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the application settings."""
    return settings
