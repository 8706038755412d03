"""Engine settings loaded from ENGINE_* environment variables or a .env file."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Persistence
    database_url: str = "sqlite+aiosqlite:///engine.db"
    store_retry_attempts: int = Field(3, ge=1)
    store_retry_delay_seconds: float = Field(0.05, ge=0)
    store_retry_backoff: float = Field(2.0, ge=1)

    # API
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = True

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_interval_seconds: float = Field(10.0, gt=0)
    scheduler_lookahead_seconds: float = Field(3600.0, gt=0)
    cursor_cas_attempts: int = Field(5, ge=1)
    scheduler_backlog_limit: int = Field(1000, ge=0)

    # Deployment file applied at startup (YAML or JSON)
    deployments_file: str | None = None

    # Workers
    heartbeat_timeout_seconds: float = Field(90.0, gt=0)


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (tests)."""
    global _settings
    _settings = None
