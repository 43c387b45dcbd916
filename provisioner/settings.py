"""
Provisioner - Settings

Centralized configuration using Pydantic Settings with environment variable
loading. Every setting can be overridden with a PROVISIONER_ prefixed
environment variable (e.g. PROVISIONER_MAX_WORKERS=4) or a .env file.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PROVISIONER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------
    state_path: str = Field(
        default="./.provisioner/state.json",
        description="State Store document",
    )
    runs_path: str = Field(
        default="./.provisioner/runs",
        description="Directory for plan and summary artifacts",
    )

    # -------------------------------------------------------------------------
    # Provider
    # -------------------------------------------------------------------------
    provider_type: str = Field(default="fake", description="Registered provider name")
    fake_latency_seconds: float = Field(default=0.0, ge=0.0)
    fake_failure_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    fake_inventory_path: Optional[str] = Field(
        default="./.provisioner/fake_cloud.json",
        description="Where the fake provider persists its inventory (None keeps it in memory)",
    )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------
    max_workers: int = Field(default=8, ge=1, description="Worker pool size")
    operation_timeout_seconds: Optional[float] = Field(
        default=600.0,
        gt=0,
        description="Per-operation timeout (None disables it)",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per provider call for transient failures",
    )
    retry_backoff_seconds: float = Field(default=1.0, ge=0.0)
    retry_backoff_max_seconds: float = Field(default=30.0, ge=0.0)

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: str = Field(default="INFO")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
