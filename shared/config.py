"""
Shared configuration management for the ticket cache.
"""

from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="TICKETS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")


class CacheSettings(BaseConfig):
    """Settings for the ticket query cache and mutation coordinator."""

    # Remote ticket API
    api_base_url: str = Field(default="http://localhost:3000/api")
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    mutation_timeout_seconds: float = Field(default=15.0, gt=0)

    # Freshness and retention windows
    list_stale_seconds: float = Field(default=300.0, ge=0)
    list_gc_seconds: float = Field(default=600.0, ge=0)
    detail_stale_seconds: float = Field(default=300.0, ge=0)
    detail_gc_seconds: float = Field(default=1800.0, ge=0)
    comments_stale_seconds: float = Field(default=120.0, ge=0)
    comments_gc_seconds: float = Field(default=300.0, ge=0)

    # Read retries (attempts include the first call)
    read_retry_attempts: int = Field(default=2, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0)

    # Maintenance
    eviction_interval_seconds: float = Field(default=60.0, gt=0)

    # Pagination defaults
    default_page_limit: int = Field(default=10, ge=1, le=100)
    list_page_limit: int = Field(default=12, ge=1, le=100)


def get_settings(**overrides: Any) -> CacheSettings:
    """Build settings from the environment, applying explicit overrides."""
    return CacheSettings(**overrides)
