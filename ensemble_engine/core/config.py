"""
Engine configuration.

Supports environment-based configuration for every tunable default of the
execution engine. All variables use the ``ENSEMBLE_`` prefix.
"""
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings with production defaults."""

    model_config = SettingsConfigDict(env_prefix="ENSEMBLE_", extra="ignore")

    # Application
    app_name: str = "ensemble-engine"
    environment: Literal["development", "staging", "production"] = "development"

    # Agent invocation
    default_agent_timeout_ms: float = Field(default=30000, gt=0)
    allow_skipped_dependencies: bool = False

    # Control flow bounds
    while_max_iterations: int = Field(default=1000, gt=0)
    foreach_max_concurrency: int = Field(default=10, gt=0)

    # Scoring defaults
    scoring_minimum: float = 0.7
    scoring_target: float = 0.8
    scoring_excellent: float = 0.95
    scoring_retry_limit: int = Field(default=3, gt=0)
    scoring_initial_delay_ms: float = 1000
    scoring_max_delay_ms: float = 60000
    scoring_min_improvement: float = 0.05

    # Suspension / durable storage
    resumption_ttl_seconds: int = Field(default=86400, gt=0)
    redis_url: str = "redis://localhost:6379/0"
    store_key_prefix: str = "ensemble:"

    # Step output cache
    cache_default_ttl_seconds: int = Field(default=3600, gt=0)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_include_timestamp: bool = True

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        return value.upper() if isinstance(value, str) else value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
