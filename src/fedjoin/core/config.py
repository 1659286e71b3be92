"""
Configuration management for the fedjoin engine.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Environment
    environment: str = Field(default="development", description="Deployment environment")
    debug: bool = Field(default=False, description="Debug mode")

    # Application
    app_name: str = "fedjoin"
    app_version: str = "0.1.0"
    api_prefix: str = "/api/v1"

    # Relation catalog
    relations_file: Optional[str] = Field(
        default=None,
        description="Path to the JSON catalog of datasources, queries and relations"
    )

    # Search cluster (already validated by the configuration layer in front of us)
    search_url: str = Field(
        default="http://localhost:9200",
        description="Base URL of the search cluster"
    )
    search_username: Optional[str] = Field(default=None)
    search_password: Optional[str] = Field(default=None)
    request_timeout_seconds: float = Field(default=30.0, gt=0, le=600)

    # Query cache
    cache_backend: str = Field(default="memory", description="memory or redis")
    cache_max_size: int = Field(default=500, ge=1, le=1_000_000)
    cache_ttl_seconds: int = Field(default=600, ge=1)
    cache_single_flight: bool = Field(
        default=False,
        description="Collapse concurrent executions of the same cold cache key"
    )
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_key_prefix: str = Field(default="fedjoin:query:")

    # Joins
    join_failure_policy: str = Field(
        default="fail_fast",
        description="Set-mode branch failure handling: fail_fast or best_effort"
    )

    # Observability
    log_level: str = Field(default="INFO")

    @field_validator("environment")
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = ["development", "staging", "production", "testing"]
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v

    @field_validator("cache_backend")
    def validate_cache_backend(cls, v: str) -> str:
        allowed = ["memory", "redis"]
        v = v.lower()
        if v not in allowed:
            raise ValueError(f"cache_backend must be one of {allowed}")
        return v

    @field_validator("join_failure_policy")
    def validate_join_failure_policy(cls, v: str) -> str:
        allowed = ["fail_fast", "best_effort"]
        v = v.lower()
        if v not in allowed:
            raise ValueError(f"join_failure_policy must be one of {allowed}")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.environment == "testing"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
