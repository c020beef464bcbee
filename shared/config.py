"""
Shared configuration management for the Gateway Limits service.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="LIMITS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Shared counter store
    store_backend: str = Field(default="redis")  # "redis" or "memory"
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_socket_timeout: float = Field(default=2.0)

    # Usage limit policies
    exhaustion_cache_ttl_seconds: int = Field(default=30)

    # Rate limiting
    rate_limit_algorithm: str = Field(default="token_bucket")
    rate_limit_ttl_factor: int = Field(default=3)

    # Control plane resync
    control_plane_url: Optional[str] = Field(default=None)
    control_plane_auth: Optional[str] = Field(default=None)
    resync_timeout_seconds: float = Field(default=5.0)
    resync_max_attempts: int = Field(default=2)
    resync_retry_base_delay: float = Field(default=0.2)
    resync_failure_threshold: int = Field(default=5)
    resync_recovery_timeout: float = Field(default=30.0)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
