"""
Shared configuration management for the Grenze proxy.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared import __version__


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="GRENZE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"
    version: str = __version__

    # Bucket store
    store_backend: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = Field(default=0.5, gt=0)
    redis_connect_timeout: float = Field(default=1.0, gt=0)
    redis_max_connections: int = Field(default=50, ge=1)
    store_connect_attempts: int = Field(default=30, ge=1)
    store_connect_base_delay: float = Field(default=0.2, ge=0)

    # Rate limiting (process-wide, shared by every key)
    rate_limit_capacity: float = Field(default=1.0, ge=1)
    rate_limit_leak_rate: float = Field(default=1.0, gt=0)

    # Downstream HTTP
    downstream_timeout_ms: int = Field(default=30000, gt=0)
    downstream_max_connections: int = Field(default=100, ge=1)
    downstream_user_agent: str = f"grenze-proxy/{__version__}"


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
