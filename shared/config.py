"""
Shared configuration management for the Access Layer cache services.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Fragment store
    redis_url: str = Field(default="redis://localhost:6379/0")
    cache_backend: str = Field(default="memory", description="memory | redis")
    cache_namespace: str = Field(default="views")
    cache_default_ttl: int = Field(default=3600, description="Seconds; 0 disables expiry")
    cache_max_entries: int = Field(default=10000)
    cache_operation_timeout: float = Field(default=0.25, description="Seconds before a store call fails open")

    # Invalidation
    cache_max_propagation_depth: Optional[int] = Field(default=None)

    # Page cache
    page_cache_root: str = Field(default="public/cache")
    page_cache_extension: str = Field(default=".html")
    page_cache_compress: bool = Field(default=True)

    # Conditional GET
    conditional_public: bool = Field(default=False)
    conditional_max_age: int = Field(default=0)
    conditional_must_revalidate: bool = Field(default=True)

    # Preheating
    cache_warm_concurrency: int = Field(default=5)
    cache_warm_base_url: str = Field(default="", description="Empty warms in-process through the ASGI app")
    hot_paths_file: Optional[str] = Field(default=None)


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
