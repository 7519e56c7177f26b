"""
Shared configuration management for the FluxSight Access Gateway.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Backing store
    redis_url: str = Field(default="redis://localhost:6379/0")
    store_timeout_seconds: float = Field(default=0.5, gt=0)

    # Security
    jwt_private_key_path: Optional[str] = Field(default=None)
    jwt_public_key_path: Optional[str] = Field(default=None)
    jwt_key_id: str = Field(default="fluxsight-key-1")
    jwt_issuer: str = Field(default="fluxsight-gateway")
    jwt_access_token_expiry: str = Field(default="15m")
    jwt_refresh_token_expiry: str = Field(default="7d")
    jwks_url: Optional[str] = Field(default=None)
    credential_header: str = Field(default="X-API-Key")

    # Rate limiting
    quota_window_ms: int = Field(default=60_000, gt=0)

    # Caching
    cache_namespace: str = Field(default="fluxsight")
    cache_prefix_scan: bool = Field(default=True)
    cache_ttl_pools: int = Field(default=300, gt=0)
    cache_ttl_swaps: int = Field(default=300, gt=0)
    cache_ttl_tvl: int = Field(default=60, gt=0)
    cache_swap_pages_tracked: int = Field(default=10, ge=1)


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
