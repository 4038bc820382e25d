"""Configuration management for the MCP OAuth gateway.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached; components receive the values they
need at construction time instead of reading the environment per request.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SCOPES = ["mcp:tools", "mcp:resources"]


class OAuthSettings(BaseSettings):
    """Authorization server configuration."""
    jwt_secret: str = Field(default="change-me-in-production-use-strong-secret")
    jwt_algorithm: str = Field(default="HS256")
    access_token_ttl_seconds: int = Field(default=3600, gt=0)
    refresh_token_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    authorization_code_ttl_seconds: int = Field(default=600, gt=0)
    scopes_supported: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))

    # Login sessions are issued by the external login collaborator
    session_secret: Optional[str] = Field(default=None, description="Defaults to jwt_secret")
    session_cookie_name: str = Field(default="session")
    login_url: str = Field(default="/login")

    model_config = SettingsConfigDict(
        env_prefix="OAUTH_",
        env_file=".env",
        extra="ignore"
    )

    @property
    def effective_session_secret(self) -> str:
        return self.session_secret or self.jwt_secret


class GatewaySettings(BaseSettings):
    """Protocol gateway configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    base_url: str = Field(default="http://localhost:8000", description="Public base URL")
    catalog_path: str = Field(default="config/catalog.yaml")

    protocol_version: str = Field(default="2024-11-05")
    supported_protocol_versions: list[str] = Field(
        default_factory=lambda: ["2024-11-05", "2025-03-26", "2025-06-18"]
    )
    server_version: str = Field(default="1.0.0")

    downstream_timeout_seconds: float = Field(default=30.0, gt=0)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        extra="ignore"
    )


class UsageSettings(BaseSettings):
    """Usage recorder configuration."""
    enabled: bool = Field(default=True)
    log_path: str = Field(default="logs/usage.log")
    queue_size: int = Field(default=1000, gt=0)
    shutdown_timeout_seconds: float = Field(default=5.0, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="USAGE_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Component settings
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    usage: UsageSettings = Field(default_factory=UsageSettings)

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        extra="ignore"
    )

    @property
    def base_url(self) -> str:
        """Public base URL without a trailing slash."""
        return self.gateway.base_url.rstrip("/")

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        data = load_yaml_config(path)
        return cls(**data)


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file. A missing file yields an empty mapping."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("MCP_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
