# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Server configuration using pydantic-settings."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from ..core.config import CoreSettings


def get_package_version() -> str:
    """Installed distribution version, or a dev marker when running from source."""
    try:
        return version("ecopulse")
    except PackageNotFoundError:
        return "0.0.0-dev"


class ServerSettings(CoreSettings):
    """Configuration for the EcoPulse HTTP server.

    Inherits the core settings (database, logging, trust policy) and adds
    the HTTP binding. Uses the same ``ECOPULSE_`` environment prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="ECOPULSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = Field(default="127.0.0.1", description="Host to bind to")
    port: int = Field(default=8430, description="Port to bind to")

    allowed_origins: list[str] = Field(
        default=[],
        description="Allowed CORS origins. Empty = same-origin only. Set to ['*'] for development.",
    )

    server_name: str = Field(default="ecopulse", description="Server name reported by /health")
    server_version: str = Field(default_factory=get_package_version, description="Server version")


_settings: ServerSettings | None = None


def get_settings() -> ServerSettings:
    """Get the server settings singleton."""
    global _settings
    if _settings is None:
        _settings = ServerSettings()
    return _settings


def clear_settings_cache() -> None:
    """Clear the settings cache (for testing)."""
    global _settings
    _settings = None
