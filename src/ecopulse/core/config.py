# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Core configuration - centralized config for the ecopulse package.

All environment-based configuration should flow through this module.

Usage:
    from ecopulse.core.config import get_config
    config = get_config()

    window = config.retention_days
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoreSettings(BaseSettings):
    """Core configuration settings for EcoPulse.

    Every field can be set through an ``ECOPULSE_`` prefixed environment
    variable, e.g. ``ECOPULSE_RETENTION_DAYS=120``.
    """

    model_config = SettingsConfigDict(
        env_prefix="ECOPULSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==========================================================================
    # DATABASE SETTINGS
    # ==========================================================================

    db_host: str = Field(default="localhost", description="Database host")
    db_port: int = Field(default=5432, description="Database port")
    db_name: str = Field(default="ecopulse", description="Database name")
    db_user: str = Field(default="ecopulse", description="Database user")
    db_password: str = Field(default="", description="Database password")
    db_pool_min: int = Field(default=2, description="Minimum pool connections")
    db_pool_max: int = Field(default=20, description="Maximum pool connections")
    db_pool_timeout: int = Field(default=10, description="Seconds to wait for a pooled connection")

    # ==========================================================================
    # LOGGING SETTINGS
    # ==========================================================================

    log_level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    log_format: str = Field(default="", description="Log format: 'json', 'text', or '' (auto-detect)")
    log_file: str | None = Field(default=None, description="Log file path (optional)")

    # ==========================================================================
    # TEMPORAL VALIDATION
    # ==========================================================================

    retention_days: int = Field(default=90, ge=1, description="Retention window W in days")
    max_justification_length: int = Field(default=500, ge=1)

    # ==========================================================================
    # LOCATION PRIVACY
    # ==========================================================================

    default_blur_radius_m: float = Field(default=500.0, gt=0)
    buffer_precision_min_m: float = Field(default=100.0, gt=0)
    buffer_precision_max_m: float = Field(default=2000.0, gt=0)

    # ==========================================================================
    # CONFLICT DETECTION
    # ==========================================================================

    conflict_distance_m: float = Field(default=100.0, ge=0, description="Spatial tolerance for conflicts")

    # ==========================================================================
    # CREDIBILITY POLICY
    # ==========================================================================

    initial_credibility: int = Field(default=10, ge=0, le=20)
    tier1_min_credibility: int = Field(default=20, ge=0, le=100)
    tier2_min_credibility: int = Field(default=70, ge=0, le=100)

    credit_observation_verified: int = 2
    debit_observation_overturned: int = -3
    debit_verification_overturned: int = -2
    credit_verification_upheld: int = 1
    credit_verifier_participation: int = 1
    credit_dispute_won: int = 1
    debit_dispute_lost: int = -1

    # ==========================================================================
    # DISPUTE VOTING
    # ==========================================================================

    vote_quorum: int = Field(default=3, ge=1)
    voting_window_hours: int = Field(default=72, ge=1)

    # ==========================================================================
    # CONCURRENCY
    # ==========================================================================

    max_transition_retries: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def _check_consistency(self) -> CoreSettings:
        if self.tier2_min_credibility < self.tier1_min_credibility:
            raise ValueError("tier2_min_credibility must not be below tier1_min_credibility")
        if self.buffer_precision_min_m > self.buffer_precision_max_m:
            raise ValueError("buffer_precision_min_m must not exceed buffer_precision_max_m")
        return self

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def database_url(self) -> str:
        """Construct database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def connection_params(self) -> dict:
        """Get database connection parameters dict."""
        return {
            "host": self.db_host,
            "port": self.db_port,
            "dbname": self.db_name,
            "user": self.db_user,
            "password": self.db_password,
        }

    @property
    def default_buffer_precision_m(self) -> float:
        """Midpoint of the contributor-selectable buffer precision range."""
        return (self.buffer_precision_min_m + self.buffer_precision_max_m) / 2

    def tier_threshold(self, tier: int) -> int:
        """Minimum credibility required to act at ``tier``."""
        return self.tier2_min_credibility if tier >= 2 else self.tier1_min_credibility


# ==========================================================================
# GLOBAL CONFIG INSTANCE (lazy loaded)
# ==========================================================================

_config: CoreSettings | None = None


def get_config() -> CoreSettings:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = CoreSettings()
    return _config


def clear_config_cache() -> None:
    """Clear the config cache. Useful for testing."""
    global _config
    _config = None
