"""
Configuration management for the settlement service.

Loads configuration from YAML. Every section must be present or startup
fails; only the settlement policy carries documented defaults.
"""

from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

REDACTION_MARKER = "***"
_SENSITIVE_KEYS = frozenset({"api_key"})


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str | None = None


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class SettlementConfig(BaseModel):
    """
    Settlement policy.

    Passed explicitly to every component at construction so that
    independent configurations can coexist in one process.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)
    min_task_value: Decimal = Decimal("1.0")
    escrow_release_delay_seconds: int = Field(default=24 * 3600, gt=0)
    dispute_resolution_window_seconds: int = Field(default=72 * 3600, gt=0)
    platform_fee_pct: Decimal = Decimal("2.0")
    platform_fee_account_id: str = "platform-fees"
    default_page_size: int = Field(default=10, gt=0)
    max_page_size: int = Field(default=50, gt=0)

    @field_validator("min_task_value")
    @classmethod
    def min_task_value_must_be_positive(cls, value: Decimal) -> Decimal:
        """Reject zero or negative task minimums."""
        if value <= 0:
            msg = "settlement.min_task_value must be positive"
            raise ValueError(msg)
        return value

    @field_validator("platform_fee_pct")
    @classmethod
    def fee_pct_must_be_a_percentage(cls, value: Decimal) -> Decimal:
        """Fee must lie in [0, 100)."""
        if not Decimal(0) <= value < Decimal(100):
            msg = "settlement.platform_fee_pct must be in [0, 100)"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def validate_windows(self) -> SettlementConfig:
        """Disputes must stay open at least as long as the auto-release delay."""
        if self.dispute_resolution_window_seconds < self.escrow_release_delay_seconds:
            msg = "dispute_resolution_window_seconds must be >= escrow_release_delay_seconds"
            raise ValueError(msg)
        if self.default_page_size > self.max_page_size:
            msg = "default_page_size must not exceed max_page_size"
            raise ValueError(msg)
        return self


class SchedulerConfig(BaseModel):
    """Auto-release scheduler configuration."""

    model_config = ConfigDict(extra="forbid")
    enabled: bool
    poll_interval_seconds: float = Field(gt=0)
    batch_size: int = Field(gt=0)


class IdentityConfig(BaseModel):
    """Identity service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    accounts_path: str
    timeout_seconds: int


class FundsNetworkConfig(BaseModel):
    """External funds network connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    deposit_path: str
    withdraw_path: str
    timeout_seconds: int
    api_key: str | None = None


class DisputesConfig(BaseModel):
    """Dispute filing limits."""

    model_config = ConfigDict(extra="forbid")
    max_reason_length: int = Field(gt=0)


class Settings(BaseModel):
    """
    Root configuration container.

    All sections are REQUIRED. Missing sections cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    settlement: SettlementConfig
    scheduler: SchedulerConfig
    identity: IdentityConfig
    funds_network: FundsNetworkConfig
    disputes: DisputesConfig


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH or the working directory."""
    return Path(os.environ.get("CONFIG_PATH", "config.yaml"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache settings from the YAML config file."""
    config_path = get_config_path()
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


def clear_settings_cache() -> None:
    """Drop the cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTION_MARKER if key in _SENSITIVE_KEYS and item else _redact(item)
            for key, item in value.items()
        }
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    return _redact(get_settings().model_dump(mode="json"))
