"""Configuration loading tests for the settlement service."""

from __future__ import annotations

import os
from decimal import Decimal

import pytest
from pydantic import ValidationError

from settlement_service.config import (
    SettlementConfig,
    Settings,
    clear_settings_cache,
    get_safe_config,
    get_settings,
)

_BASE_CONFIG = """\
service:
  name: "settlement"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "INFO"
  directory: "data/logs"
database:
  path: "data/settlement.db"
settlement:
  platform_fee_pct: "2.5"
scheduler:
  enabled: true
  poll_interval_seconds: 30
  batch_size: 100
identity:
  base_url: "http://localhost:8001"
  accounts_path: "/accounts"
  timeout_seconds: 10
funds_network:
  base_url: "http://localhost:8090"
  deposit_path: "/transfers/deposit"
  withdraw_path: "/transfers/withdraw"
  timeout_seconds: 30
  api_key: "secret-key"
disputes:
  max_reason_length: 2000
"""


def _load(tmp_path, content: str) -> Settings:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(content)
    os.environ["CONFIG_PATH"] = str(config_path)
    try:
        clear_settings_cache()
        return get_settings()
    finally:
        os.environ.pop("CONFIG_PATH", None)


@pytest.mark.unit
def test_config_loads_from_yaml(tmp_path):
    """Valid config loads; settlement policy falls back to documented defaults."""
    settings = _load(tmp_path, _BASE_CONFIG)

    assert settings.service.name == "settlement"
    assert settings.server.port == 8010
    assert settings.settlement.platform_fee_pct == Decimal("2.5")
    assert settings.settlement.min_task_value == Decimal("1.0")
    assert settings.settlement.escrow_release_delay_seconds == 24 * 3600
    assert settings.settlement.dispute_resolution_window_seconds == 72 * 3600
    assert settings.settlement.default_page_size == 10
    assert settings.settlement.max_page_size == 50


@pytest.mark.unit
def test_config_rejects_extra_fields(tmp_path):
    """Extra keys raise ValidationError (extra='forbid')."""
    content = _BASE_CONFIG.replace('  version: "0.1.0"\n', '  version: "0.1.0"\n  bogus: 1\n')
    with pytest.raises(ValidationError):
        _load(tmp_path, content)


@pytest.mark.unit
def test_config_requires_every_section(tmp_path):
    """A missing section fails at startup."""
    content = _BASE_CONFIG.split("disputes:")[0]
    with pytest.raises(ValidationError):
        _load(tmp_path, content)


@pytest.mark.unit
def test_safe_config_redacts_api_key(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(_BASE_CONFIG)
    os.environ["CONFIG_PATH"] = str(config_path)
    try:
        clear_settings_cache()
        safe = get_safe_config()
    finally:
        os.environ.pop("CONFIG_PATH", None)

    assert safe["funds_network"]["api_key"] == "***"
    assert safe["identity"]["base_url"] == "http://localhost:8001"


@pytest.mark.unit
@pytest.mark.parametrize(
    "overrides",
    [
        {"min_task_value": "0"},
        {"platform_fee_pct": "100"},
        {"platform_fee_pct": "-1"},
        {"escrow_release_delay_seconds": 7200, "dispute_resolution_window_seconds": 3600},
        {"default_page_size": 60},
    ],
)
def test_settlement_config_rejects_bad_policy(overrides):
    with pytest.raises(ValidationError):
        SettlementConfig(**overrides)


@pytest.mark.unit
def test_independent_configs_coexist():
    """Two policies can be used side by side in one process."""
    cheap = SettlementConfig(platform_fee_pct=Decimal("0"))
    strict = SettlementConfig(platform_fee_pct=Decimal("5"), min_task_value=Decimal("20"))

    assert cheap.platform_fee_pct == Decimal("0")
    assert strict.platform_fee_pct == Decimal("5")
    assert cheap.min_task_value == Decimal("1.0")
