"""Router test fixtures with mocked Identity and funds network clients."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from settlement_service.app import create_app
from settlement_service.config import clear_settings_cache
from settlement_service.core.lifespan import lifespan
from settlement_service.core.state import get_app_state, reset_app_state

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and mocked external services."""
    db_path = tmp_path / "test.db"
    config_content = f"""\
service:
  name: "settlement"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{tmp_path / "logs"}"
database:
  path: "{db_path}"
settlement:
  platform_fee_pct: "2.0"
scheduler:
  enabled: false
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
  timeout_seconds: 10
disputes:
  max_reason_length: 2000
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Mock Identity client: every account is registered
        mock_identity = AsyncMock()
        mock_identity.account_exists = AsyncMock(return_value=True)
        mock_identity.close = AsyncMock()
        state.identity_client = mock_identity
        if state.settlement is not None:
            state.settlement._identity_client = mock_identity

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
