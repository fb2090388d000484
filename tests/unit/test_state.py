"""Unit tests for AppState lifecycle helpers."""

from __future__ import annotations

import time

import pytest

from settlement_service.core.state import (
    AppState,
    get_app_state,
    init_app_state,
    reset_app_state,
)


@pytest.mark.unit
def test_app_state_init() -> None:
    """AppState starts with no wired components."""
    state = AppState()
    assert state.database is None
    assert state.ledger is None
    assert state.machine is None
    assert state.settlement is None
    assert state.scheduler is None
    assert state.identity_client is None
    assert state.funds_network_client is None


@pytest.mark.unit
def test_app_state_uptime_and_started_at() -> None:
    state = AppState()
    time.sleep(0.001)
    assert state.uptime_seconds > 0
    assert state.started_at.endswith("Z")


@pytest.mark.unit
def test_get_app_state_requires_init() -> None:
    with pytest.raises(RuntimeError):
        get_app_state()

    state = init_app_state()
    assert get_app_state() is state

    reset_app_state()
    with pytest.raises(RuntimeError):
        get_app_state()
