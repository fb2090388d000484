"""Unit test fixtures. Caches are cleared between tests."""

import pytest

from settlement_service.config import clear_settings_cache
from settlement_service.core.state import reset_app_state
from tests.helpers import REQUESTER, build_stack, fund


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def stack(tmp_path):
    """Settlement core on a fresh database with a funded requester."""
    built = build_stack(tmp_path / "settlement.db")
    fund(built.ledger, REQUESTER, "100")
    yield built
    built.close()
