"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from settlement_service.clients.funds_network_client import FundsNetworkClient
    from settlement_service.clients.identity_client import IdentityClient
    from settlement_service.services.auto_release import AutoReleaseScheduler
    from settlement_service.services.database import Database
    from settlement_service.services.funds_gateway import FundsGateway
    from settlement_service.services.ledger import WalletLedger
    from settlement_service.services.settlement_service import SettlementService
    from settlement_service.services.task_machine import TaskStateMachine


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    database: Database | None = None
    ledger: WalletLedger | None = None
    machine: TaskStateMachine | None = None
    settlement: SettlementService | None = None
    funds_gateway: FundsGateway | None = None
    scheduler: AutoReleaseScheduler | None = None
    identity_client: IdentityClient | None = None
    funds_network_client: FundsNetworkClient | None = None

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
