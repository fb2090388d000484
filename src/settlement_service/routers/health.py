"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from settlement_service.core.state import get_app_state
from settlement_service.schemas import ConservationStatus, HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return settlement statistics."""
    state = get_app_state()
    tasks_by_status: dict[str, int] = {}
    open_disputes = 0
    total_escrowed = "0"
    total_wallets = 0
    transfers_by_status: dict[str, int] = {}
    if state.machine is not None:
        tasks_by_status = state.machine.count_tasks_by_status()
        open_disputes = state.machine.disputes.count_open()
    if state.ledger is not None:
        total_escrowed = str(state.ledger.total_escrowed())
        total_wallets = state.ledger.count_wallets()
    if state.funds_gateway is not None:
        transfers_by_status = state.funds_gateway.count_by_status()

    scheduler_running = False
    last_check: ConservationStatus | None = None
    if state.scheduler is not None:
        scheduler_running = state.scheduler.running
        report = state.scheduler.last_conservation
        if report is not None:
            last_check = ConservationStatus(**report.to_dict())

    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_tasks=sum(tasks_by_status.values()),
        tasks_by_status=tasks_by_status,
        total_escrowed=total_escrowed,
        total_wallets=total_wallets,
        open_disputes=open_disputes,
        transfers_by_status=transfers_by_status,
        scheduler_running=scheduler_running,
        last_conservation_check=last_check,
    )
