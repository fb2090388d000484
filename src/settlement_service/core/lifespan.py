"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from settlement_service.clients.funds_network_client import FundsNetworkClient
from settlement_service.clients.identity_client import IdentityClient
from settlement_service.config import get_settings
from settlement_service.core.state import init_app_state
from settlement_service.logging import get_logger, setup_logging
from settlement_service.services.auto_release import AutoReleaseScheduler
from settlement_service.services.database import Database
from settlement_service.services.dispute_resolver import DisputeResolver
from settlement_service.services.funds_gateway import FundsGateway
from settlement_service.services.ledger import WalletLedger
from settlement_service.services.settlement_service import SettlementService
from settlement_service.services.task_machine import TaskStateMachine

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    database = Database(settings.database.path)
    state.database = database

    ledger = WalletLedger(database, settings.settlement)
    state.ledger = ledger

    machine = TaskStateMachine(
        database,
        ledger,
        settings.settlement,
        max_reason_length=settings.disputes.max_reason_length,
    )
    state.machine = machine
    resolver = DisputeResolver(database, machine)

    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        accounts_path=settings.identity.accounts_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.identity_client = identity_client

    funds_network_client = FundsNetworkClient(
        base_url=settings.funds_network.base_url,
        deposit_path=settings.funds_network.deposit_path,
        withdraw_path=settings.funds_network.withdraw_path,
        timeout_seconds=settings.funds_network.timeout_seconds,
        api_key=settings.funds_network.api_key,
    )
    state.funds_network_client = funds_network_client
    gateway = FundsGateway(database, ledger, funds_network_client)
    state.funds_gateway = gateway

    state.settlement = SettlementService(
        ledger=ledger,
        machine=machine,
        resolver=resolver,
        identity_client=identity_client,
        gateway=gateway,
    )

    scheduler = AutoReleaseScheduler(
        machine,
        resolver,
        ledger,
        gateway,
        poll_interval_seconds=settings.scheduler.poll_interval_seconds,
        batch_size=settings.scheduler.batch_size,
    )
    state.scheduler = scheduler
    if settings.scheduler.enabled:
        scheduler.start()

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "platform_fee_pct": str(settings.settlement.platform_fee_pct),
            "scheduler_enabled": settings.scheduler.enabled,
            "identity_base_url": settings.identity.base_url,
            "funds_network_base_url": settings.funds_network.base_url,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    await scheduler.stop()
    await identity_client.close()
    await funds_network_client.close()
    database.close()
