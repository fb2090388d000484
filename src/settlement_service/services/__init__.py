"""Service layer components."""

from settlement_service.services.auto_release import AutoReleaseScheduler
from settlement_service.services.database import Database
from settlement_service.services.dispute_resolver import DisputeResolver
from settlement_service.services.funds_gateway import FundsGateway
from settlement_service.services.ledger import ConservationReport, WalletLedger
from settlement_service.services.settlement_service import SettlementService
from settlement_service.services.task_machine import TaskStateMachine
from settlement_service.services.transaction_log import TransactionLog

__all__ = [
    "AutoReleaseScheduler",
    "ConservationReport",
    "Database",
    "DisputeResolver",
    "FundsGateway",
    "SettlementService",
    "TaskStateMachine",
    "TransactionLog",
    "WalletLedger",
]
