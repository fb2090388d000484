"""Shared test helpers for building settlement components."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from settlement_service.config import SettlementConfig
from settlement_service.services.database import Database
from settlement_service.services.dispute_resolver import DisputeResolver
from settlement_service.services.ledger import WalletLedger
from settlement_service.services.task_machine import TaskStateMachine

if TYPE_CHECKING:
    from pathlib import Path

    from settlement_service.models import Task

REQUESTER = "acct-requester"
WORKER = "acct-worker"
OTHER = "acct-other"
FEE_ACCOUNT = "platform-fees"


def make_config(**overrides: Any) -> SettlementConfig:
    """Settlement policy with the documented defaults unless overridden."""
    return SettlementConfig(**overrides)


@dataclass
class Stack:
    """Ledger, state machine and resolver sharing one database."""

    db: Database
    ledger: WalletLedger
    machine: TaskStateMachine
    resolver: DisputeResolver

    def close(self) -> None:
        self.db.close()


def build_stack(db_path: Path | str, config: SettlementConfig | None = None) -> Stack:
    """Wire the settlement core against a database file."""
    settlement_config = config if config is not None else make_config()
    db = Database(str(db_path))
    ledger = WalletLedger(db, settlement_config)
    machine = TaskStateMachine(db, ledger, settlement_config, max_reason_length=200)
    resolver = DisputeResolver(db, machine)
    return Stack(db=db, ledger=ledger, machine=machine, resolver=resolver)


def fund(ledger: WalletLedger, account_id: str, amount: str, reference: str = "seed") -> None:
    """Open a wallet and credit it."""
    ledger.open_wallet(account_id)
    ledger.deposit(account_id, amount, f"{reference}-{account_id}")


def submitted_task(stack: Stack, value: str = "10") -> Task:
    """Post, accept, begin and submit a task between REQUESTER and WORKER."""
    task = stack.machine.post(REQUESTER, value)
    stack.machine.accept(task.task_id, WORKER)
    stack.machine.begin(task.task_id, WORKER)
    return stack.machine.submit(task.task_id, WORKER)


def balances(stack: Stack, account_id: str) -> tuple[Decimal, Decimal]:
    """(available, escrowed) for an account."""
    wallet = stack.ledger.require_wallet(account_id)
    return wallet.available, wallet.escrowed
