"""Settlement domain types."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from enum import StrEnum
from typing import Any


class TaskStatus(StrEnum):
    """Task lifecycle states, from posting through payout."""

    POSTED = "posted"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})

# Statuses in which the auto-release timer is armed and a dispute may be filed
REVIEWABLE_STATUSES = frozenset({TaskStatus.SUBMITTED, TaskStatus.UNDER_REVIEW})


class TransactionKind(StrEnum):
    """
    Ledger legs.

    DEPOSIT moves the requester's available funds into escrow at posting.
    RELEASE, REFUND, SPLIT and FEE move escrowed funds of ``from`` into the
    available balance of ``to``. CREDIT and WITHDRAWAL are external funds
    entering and leaving the platform.
    """

    DEPOSIT = "deposit"
    RELEASE = "release"
    REFUND = "refund"
    SPLIT = "split"
    FEE = "fee"
    CREDIT = "credit"
    WITHDRAWAL = "withdrawal"


SETTLEMENT_KINDS = frozenset(
    {TransactionKind.RELEASE, TransactionKind.REFUND, TransactionKind.SPLIT}
)
ESCROW_OUTFLOW_KINDS = SETTLEMENT_KINDS | {TransactionKind.FEE}


class DisputeResolution(StrEnum):
    """Dispute outcomes."""

    PENDING = "pending"
    WORKER_FAVOR = "worker_favor"
    REQUESTER_FAVOR = "requester_favor"
    COMPROMISE = "compromise"
    ESCALATED = "escalated"


FINAL_RESOLUTIONS = frozenset(
    {
        DisputeResolution.WORKER_FAVOR,
        DisputeResolution.REQUESTER_FAVOR,
        DisputeResolution.COMPROMISE,
    }
)


class TransferDirection(StrEnum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class TransferStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    # Rejected by the network; an outbound debit is credited back
    FAILED = "failed"
    # Network confirmed but the ledger side could not be recorded; never retried
    RECONCILIATION_REQUIRED = "reconciliation_required"


def _serialize(data: dict[str, Any]) -> dict[str, Any]:
    return {
        key: str(value) if isinstance(value, Decimal) else value for key, value in data.items()
    }


@dataclass(frozen=True)
class Wallet:
    """Balances for one account. Never negative."""

    account_id: str
    available: Decimal
    escrowed: Decimal
    frozen: bool
    created_at: str

    @property
    def total(self) -> Decimal:
        return self.available + self.escrowed

    def to_dict(self) -> dict[str, Any]:
        return _serialize({**asdict(self), "total": self.total})


@dataclass(frozen=True)
class Transaction:
    """One append-only ledger leg."""

    tx_id: str
    seq: int
    task_id: str | None
    kind: TransactionKind
    amount: Decimal
    from_account: str | None
    to_account: str | None
    reference: str | None
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return _serialize(asdict(self))


@dataclass(frozen=True)
class Task:
    """A microjob and the escrow that backs it."""

    task_id: str
    requester_id: str
    worker_id: str | None
    value: Decimal
    status: TaskStatus
    created_at: str
    accepted_at: str | None
    started_at: str | None
    submitted_at: str | None
    review_started_at: str | None
    auto_release_deadline: str | None
    dispute_deadline: str | None
    completed_at: str | None
    cancelled_at: str | None
    approved_by: str | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return _serialize(asdict(self))


@dataclass(frozen=True)
class Dispute:
    """A contested task awaiting (or holding) a binding verdict."""

    dispute_id: str
    task_id: str
    filed_by: str
    reason: str
    filed_at: str
    dispute_deadline: str
    resolution: DisputeResolution
    worker_ratio: Decimal | None
    resolved_by: str | None
    resolved_at: str | None
    escalated_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return _serialize(asdict(self))


@dataclass(frozen=True)
class TxRef:
    """Reference returned by the external funds network."""

    network_tx_id: str
    reference: str
    status: str


@dataclass(frozen=True)
class ExternalTransfer:
    """Bookkeeping for a deposit or withdrawal crossing the funds network."""

    reference: str
    account_id: str
    direction: TransferDirection
    address: str
    amount: Decimal
    status: TransferStatus
    network_tx_id: str | None
    attempts: int
    created_at: str
    confirmed_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return _serialize(asdict(self))
