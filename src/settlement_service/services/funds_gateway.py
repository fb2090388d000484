"""Moves funds between wallets and the external funds network."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from settlement_service.core.exceptions import (
    ExternalNetworkError,
    ReconciliationError,
    ServiceError,
    StateError,
    ValidationError,
)
from settlement_service.logging import get_logger
from settlement_service.models import (
    ExternalTransfer,
    Transaction,
    TransactionKind,
    TransferDirection,
    TransferStatus,
)
from settlement_service.money import from_units, parse_amount, to_units

if TYPE_CHECKING:
    from decimal import Decimal

    from settlement_service.clients.funds_network_client import FundsNetworkClient
    from settlement_service.services.database import Database
    from settlement_service.services.ledger import WalletLedger


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def external_reference(reference: str) -> str:
    """Ledger reference for the credit or debit backing an external transfer."""
    return f"external:{reference}"


def reversal_reference(reference: str) -> str:
    """Ledger reference for crediting back a rejected withdrawal."""
    return f"reversal:{external_reference(reference)}"


RESERVED_REFERENCE_PREFIXES = ("external:", "reversal:")


class FundsGateway:
    """
    Coordinates external deposits and withdrawals with the ledger.

    Every transfer is tracked in ``external_transfers`` keyed by the
    caller's reference, moving from ``pending`` to ``confirmed`` (or
    ``failed`` when the network rejects it outright). Deposits are
    credited only after the network confirms; withdrawals are debited
    before the network is asked to pay out. A retryable network failure
    leaves the row pending and re-raises, and ``retry_pending`` completes
    it later with the same reference.

    Ledger legs written here use ``external:{reference}`` so they never
    share an idempotency key with direct deposits and withdrawals. A
    transfer whose ledger side cannot be recorded is parked in
    ``reconciliation_required`` and is not retried.
    """

    _COLUMNS_SQL = (
        "reference, account_id, direction, address, amount, status, network_tx_id, "
        "attempts, created_at, confirmed_at"
    )

    def __init__(
        self,
        db: Database,
        ledger: WalletLedger,
        network: FundsNetworkClient,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._network = network
        self._logger = get_logger(__name__)
    # ------------------------------------------------------------------
    # Transfer rows
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_transfer(row: sqlite3.Row) -> ExternalTransfer:
        return ExternalTransfer(
            reference=str(row["reference"]),
            account_id=str(row["account_id"]),
            direction=TransferDirection(row["direction"]),
            address=str(row["address"]),
            amount=from_units(int(row["amount"])),
            status=TransferStatus(row["status"]),
            network_tx_id=row["network_tx_id"],
            attempts=int(row["attempts"]),
            created_at=str(row["created_at"]),
            confirmed_at=row["confirmed_at"],
        )

    def get_transfer(self, reference: str) -> ExternalTransfer | None:
        row = self._db.fetchone(
            f"SELECT {self._COLUMNS_SQL} FROM external_transfers "  # nosec B608
            "WHERE reference = ?",
            (reference,),
        )
        return self._row_to_transfer(row) if row is not None else None

    def list_pending(self, limit: int) -> list[ExternalTransfer]:
        rows = self._db.fetchall(
            f"SELECT {self._COLUMNS_SQL} FROM external_transfers "  # nosec B608
            "WHERE status = ? ORDER BY created_at LIMIT ?",
            (TransferStatus.PENDING.value, limit),
        )
        return [self._row_to_transfer(row) for row in rows]

    def _open_transfer(
        self,
        reference: str,
        account_id: str,
        direction: TransferDirection,
        address: str,
        amount: Decimal,
    ) -> tuple[ExternalTransfer, bool]:
        """
        Insert the pending row, or return the existing one if terms match.

        Returns the transfer and whether this call created it.
        """
        cursor = self._db.execute(
            "INSERT OR IGNORE INTO external_transfers "
            "(reference, account_id, direction, address, amount, status, attempts, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, 0, ?)",
            (
                reference,
                account_id,
                direction.value,
                address,
                to_units(amount),
                TransferStatus.PENDING.value,
                _now_iso(),
            ),
        )
        created = cursor.rowcount == 1
        transfer = self.get_transfer(reference)
        if transfer is None:
            msg = f"External transfer {reference} not found after insert"
            raise RuntimeError(msg)
        if (
            transfer.account_id != account_id
            or transfer.direction != direction
            or transfer.address != address
            or transfer.amount != amount
        ):
            raise ValidationError(
                "PAYLOAD_MISMATCH",
                "Transfer reference already used with different terms",
                {"reference": reference},
            )
        return transfer, created

    def _require_unused(
        self, kind: TransactionKind, account_id: str, ledger_reference: str
    ) -> None:
        """Raise REFERENCE_CONFLICT if the ledger already holds this leg."""
        existing = self._ledger.transaction_log.find_by_reference(
            kind, account_id, ledger_reference
        )
        if existing is not None:
            raise StateError(
                "REFERENCE_CONFLICT",
                "Ledger already holds an entry for this transfer reference",
                {"reference": ledger_reference, "tx_id": existing.tx_id},
            )

    @staticmethod
    def _require_open(transfer: ExternalTransfer) -> None:
        if transfer.status == TransferStatus.FAILED:
            raise StateError(
                "TRANSFER_FAILED",
                "Transfer was rejected by the network",
                {"reference": transfer.reference},
            )
        if transfer.status == TransferStatus.RECONCILIATION_REQUIRED:
            raise StateError(
                "TRANSFER_NEEDS_RECONCILIATION",
                "Transfer is held for manual reconciliation",
                {"reference": transfer.reference, "network_tx_id": transfer.network_tx_id},
            )

    def _record_attempt(self, reference: str) -> None:
        with self._db.transaction():
            self._db.execute(
                "UPDATE external_transfers SET attempts = attempts + 1 WHERE reference = ?",
                (reference,),
            )

    def _mark(self, reference: str, status: TransferStatus, network_tx_id: str | None) -> None:
        """Set status (and network tx id). Expects an open transaction."""
        confirmed_at = _now_iso() if status == TransferStatus.CONFIRMED else None
        self._db.execute(
            "UPDATE external_transfers SET status = ?, "
            "network_tx_id = COALESCE(?, network_tx_id), confirmed_at = ? "
            "WHERE reference = ?",
            (status.value, network_tx_id, confirmed_at, reference),
        )

    def _hold_for_reconciliation(
        self, transfer: ExternalTransfer, network_tx_id: str | None, cause: str
    ) -> ReconciliationError:
        """Park the transfer out of the retry queue and build the error to raise."""
        with self._db.transaction():
            self._mark(transfer.reference, TransferStatus.RECONCILIATION_REQUIRED, network_tx_id)
        details = {
            "reference": transfer.reference,
            "account_id": transfer.account_id,
            "direction": transfer.direction.value,
            "network_tx_id": network_tx_id,
            "cause": cause,
        }
        self._logger.critical("External transfer needs reconciliation", extra=details)
        return ReconciliationError(
            "External transfer settled on the network but not in the ledger", details
        )

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    async def fund_wallet(
        self, account_id: str, address: str, amount: object, reference: str
    ) -> Transaction:
        """
        Pull funds from an external address and credit the wallet.

        Raises:
            StateError: REFERENCE_CONFLICT if the ledger already holds a credit
                for this reference; TRANSFER_FAILED or TRANSFER_NEEDS_RECONCILIATION
                on replay of a transfer that did not complete.
            ExternalNetworkError: network call failed; the transfer stays pending
                (retryable) or is marked failed (not retryable).
            ReconciliationError: the network confirmed but the credit could not
                be recorded.
        """
        parsed = self._require_positive(amount)
        self._ledger.require_wallet(account_id)

        with self._db.transaction():
            transfer, created = self._open_transfer(
                reference, account_id, TransferDirection.INBOUND, address, parsed
            )
            if created:
                self._require_unused(
                    TransactionKind.CREDIT, account_id, external_reference(reference)
                )
        self._require_open(transfer)
        return await self._complete_inbound(transfer)

    async def _complete_inbound(self, transfer: ExternalTransfer) -> Transaction:
        ledger_reference = external_reference(transfer.reference)
        existing = self._ledger.transaction_log.find_by_reference(
            TransactionKind.CREDIT, transfer.account_id, ledger_reference
        )
        if existing is not None:
            if transfer.status == TransferStatus.CONFIRMED:
                return existing
            # A credit the gateway never confirmed; pulling again could charge twice
            raise self._hold_for_reconciliation(
                transfer, transfer.network_tx_id, "REFERENCE_CONFLICT"
            )

        self._record_attempt(transfer.reference)
        try:
            tx_ref = await self._network.deposit_external(
                transfer.address, transfer.amount, transfer.reference
            )
        except ExternalNetworkError as exc:
            if not exc.retryable:
                with self._db.transaction():
                    self._mark(transfer.reference, TransferStatus.FAILED, None)
            raise

        try:
            with self._db.transaction():
                self._require_unused(
                    TransactionKind.CREDIT, transfer.account_id, ledger_reference
                )
                tx = self._ledger.deposit(transfer.account_id, transfer.amount, ledger_reference)
                self._mark(transfer.reference, TransferStatus.CONFIRMED, tx_ref.network_tx_id)
        except ServiceError as exc:
            raise self._hold_for_reconciliation(
                transfer, tx_ref.network_tx_id, exc.error
            ) from exc

        self._logger.info(
            "External deposit credited",
            extra={
                "reference": transfer.reference,
                "account_id": transfer.account_id,
                "amount": str(transfer.amount),
                "network_tx_id": tx_ref.network_tx_id,
            },
        )
        return tx

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    async def withdraw_to_address(
        self, account_id: str, address: str, amount: object, reference: str
    ) -> Transaction:
        """
        Debit the wallet, then pay out to an external address.

        The debit is recorded first, so a crash or network failure leaves a
        pending transfer that ``retry_pending`` finishes. A transfer the
        network rejects outright is credited back to the wallet.

        Raises:
            FundsError: INSUFFICIENT_FUNDS.
            StateError: WALLET_FROZEN, REFERENCE_CONFLICT, TRANSFER_FAILED.
            ExternalNetworkError: network call failed.
        """
        parsed = self._require_positive(amount)
        ledger_reference = external_reference(reference)

        with self._db.transaction():
            transfer, created = self._open_transfer(
                reference, account_id, TransferDirection.OUTBOUND, address, parsed
            )
            if created:
                self._require_unused(TransactionKind.WITHDRAWAL, account_id, ledger_reference)
            tx = self._ledger.withdraw(account_id, parsed, ledger_reference)

        if transfer.status == TransferStatus.CONFIRMED:
            return tx
        self._require_open(transfer)
        await self._complete_outbound(transfer)
        return tx

    async def _complete_outbound(self, transfer: ExternalTransfer) -> None:
        self._record_attempt(transfer.reference)
        try:
            tx_ref = await self._network.withdraw_external(
                transfer.address, transfer.amount, transfer.reference
            )
        except ExternalNetworkError as exc:
            if not exc.retryable:
                self._reverse_outbound(transfer)
            raise

        with self._db.transaction():
            self._mark(transfer.reference, TransferStatus.CONFIRMED, tx_ref.network_tx_id)

        self._logger.info(
            "External withdrawal confirmed",
            extra={
                "reference": transfer.reference,
                "account_id": transfer.account_id,
                "amount": str(transfer.amount),
                "network_tx_id": tx_ref.network_tx_id,
            },
        )

    def _reverse_outbound(self, transfer: ExternalTransfer) -> None:
        """Credit a rejected withdrawal back to its wallet."""
        credit_reference = reversal_reference(transfer.reference)
        try:
            with self._db.transaction():
                self._require_unused(
                    TransactionKind.CREDIT, transfer.account_id, credit_reference
                )
                self._ledger.deposit(transfer.account_id, transfer.amount, credit_reference)
                self._mark(transfer.reference, TransferStatus.FAILED, None)
        except ServiceError as exc:
            raise self._hold_for_reconciliation(transfer, None, exc.error) from exc
        self._logger.warning(
            "External withdrawal rejected, funds returned to wallet",
            extra={"reference": transfer.reference, "account_id": transfer.account_id},
        )

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def retry_pending(self, limit: int = 100) -> int:
        """
        Retry pending transfers with their original references.

        Network failures are logged and the transfer is left pending (or
        failed, when rejected). A transfer that cannot be booked moves to
        ``reconciliation_required`` and the pass continues. Returns the
        number of transfers completed.
        """
        completed = 0
        for transfer in self.list_pending(limit):
            try:
                if transfer.direction == TransferDirection.INBOUND:
                    await self._complete_inbound(transfer)
                else:
                    await self._complete_outbound(transfer)
            except ExternalNetworkError as exc:
                self._logger.warning(
                    "Pending transfer retry failed",
                    extra={
                        "reference": transfer.reference,
                        "error": exc.error,
                        "retryable": exc.retryable,
                    },
                )
                continue
            except ReconciliationError as exc:
                self._logger.critical(
                    "Pending transfer removed from retry queue",
                    extra={"reference": transfer.reference, "details": exc.details},
                )
                continue
            completed += 1
        return completed

    def count_by_status(self) -> dict[str, int]:
        """Count transfers grouped by status."""
        rows = self._db.fetchall(
            "SELECT status, COUNT(*) FROM external_transfers GROUP BY status"
        )
        counts = {status.value: 0 for status in TransferStatus}
        for row in rows:
            counts[str(row[0])] = int(row[1])
        return counts

    def count_pending(self) -> int:
        return self.count_by_status()[TransferStatus.PENDING.value]

    @staticmethod
    def _require_positive(amount: object) -> Decimal:
        parsed = parse_amount(amount)
        if parsed <= 0:
            raise ValidationError("INVALID_AMOUNT", "Amount must be positive")
        return parsed
