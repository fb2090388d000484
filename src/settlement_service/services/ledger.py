"""Wallet ledger: balances, escrow and settlement."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from settlement_service.core.exceptions import (
    FundsError,
    NotFoundError,
    StateError,
    ValidationError,
)
from settlement_service.logging import get_logger
from settlement_service.models import Transaction, TransactionKind, Wallet
from settlement_service.money import fee_units, from_units, parse_amount, portion, to_units
from settlement_service.services.transaction_log import TransactionLog

if TYPE_CHECKING:
    from settlement_service.config import SettlementConfig
    from settlement_service.services.database import Database


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_ratio(value: object) -> Decimal:
    """
    Validate a compromise ratio.

    Raises:
        ValidationError: INVALID_RATIO unless value is a number in [0, 1].
    """
    if isinstance(value, bool) or not isinstance(value, (Decimal, int, float, str)):
        raise ValidationError("INVALID_RATIO", "Ratio must be a number between 0 and 1")
    try:
        ratio = Decimal(repr(value)) if isinstance(value, float) else Decimal(value)
    except InvalidOperation as exc:
        raise ValidationError("INVALID_RATIO", "Ratio must be a number between 0 and 1") from exc
    if not ratio.is_finite() or not Decimal(0) <= ratio <= Decimal(1):
        raise ValidationError("INVALID_RATIO", "Ratio must be between 0 and 1")
    return ratio


@dataclass(frozen=True)
class ConservationReport:
    """Outcome of the platform-wide fund conservation check."""

    ok: bool
    total_balances: Decimal
    external_net: Decimal
    mismatched_accounts: list[str] = field(default_factory=list)
    checked_at: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "total_balances": str(self.total_balances),
            "external_net": str(self.external_net),
            "mismatched_accounts": list(self.mismatched_accounts),
            "checked_at": self.checked_at,
        }


class WalletLedger:
    """
    Manages wallets, escrow and settlement.

    Uses the shared SQLite database. Every balance mutation and its
    transaction leg happen in a single database transaction. When called
    from inside a task transition, that transaction is the transition's
    own, so the task update and the money movement are one unit.

    Settlements are idempotent per (task_id, kind): replaying a release,
    refund or split after it succeeded returns the original transaction.
    """

    def __init__(
        self,
        db: Database,
        config: SettlementConfig,
        transaction_log: TransactionLog | None = None,
    ) -> None:
        self._db = db
        self._config = config
        self._log = transaction_log if transaction_log is not None else TransactionLog(db)
        self._logger = get_logger(__name__)
        self.open_wallet(config.platform_fee_account_id)

    @property
    def transaction_log(self) -> TransactionLog:
        return self._log

    @property
    def fee_account_id(self) -> str:
        return self._config.platform_fee_account_id

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_wallet(row: sqlite3.Row) -> Wallet:
        return Wallet(
            account_id=str(row["account_id"]),
            available=from_units(int(row["available"])),
            escrowed=from_units(int(row["escrowed"])),
            frozen=bool(row["frozen"]),
            created_at=str(row["created_at"]),
        )

    def open_wallet(self, account_id: str) -> Wallet:
        """Create a zero-balance wallet for an account. Idempotent."""
        if not isinstance(account_id, str) or not account_id.strip():
            raise ValidationError("INVALID_ACCOUNT_ID", "account_id must be a non-empty string")

        with self._db.transaction():
            self._db.execute(
                "INSERT OR IGNORE INTO wallets "
                "(account_id, available, escrowed, frozen, created_at) VALUES (?, 0, 0, 0, ?)",
                (account_id, _now_iso()),
            )
        return self.require_wallet(account_id)

    def get_wallet(self, account_id: str) -> Wallet | None:
        """Look up a wallet by account. Returns None if not found."""
        row = self._db.fetchone(
            "SELECT account_id, available, escrowed, frozen, created_at "
            "FROM wallets WHERE account_id = ?",
            (account_id,),
        )
        return self._row_to_wallet(row) if row is not None else None

    def require_wallet(self, account_id: str) -> Wallet:
        wallet = self.get_wallet(account_id)
        if wallet is None:
            raise NotFoundError("WALLET_NOT_FOUND", "Wallet not found", {"account_id": account_id})
        return wallet

    def get_wallet_balance(self, account_id: str) -> dict[str, object]:
        """Available, escrowed and total balance for an account."""
        return self.require_wallet(account_id).to_dict()

    def _set_frozen(self, account_id: str, frozen: bool) -> Wallet:
        with self._db.transaction():
            cursor = self._db.execute(
                "UPDATE wallets SET frozen = ? WHERE account_id = ?",
                (1 if frozen else 0, account_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(
                    "WALLET_NOT_FOUND", "Wallet not found", {"account_id": account_id}
                )
        self._logger.info(
            "Wallet frozen" if frozen else "Wallet unfrozen", extra={"account_id": account_id}
        )
        return self.require_wallet(account_id)

    def freeze_wallet(self, account_id: str) -> Wallet:
        """Block new escrow locks and withdrawals. In-flight settlements still complete."""
        return self._set_frozen(account_id, True)

    def unfreeze_wallet(self, account_id: str) -> Wallet:
        return self._set_frozen(account_id, False)

    def close_wallet(self, account_id: str) -> None:
        """
        Delete an empty wallet.

        Raises:
            StateError: WALLET_HAS_ESCROW while funds are locked, WALLET_NOT_EMPTY
                while available funds remain.
        """
        with self._db.transaction():
            wallet = self.require_wallet(account_id)
            if wallet.escrowed > 0:
                raise StateError(
                    "WALLET_HAS_ESCROW",
                    "Wallet cannot be closed while funds are held in escrow",
                    {"account_id": account_id},
                )
            if wallet.available > 0:
                raise StateError(
                    "WALLET_NOT_EMPTY",
                    "Wallet cannot be closed while it holds available funds",
                    {"account_id": account_id},
                )
            has_history = self._db.fetchone(
                "SELECT 1 FROM transactions WHERE from_account = ? OR to_account = ? "
                "UNION ALL SELECT 1 FROM external_transfers WHERE account_id = ? LIMIT 1",
                (account_id, account_id, account_id),
            )
            if has_history is not None:
                # Keep the row so the log's foreign keys stay valid; freeze it instead.
                self._db.execute(
                    "UPDATE wallets SET frozen = 1 WHERE account_id = ?", (account_id,)
                )
            else:
                self._db.execute("DELETE FROM wallets WHERE account_id = ?", (account_id,))
        self._logger.info("Wallet closed", extra={"account_id": account_id})

    # ------------------------------------------------------------------
    # Balance primitives (callers must hold an open transaction)
    # ------------------------------------------------------------------

    def _credit_available(self, account_id: str, units: int) -> None:
        cursor = self._db.execute(
            "UPDATE wallets SET available = available + ? WHERE account_id = ?",
            (units, account_id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError("WALLET_NOT_FOUND", "Wallet not found", {"account_id": account_id})

    def _debit_escrow(self, account_id: str, units: int) -> None:
        cursor = self._db.execute(
            "UPDATE wallets SET escrowed = escrowed - ? WHERE account_id = ? AND escrowed >= ?",
            (units, account_id, units),
        )
        if cursor.rowcount == 0:
            wallet = self.require_wallet(account_id)
            raise FundsError(
                "INSUFFICIENT_ESCROW",
                "Insufficient escrowed funds for settlement",
                {"account_id": account_id, "escrowed": str(wallet.escrowed)},
            )

    def _require_positive(self, amount: object) -> int:
        parsed = parse_amount(amount)
        if parsed <= 0:
            raise ValidationError("INVALID_AMOUNT", "Amount must be positive")
        return to_units(parsed)

    def _existing_settlement(self, task_id: str, kind: TransactionKind) -> Transaction | None:
        settled = self._log.get_settlement(task_id)
        if settled is None:
            return None
        settled_kind, tx = settled
        if settled_kind != kind:
            raise StateError(
                "ESCROW_ALREADY_SETTLED",
                f"Escrow for this task was already settled by {settled_kind.value}",
                {"task_id": task_id, "settlement": settled_kind.value},
            )
        return tx

    # ------------------------------------------------------------------
    # External funds
    # ------------------------------------------------------------------

    def deposit(self, account_id: str, amount: object, reference: str) -> Transaction:
        """
        Add funds to a wallet's available balance.

        Idempotent by reference: a replay with the same amount returns the
        original transaction.

        Raises:
            ValidationError: INVALID_AMOUNT if amount <= 0, PAYLOAD_MISMATCH if the
                reference was used with a different amount.
            NotFoundError: WALLET_NOT_FOUND.
        """
        units = self._require_positive(amount)

        with self._db.transaction():
            existing = self._log.find_by_reference(TransactionKind.CREDIT, account_id, reference)
            if existing is not None:
                if to_units(existing.amount) != units:
                    raise ValidationError(
                        "PAYLOAD_MISMATCH",
                        "Duplicate deposit reference used with a different amount",
                        {"reference": reference},
                    )
                return existing

            self._credit_available(account_id, units)
            tx = self._log.append(
                TransactionKind.CREDIT,
                units,
                task_id=None,
                from_account=None,
                to_account=account_id,
                reference=reference,
                timestamp=_now_iso(),
            )

        self._logger.info(
            "Wallet credited",
            extra={"account_id": account_id, "amount": str(tx.amount), "reference": reference},
        )
        return tx

    def withdraw(self, account_id: str, amount: object, reference: str) -> Transaction:
        """
        Remove funds from a wallet's available balance.

        Idempotent by reference.

        Raises:
            ValidationError: INVALID_AMOUNT, PAYLOAD_MISMATCH.
            StateError: WALLET_FROZEN.
            FundsError: INSUFFICIENT_FUNDS.
        """
        units = self._require_positive(amount)

        with self._db.transaction():
            existing = self._log.find_by_reference(
                TransactionKind.WITHDRAWAL, account_id, reference
            )
            if existing is not None:
                if to_units(existing.amount) != units:
                    raise ValidationError(
                        "PAYLOAD_MISMATCH",
                        "Duplicate withdrawal reference used with a different amount",
                        {"reference": reference},
                    )
                return existing

            wallet = self.require_wallet(account_id)
            if wallet.frozen:
                raise StateError("WALLET_FROZEN", "Wallet is frozen", {"account_id": account_id})

            cursor = self._db.execute(
                "UPDATE wallets SET available = available - ? "
                "WHERE account_id = ? AND available >= ?",
                (units, account_id, units),
            )
            if cursor.rowcount == 0:
                raise FundsError(
                    "INSUFFICIENT_FUNDS",
                    "Insufficient funds for withdrawal",
                    {"account_id": account_id, "available": str(wallet.available)},
                )
            tx = self._log.append(
                TransactionKind.WITHDRAWAL,
                units,
                task_id=None,
                from_account=account_id,
                to_account=None,
                reference=reference,
                timestamp=_now_iso(),
            )

        self._logger.info(
            "Wallet debited",
            extra={"account_id": account_id, "amount": str(tx.amount), "reference": reference},
        )
        return tx

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    def lock_escrow(self, account_id: str, amount: object, task_id: str) -> Transaction:
        """
        Move funds from available to escrowed for a task.

        Idempotent per task: a replay with the same amount returns the
        original deposit transaction.

        Raises:
            ValidationError: INVALID_AMOUNT.
            StateError: WALLET_FROZEN, ESCROW_ALREADY_LOCKED (different amount).
            FundsError: INSUFFICIENT_FUNDS.
            NotFoundError: WALLET_NOT_FOUND.
        """
        units = self._require_positive(amount)

        with self._db.transaction():
            existing = self._log.find_escrow_deposit(task_id)
            if existing is not None:
                if existing.from_account != account_id or to_units(existing.amount) != units:
                    raise StateError(
                        "ESCROW_ALREADY_LOCKED",
                        "Escrow already locked for this task with different terms",
                        {"task_id": task_id},
                    )
                return existing

            wallet = self.require_wallet(account_id)
            if wallet.frozen:
                raise StateError("WALLET_FROZEN", "Wallet is frozen", {"account_id": account_id})

            cursor = self._db.execute(
                "UPDATE wallets SET available = available - ?, escrowed = escrowed + ? "
                "WHERE account_id = ? AND available >= ?",
                (units, units, account_id, units),
            )
            if cursor.rowcount == 0:
                raise FundsError(
                    "INSUFFICIENT_FUNDS",
                    "Insufficient funds for escrow lock",
                    {"account_id": account_id, "available": str(wallet.available)},
                )
            tx = self._log.append(
                TransactionKind.DEPOSIT,
                units,
                task_id=task_id,
                from_account=account_id,
                to_account=account_id,
                reference=None,
                timestamp=_now_iso(),
            )

        self._logger.info(
            "Escrow locked",
            extra={"task_id": task_id, "account_id": account_id, "amount": str(tx.amount)},
        )
        return tx

    def _pay_out(
        self,
        task_id: str,
        kind: TransactionKind,
        from_account: str,
        to_account: str,
        units: int,
        now: str,
        *,
        charge_fee: bool,
    ) -> Transaction:
        """
        Move ``units`` out of ``from_account``'s escrow to ``to_account``.

        When ``charge_fee`` is set the platform fee is deducted first and
        recorded as a separate fee leg. Expects an open transaction.
        """
        fee = fee_units(units, self._config.platform_fee_pct) if charge_fee else 0
        net = units - fee

        self._debit_escrow(from_account, units)
        self._credit_available(to_account, net)
        tx = self._log.append(
            kind,
            net,
            task_id=task_id,
            from_account=from_account,
            to_account=to_account,
            reference=None,
            timestamp=now,
        )
        if fee > 0:
            self._credit_available(self.fee_account_id, fee)
            self._log.append(
                TransactionKind.FEE,
                fee,
                task_id=task_id,
                from_account=from_account,
                to_account=self.fee_account_id,
                reference=tx.tx_id,
                timestamp=now,
            )
        return tx

    def release(
        self, task_id: str, from_account: str, to_account: str, amount: object
    ) -> Transaction:
        """
        Release escrowed funds to a recipient, net of the platform fee.

        Raises:
            ValidationError: INVALID_AMOUNT.
            FundsError: INSUFFICIENT_ESCROW.
            StateError: ESCROW_ALREADY_SETTLED (task settled by another kind).
        """
        units = self._require_positive(amount)

        with self._db.transaction():
            existing = self._existing_settlement(task_id, TransactionKind.RELEASE)
            if existing is not None:
                return existing

            now = _now_iso()
            tx = self._pay_out(
                task_id,
                TransactionKind.RELEASE,
                from_account,
                to_account,
                units,
                now,
                charge_fee=True,
            )
            self._log.record_settlement(task_id, TransactionKind.RELEASE, tx.tx_id, now)

        self._logger.info(
            "Escrow released",
            extra={
                "task_id": task_id,
                "from_account": from_account,
                "to_account": to_account,
                "gross_amount": str(from_units(units)),
                "net_amount": str(tx.amount),
            },
        )
        return tx

    def refund(self, task_id: str, account_id: str, amount: object) -> Transaction:
        """
        Return escrowed funds to the same wallet's available balance. No fee.

        Raises:
            ValidationError: INVALID_AMOUNT.
            FundsError: INSUFFICIENT_ESCROW.
            StateError: ESCROW_ALREADY_SETTLED.
        """
        units = self._require_positive(amount)

        with self._db.transaction():
            existing = self._existing_settlement(task_id, TransactionKind.REFUND)
            if existing is not None:
                return existing

            now = _now_iso()
            tx = self._pay_out(
                task_id,
                TransactionKind.REFUND,
                account_id,
                account_id,
                units,
                now,
                charge_fee=False,
            )
            self._log.record_settlement(task_id, TransactionKind.REFUND, tx.tx_id, now)

        self._logger.info(
            "Escrow refunded",
            extra={"task_id": task_id, "account_id": account_id, "amount": str(tx.amount)},
        )
        return tx

    def split(
        self, task_id: str, from_account: str, to_account: str, ratio: object
    ) -> Transaction:
        """
        Compromise settlement of a task's escrow.

        ``to_account`` receives floor(value * ratio) less the platform fee;
        the remainder is refunded to ``from_account``. Returns the first
        split leg (the worker's share, or the refund when ratio is 0).

        Raises:
            ValidationError: INVALID_RATIO unless 0 <= ratio <= 1.
            StateError: ESCROW_NOT_FOUND, ESCROW_ALREADY_SETTLED.
            FundsError: INSUFFICIENT_ESCROW.
        """
        parsed_ratio = parse_ratio(ratio)

        with self._db.transaction():
            existing = self._existing_settlement(task_id, TransactionKind.SPLIT)
            if existing is not None:
                return existing

            deposit = self._log.find_escrow_deposit(task_id)
            if deposit is None or deposit.from_account != from_account:
                raise StateError(
                    "ESCROW_NOT_FOUND",
                    "No escrow deposit for this task and payer",
                    {"task_id": task_id},
                )

            total = to_units(deposit.amount)
            worker_units = portion(total, parsed_ratio)
            remainder_units = total - worker_units
            now = _now_iso()

            legs: list[Transaction] = []
            if worker_units > 0:
                legs.append(
                    self._pay_out(
                        task_id,
                        TransactionKind.SPLIT,
                        from_account,
                        to_account,
                        worker_units,
                        now,
                        charge_fee=True,
                    )
                )
            if remainder_units > 0:
                legs.append(
                    self._pay_out(
                        task_id,
                        TransactionKind.SPLIT,
                        from_account,
                        from_account,
                        remainder_units,
                        now,
                        charge_fee=False,
                    )
                )
            primary = legs[0]
            self._log.record_settlement(task_id, TransactionKind.SPLIT, primary.tx_id, now)

        self._logger.info(
            "Escrow split",
            extra={
                "task_id": task_id,
                "from_account": from_account,
                "to_account": to_account,
                "ratio": str(parsed_ratio),
                "worker_gross": str(from_units(worker_units)),
                "requester_refund": str(from_units(remainder_units)),
            },
        )
        return primary

    # ------------------------------------------------------------------
    # Reads and audit
    # ------------------------------------------------------------------

    def get_settlement(self, task_id: str) -> tuple[TransactionKind, Transaction] | None:
        return self._log.get_settlement(task_id)

    def list_transactions(self, task_id: str) -> list[Transaction]:
        return self._log.list_for_task(task_id)

    def list_account_transactions(self, account_id: str) -> list[Transaction]:
        self.require_wallet(account_id)
        return self._log.list_for_account(account_id)

    def count_wallets(self) -> int:
        row = self._db.fetchone("SELECT COUNT(*) FROM wallets")
        return int(row[0]) if row is not None else 0

    def total_escrowed(self) -> Decimal:
        """Sum of all escrowed balances."""
        row = self._db.fetchone("SELECT COALESCE(SUM(escrowed), 0) FROM wallets")
        return from_units(int(row[0]) if row is not None else 0)

    def check_conservation(self) -> ConservationReport:
        """
        Platform-wide fund conservation check.

        Sum of every wallet's available + escrowed must equal external
        credits minus withdrawals, and replaying the transaction log must
        reproduce each wallet's stored balances. Read-only; takes no lock
        beyond a single consistent snapshot.
        """
        with self._db.transaction():
            rows = self._db.fetchall("SELECT account_id, available, escrowed FROM wallets")
            credits, withdrawals = self._log.external_totals_units()
            replayed = TransactionLog.replay(self._log.list_all())

        stored = {
            str(row["account_id"]): (int(row["available"]), int(row["escrowed"])) for row in rows
        }
        total_units = sum(available + escrowed for available, escrowed in stored.values())
        external_units = credits - withdrawals

        mismatched = sorted(
            account_id
            for account_id in set(stored) | set(replayed)
            if stored.get(account_id, (0, 0)) != replayed.get(account_id, (0, 0))
        )
        report = ConservationReport(
            ok=total_units == external_units and not mismatched,
            total_balances=from_units(total_units),
            external_net=from_units(external_units),
            mismatched_accounts=mismatched,
            checked_at=_now_iso(),
        )
        if not report.ok:
            self._logger.error("Fund conservation violated", extra=report.to_dict())
        return report
