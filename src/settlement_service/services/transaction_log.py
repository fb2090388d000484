"""Append-only record of every ledger mutation."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from settlement_service.models import ESCROW_OUTFLOW_KINDS, Transaction, TransactionKind
from settlement_service.money import from_units, to_units

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Iterable

    from settlement_service.services.database import Database

_TX_COLUMNS_SQL = (
    "seq, tx_id, task_id, kind, amount, from_account, to_account, reference, timestamp"
)


class TransactionLog:
    """
    Append-only transaction legs plus the one-per-task settlement record.

    Writes are only legal inside an open ``Database.transaction()`` so that
    each leg commits together with the balance change it describes. Reads
    are shared.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def _new_tx_id() -> str:
        return f"tx-{uuid.uuid4()}"

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            tx_id=str(row["tx_id"]),
            seq=int(row["seq"]),
            task_id=row["task_id"],
            kind=TransactionKind(row["kind"]),
            amount=from_units(int(row["amount"])),
            from_account=row["from_account"],
            to_account=row["to_account"],
            reference=row["reference"],
            timestamp=str(row["timestamp"]),
        )

    def append(
        self,
        kind: TransactionKind,
        amount_units: int,
        *,
        task_id: str | None,
        from_account: str | None,
        to_account: str | None,
        reference: str | None,
        timestamp: str,
    ) -> Transaction:
        """Append one leg. Must run inside an open transaction."""
        if not self._db.in_transaction:
            msg = "TransactionLog.append requires an open transaction"
            raise RuntimeError(msg)

        tx_id = self._new_tx_id()
        cursor = self._db.execute(
            "INSERT INTO transactions "
            "(tx_id, task_id, kind, amount, from_account, to_account, reference, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                tx_id,
                task_id,
                kind.value,
                amount_units,
                from_account,
                to_account,
                reference,
                timestamp,
            ),
        )
        return Transaction(
            tx_id=tx_id,
            seq=int(cursor.lastrowid or 0),
            task_id=task_id,
            kind=kind,
            amount=from_units(amount_units),
            from_account=from_account,
            to_account=to_account,
            reference=reference,
            timestamp=timestamp,
        )

    def get(self, tx_id: str) -> Transaction | None:
        row = self._db.fetchone(
            f"SELECT {_TX_COLUMNS_SQL} FROM transactions WHERE tx_id = ?",  # nosec B608
            (tx_id,),
        )
        return self._row_to_transaction(row) if row is not None else None

    def find_escrow_deposit(self, task_id: str) -> Transaction | None:
        """The escrow deposit made when the task was posted."""
        row = self._db.fetchone(
            f"SELECT {_TX_COLUMNS_SQL} FROM transactions "  # nosec B608
            "WHERE task_id = ? AND kind = 'deposit'",
            (task_id,),
        )
        return self._row_to_transaction(row) if row is not None else None

    def find_by_reference(
        self, kind: TransactionKind, account_id: str, reference: str
    ) -> Transaction | None:
        """Look up a credit (by recipient) or withdrawal (by payer) by its reference."""
        account_column = "to_account" if kind == TransactionKind.CREDIT else "from_account"
        row = self._db.fetchone(
            f"SELECT {_TX_COLUMNS_SQL} FROM transactions "  # nosec B608
            f"WHERE kind = ? AND {account_column} = ? AND reference = ?",
            (kind.value, account_id, reference),
        )
        return self._row_to_transaction(row) if row is not None else None

    def list_for_task(self, task_id: str) -> list[Transaction]:
        """All legs for a task, in append order."""
        rows = self._db.fetchall(
            f"SELECT {_TX_COLUMNS_SQL} FROM transactions "  # nosec B608
            "WHERE task_id = ? ORDER BY seq",
            (task_id,),
        )
        return [self._row_to_transaction(row) for row in rows]

    def list_for_account(self, account_id: str) -> list[Transaction]:
        """All legs touching an account, in append order."""
        rows = self._db.fetchall(
            f"SELECT {_TX_COLUMNS_SQL} FROM transactions "  # nosec B608
            "WHERE from_account = ? OR to_account = ? ORDER BY seq",
            (account_id, account_id),
        )
        return [self._row_to_transaction(row) for row in rows]

    def list_all(self) -> list[Transaction]:
        rows = self._db.fetchall(
            f"SELECT {_TX_COLUMNS_SQL} FROM transactions ORDER BY seq"  # nosec B608
        )
        return [self._row_to_transaction(row) for row in rows]

    # ------------------------------------------------------------------
    # Settlement records
    # ------------------------------------------------------------------

    def record_settlement(
        self, task_id: str, kind: TransactionKind, tx_id: str, settled_at: str
    ) -> None:
        """Mark a task's escrow as settled. The primary key forbids a second record."""
        if not self._db.in_transaction:
            msg = "TransactionLog.record_settlement requires an open transaction"
            raise RuntimeError(msg)
        self._db.execute(
            "INSERT INTO settlements (task_id, kind, tx_id, settled_at) VALUES (?, ?, ?, ?)",
            (task_id, kind.value, tx_id, settled_at),
        )

    def get_settlement(self, task_id: str) -> tuple[TransactionKind, Transaction] | None:
        """Return the settlement kind and its primary transaction, if settled."""
        row = self._db.fetchone(
            "SELECT kind, tx_id FROM settlements WHERE task_id = ?",
            (task_id,),
        )
        if row is None:
            return None
        tx = self.get(str(row["tx_id"]))
        if tx is None:
            msg = f"Settlement for task {task_id} references missing transaction"
            raise RuntimeError(msg)
        return TransactionKind(row["kind"]), tx

    def list_unreconciled_task_ids(self) -> list[str]:
        """Tasks whose settlement is logged but whose status is not yet terminal."""
        rows = self._db.fetchall(
            "SELECT s.task_id FROM settlements s JOIN tasks t ON t.task_id = s.task_id "
            "WHERE t.status NOT IN ('completed', 'cancelled') ORDER BY s.settled_at",
        )
        return [str(row["task_id"]) for row in rows]

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def external_totals_units(self) -> tuple[int, int]:
        """Sum of external credits and withdrawals, in minor units."""
        row = self._db.fetchone(
            "SELECT "
            "COALESCE(SUM(CASE WHEN kind = 'credit' THEN amount END), 0), "
            "COALESCE(SUM(CASE WHEN kind = 'withdrawal' THEN amount END), 0) "
            "FROM transactions"
        )
        if row is None:
            return 0, 0
        return int(row[0]), int(row[1])

    @staticmethod
    def replay(transactions: Iterable[Transaction]) -> dict[str, tuple[int, int]]:
        """
        Rebuild (available, escrowed) minor-unit balances from transaction legs.

        Replaying the full log must reproduce every wallet's stored balance.
        """
        balances: dict[str, list[int]] = {}

        def account(account_id: str | None) -> list[int]:
            if account_id is None:
                msg = "Transaction leg is missing an account"
                raise ValueError(msg)
            return balances.setdefault(account_id, [0, 0])

        for tx in transactions:
            units = to_units(tx.amount)
            if tx.kind == TransactionKind.CREDIT:
                account(tx.to_account)[0] += units
            elif tx.kind == TransactionKind.WITHDRAWAL:
                account(tx.from_account)[0] -= units
            elif tx.kind == TransactionKind.DEPOSIT:
                payer = account(tx.from_account)
                payer[0] -= units
                payer[1] += units
            elif tx.kind in ESCROW_OUTFLOW_KINDS:
                account(tx.from_account)[1] -= units
                account(tx.to_account)[0] += units

        return {key: (value[0], value[1]) for key, value in balances.items()}
