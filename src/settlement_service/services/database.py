"""SQLite database shared by the ledger, task store and dispute store."""

from __future__ import annotations

import contextlib
import sqlite3
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator

_SCHEMA = """
CREATE TABLE IF NOT EXISTS wallets (
    account_id TEXT PRIMARY KEY,
    available INTEGER NOT NULL DEFAULT 0 CHECK (available >= 0),
    escrowed INTEGER NOT NULL DEFAULT 0 CHECK (escrowed >= 0),
    frozen INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS transactions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    tx_id TEXT NOT NULL UNIQUE,
    task_id TEXT,
    kind TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    from_account TEXT REFERENCES wallets(account_id),
    to_account TEXT REFERENCES wallets(account_id),
    reference TEXT,
    timestamp TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_credit_reference
    ON transactions(to_account, reference)
    WHERE kind = 'credit';

CREATE UNIQUE INDEX IF NOT EXISTS ux_withdrawal_reference
    ON transactions(from_account, reference)
    WHERE kind = 'withdrawal';

CREATE UNIQUE INDEX IF NOT EXISTS ux_escrow_deposit_task
    ON transactions(task_id)
    WHERE kind = 'deposit';

CREATE INDEX IF NOT EXISTS ix_transactions_task
    ON transactions(task_id, seq);

CREATE TABLE IF NOT EXISTS settlements (
    task_id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    tx_id TEXT NOT NULL REFERENCES transactions(tx_id),
    settled_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    requester_id TEXT NOT NULL,
    worker_id TEXT,
    value INTEGER NOT NULL CHECK (value > 0),
    status TEXT NOT NULL DEFAULT 'posted',
    created_at TEXT NOT NULL,
    accepted_at TEXT,
    started_at TEXT,
    submitted_at TEXT,
    review_started_at TEXT,
    auto_release_deadline TEXT,
    dispute_deadline TEXT,
    completed_at TEXT,
    cancelled_at TEXT,
    approved_by TEXT
);

CREATE INDEX IF NOT EXISTS ix_tasks_status_deadline
    ON tasks(status, auto_release_deadline);

CREATE TABLE IF NOT EXISTS disputes (
    dispute_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL UNIQUE REFERENCES tasks(task_id),
    filed_by TEXT NOT NULL,
    reason TEXT NOT NULL,
    filed_at TEXT NOT NULL,
    dispute_deadline TEXT NOT NULL,
    resolution TEXT NOT NULL DEFAULT 'pending',
    worker_ratio TEXT,
    resolved_by TEXT,
    resolved_at TEXT,
    escalated_at TEXT
);

CREATE TABLE IF NOT EXISTS external_transfers (
    reference TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES wallets(account_id),
    direction TEXT NOT NULL,
    address TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    status TEXT NOT NULL DEFAULT 'pending',
    network_tx_id TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    confirmed_at TEXT
);
"""


class Database:
    """
    Single SQLite connection with a re-entrant transactional unit.

    The outermost ``transaction()`` issues BEGIN IMMEDIATE and commits on
    exit. Nested calls open a SAVEPOINT, so a ledger operation invoked
    from inside a task transition joins the transition's transaction and
    both commit or roll back together.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        self._depth = 0
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(_SCHEMA)

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open (or join) a write transaction."""
        with self._lock:
            savepoint = f"sp_{self._depth}"
            if self._depth == 0:
                self._db.execute("BEGIN IMMEDIATE")
            else:
                self._db.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self._db
            except BaseException:
                self._depth -= 1
                with contextlib.suppress(sqlite3.Error):
                    if self._depth == 0:
                        self._db.execute("ROLLBACK")
                    else:
                        self._db.execute(f"ROLLBACK TO {savepoint}")
                        self._db.execute(f"RELEASE {savepoint}")
                raise
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._db.execute("COMMIT")
                except sqlite3.Error:
                    with contextlib.suppress(sqlite3.Error):
                        self._db.execute("ROLLBACK")
                    raise
            else:
                self._db.execute(f"RELEASE {savepoint}")

    def execute(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._db.execute(sql, params)

    def fetchone(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            row: sqlite3.Row | None = self._db.execute(sql, params).fetchone()
        return row

    def fetchall(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return list(self._db.execute(sql, params).fetchall())

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
