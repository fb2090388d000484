"""SQLite-backed task and dispute storage."""

from __future__ import annotations

import sqlite3
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from settlement_service.models import Dispute, DisputeResolution, Task, TaskStatus
from settlement_service.money import from_units

if TYPE_CHECKING:
    from settlement_service.services.database import Database


class DuplicateTaskError(Exception):
    """Raised when attempting to insert a task with a duplicate task_id."""


class DuplicateDisputeError(Exception):
    """Raised when a second dispute is filed for the same task."""


class TaskStore:
    """Task rows in the shared settlement database."""

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "requester_id",
        "worker_id",
        "value",
        "status",
        "created_at",
        "accepted_at",
        "started_at",
        "submitted_at",
        "review_started_at",
        "auto_release_deadline",
        "dispute_deadline",
        "completed_at",
        "cancelled_at",
        "approved_by",
    )
    _TASK_COLUMNS_SQL = (
        "task_id, requester_id, worker_id, value, status, created_at, accepted_at, "
        "started_at, submitted_at, review_started_at, auto_release_deadline, "
        "dispute_deadline, completed_at, cancelled_at, approved_by"
    )

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            task_id=str(row["task_id"]),
            requester_id=str(row["requester_id"]),
            worker_id=row["worker_id"],
            value=from_units(int(row["value"])),
            status=TaskStatus(row["status"]),
            created_at=str(row["created_at"]),
            accepted_at=row["accepted_at"],
            started_at=row["started_at"],
            submitted_at=row["submitted_at"],
            review_started_at=row["review_started_at"],
            auto_release_deadline=row["auto_release_deadline"],
            dispute_deadline=row["dispute_deadline"],
            completed_at=row["completed_at"],
            cancelled_at=row["cancelled_at"],
            approved_by=row["approved_by"],
        )

    def insert_task(
        self, task_id: str, requester_id: str, value_units: int, created_at: str
    ) -> None:
        """Insert a new task row in ``posted`` status."""
        try:
            self._db.execute(
                "INSERT INTO tasks (task_id, requester_id, value, status, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (task_id, requester_id, value_units, TaskStatus.POSTED.value, created_at),
            )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateTaskError(
                    f"A task with task_id={task_id} already exists"
                ) from exc
            raise

    def get_task(self, task_id: str) -> Task | None:
        """Fetch a task by ID."""
        row = self._db.fetchone(
            f"SELECT {self._TASK_COLUMNS_SQL} FROM tasks WHERE task_id = ?",  # nosec B608
            (task_id,),
        )
        return self._row_to_task(row) if row is not None else None

    def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_status: TaskStatus | None,
        require_no_worker: bool = False,
    ) -> int:
        """Update task columns and return the number of affected rows."""
        if len(updates) == 0:
            return 0

        if any(column not in self._TASK_COLUMNS for column in updates):
            msg = "Attempted to update unknown task column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = [
            value.value if isinstance(value, TaskStatus) else value for value in updates.values()
        ]
        query = "UPDATE tasks SET " + set_clause + " WHERE task_id = ?"  # nosec B608
        params.append(task_id)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status.value)
        if require_no_worker:
            query += " AND worker_id IS NULL"

        cursor = self._db.execute(query, params)
        return int(cursor.rowcount)

    def list_tasks(
        self,
        status: TaskStatus | None,
        requester_id: str | None,
        worker_id: str | None,
        limit: int,
        offset: int,
    ) -> list[Task]:
        """List tasks with optional filters, newest first."""
        query = f"SELECT {self._TASK_COLUMNS_SQL} FROM tasks"  # nosec B608
        clauses: list[str] = []
        params: list[object] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if requester_id is not None:
            clauses.append("requester_id = ?")
            params.append(requester_id)
        if worker_id is not None:
            clauses.append("worker_id = ?")
            params.append(worker_id)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC, task_id LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        return [self._row_to_task(row) for row in self._db.fetchall(query, params)]

    def list_due_for_release(self, now: str, limit: int) -> list[Task]:
        """Reviewable tasks past their auto-release deadline with no dispute filed."""
        rows = self._db.fetchall(
            f"SELECT {self._TASK_COLUMNS_SQL} FROM tasks "  # nosec B608
            "WHERE status IN (?, ?) AND auto_release_deadline IS NOT NULL "
            "AND auto_release_deadline <= ? "
            "AND NOT EXISTS (SELECT 1 FROM disputes d WHERE d.task_id = tasks.task_id) "
            "ORDER BY auto_release_deadline LIMIT ?",
            (TaskStatus.SUBMITTED.value, TaskStatus.UNDER_REVIEW.value, now, limit),
        )
        return [self._row_to_task(row) for row in rows]

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        rows = self._db.fetchall("SELECT status, COUNT(*) FROM tasks GROUP BY status")
        counts = {status.value: 0 for status in TaskStatus}
        for row in rows:
            counts[str(row[0])] = int(row[1])
        return counts


class DisputeStore:
    """Dispute rows in the shared settlement database. One per task."""

    _DISPUTE_COLUMNS: tuple[str, ...] = (
        "dispute_id",
        "task_id",
        "filed_by",
        "reason",
        "filed_at",
        "dispute_deadline",
        "resolution",
        "worker_ratio",
        "resolved_by",
        "resolved_at",
        "escalated_at",
    )
    _DISPUTE_COLUMNS_SQL = (
        "dispute_id, task_id, filed_by, reason, filed_at, dispute_deadline, resolution, "
        "worker_ratio, resolved_by, resolved_at, escalated_at"
    )

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def _row_to_dispute(row: sqlite3.Row) -> Dispute:
        ratio = row["worker_ratio"]
        return Dispute(
            dispute_id=str(row["dispute_id"]),
            task_id=str(row["task_id"]),
            filed_by=str(row["filed_by"]),
            reason=str(row["reason"]),
            filed_at=str(row["filed_at"]),
            dispute_deadline=str(row["dispute_deadline"]),
            resolution=DisputeResolution(row["resolution"]),
            worker_ratio=Decimal(ratio) if ratio is not None else None,
            resolved_by=row["resolved_by"],
            resolved_at=row["resolved_at"],
            escalated_at=row["escalated_at"],
        )

    def insert_dispute(
        self,
        dispute_id: str,
        task_id: str,
        filed_by: str,
        reason: str,
        filed_at: str,
        dispute_deadline: str,
    ) -> None:
        """Insert a pending dispute."""
        try:
            self._db.execute(
                "INSERT INTO disputes "
                "(dispute_id, task_id, filed_by, reason, filed_at, dispute_deadline, resolution) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    dispute_id,
                    task_id,
                    filed_by,
                    reason,
                    filed_at,
                    dispute_deadline,
                    DisputeResolution.PENDING.value,
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateDisputeError(
                    f"A dispute for task_id={task_id} already exists"
                ) from exc
            raise

    def get_dispute(self, task_id: str) -> Dispute | None:
        """Fetch the dispute filed against a task."""
        row = self._db.fetchone(
            f"SELECT {self._DISPUTE_COLUMNS_SQL} FROM disputes WHERE task_id = ?",  # nosec B608
            (task_id,),
        )
        return self._row_to_dispute(row) if row is not None else None

    def update_dispute(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_resolution: DisputeResolution | None,
    ) -> int:
        """Update dispute columns and return the number of affected rows."""
        if len(updates) == 0:
            return 0

        if any(column not in self._DISPUTE_COLUMNS for column in updates):
            msg = "Attempted to update unknown dispute column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = []
        for value in updates.values():
            if isinstance(value, DisputeResolution):
                params.append(value.value)
            elif isinstance(value, Decimal):
                params.append(str(value))
            else:
                params.append(value)
        query = "UPDATE disputes SET " + set_clause + " WHERE task_id = ?"  # nosec B608
        params.append(task_id)
        if expected_resolution is not None:
            query += " AND resolution = ?"
            params.append(expected_resolution.value)

        cursor = self._db.execute(query, params)
        return int(cursor.rowcount)

    def list_overdue(self, now: str, limit: int) -> list[Dispute]:
        """Pending disputes whose resolution window has closed."""
        rows = self._db.fetchall(
            f"SELECT {self._DISPUTE_COLUMNS_SQL} FROM disputes "  # nosec B608
            "WHERE resolution = ? AND dispute_deadline <= ? "
            "ORDER BY dispute_deadline LIMIT ?",
            (DisputeResolution.PENDING.value, now, limit),
        )
        return [self._row_to_dispute(row) for row in rows]

    def count_open(self) -> int:
        """Disputes that still need a verdict (pending or escalated)."""
        row = self._db.fetchone(
            "SELECT COUNT(*) FROM disputes WHERE resolution IN (?, ?)",
            (DisputeResolution.PENDING.value, DisputeResolution.ESCALATED.value),
        )
        return int(row[0]) if row is not None else 0
