"""Task lifecycle transitions and the ledger effects they trigger."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from settlement_service.core.exceptions import (
    ForbiddenError,
    NotFoundError,
    ReconciliationError,
    StateError,
    ValidationError,
)
from settlement_service.logging import get_logger
from settlement_service.models import (
    REVIEWABLE_STATUSES,
    Dispute,
    DisputeResolution,
    Task,
    TaskStatus,
    TransactionKind,
)
from settlement_service.money import parse_amount, to_units
from settlement_service.services.task_store import (
    DisputeStore,
    DuplicateDisputeError,
    DuplicateTaskError,
    TaskStore,
)

if TYPE_CHECKING:
    from settlement_service.config import SettlementConfig
    from settlement_service.services.database import Database
    from settlement_service.services.ledger import WalletLedger

AUTO_RELEASE_ACTOR = "system:auto-release"
RECONCILE_ACTOR = "system:reconcile"

# Settlement kind -> terminal status it implies
_SETTLED_STATUS = {
    TransactionKind.RELEASE: TaskStatus.COMPLETED,
    TransactionKind.SPLIT: TaskStatus.COMPLETED,
    TransactionKind.REFUND: TaskStatus.CANCELLED,
}
_SETTLED_RESOLUTION = {
    TransactionKind.RELEASE: DisputeResolution.WORKER_FAVOR,
    TransactionKind.SPLIT: DisputeResolution.COMPROMISE,
    TransactionKind.REFUND: DisputeResolution.REQUESTER_FAVOR,
}


def _now() -> datetime:
    return datetime.now(UTC)


def _to_iso(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp with a Z suffix."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _require_id(value: object, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("MISSING_FIELD", f"{field} must be a non-empty string")
    return value


class TaskStateMachine:
    """
    Enforces legal task transitions.

    Each transition runs in one database transaction: the task is read,
    checked, the ledger effect is staged, then the status is moved with a
    compare-and-set update. If any step fails nothing is recorded. The
    state machine never touches balances itself; all money movement goes
    through WalletLedger, which joins the same transaction.
    """

    def __init__(
        self,
        db: Database,
        ledger: WalletLedger,
        config: SettlementConfig,
        *,
        max_reason_length: int = 2000,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._config = config
        self._max_reason_length = max_reason_length
        self._tasks = TaskStore(db)
        self._disputes = DisputeStore(db)
        self._logger = get_logger(__name__)

    @property
    def tasks(self) -> TaskStore:
        return self._tasks

    @property
    def disputes(self) -> DisputeStore:
        return self._disputes

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _load(self, task_id: str) -> Task:
        task = self._tasks.get_task(task_id)
        if task is None:
            raise NotFoundError("TASK_NOT_FOUND", "Task not found", {"task_id": task_id})
        return task

    @staticmethod
    def _illegal(task: Task, event: str) -> StateError:
        return StateError(
            "ILLEGAL_TRANSITION",
            f"Cannot {event} task in '{task.status.value}' status",
            {"task_id": task.task_id, "status": task.status.value, "event": event},
        )

    @staticmethod
    def _require_actor(actor_id: str, allowed: str | None, role: str) -> None:
        if actor_id != allowed:
            raise ForbiddenError("FORBIDDEN", f"Only the {role} can perform this action")

    def _move(
        self,
        task: Task,
        event: str,
        target: TaskStatus,
        updates: dict[str, object],
        *,
        require_no_worker: bool = False,
    ) -> Task:
        """Compare-and-set the status; a lost race fails with no effect."""
        changed = self._tasks.update_task(
            task.task_id,
            {"status": target, **updates},
            expected_status=task.status,
            require_no_worker=require_no_worker,
        )
        if changed == 0:
            current = self._load(task.task_id)
            if event == "accept" and current.worker_id is not None:
                raise StateError(
                    "ALREADY_CLAIMED",
                    "Task already has a worker",
                    {"task_id": task.task_id},
                )
            raise self._illegal(current, event)
        return self._load(task.task_id)

    @staticmethod
    def compute_deadline(base_timestamp: str | None, seconds: int) -> str | None:
        """Compute a deadline by adding seconds to a base ISO timestamp."""
        if base_timestamp is None:
            return None
        return _to_iso(parse_timestamp(base_timestamp) + timedelta(seconds=seconds))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def post(self, requester_id: str, value: object, *, task_id: str | None = None) -> Task:
        """
        Create a task and lock its value into the requester's escrow.

        Replaying with the same task_id and terms returns the existing task.

        Raises:
            ValidationError: INVALID_AMOUNT (below minimum), PAYLOAD_MISMATCH.
            FundsError: INSUFFICIENT_FUNDS.
            StateError: WALLET_FROZEN.
            NotFoundError: WALLET_NOT_FOUND.
        """
        _require_id(requester_id, "requester_id")
        amount = parse_amount(value, "value")
        if amount < self._config.min_task_value:
            raise ValidationError(
                "INVALID_AMOUNT",
                f"Task value must be at least {self._config.min_task_value}",
                {"min_task_value": str(self._config.min_task_value)},
            )
        task_id = task_id if task_id is not None else f"task-{uuid.uuid4()}"

        with self._db.transaction():
            existing = self._tasks.get_task(task_id)
            if existing is not None:
                if existing.requester_id != requester_id or existing.value != amount:
                    raise ValidationError(
                        "PAYLOAD_MISMATCH",
                        "Task already exists with different terms",
                        {"task_id": task_id},
                    )
                return existing

            self._ledger.lock_escrow(requester_id, amount, task_id)
            try:
                self._tasks.insert_task(task_id, requester_id, to_units(amount), _to_iso(_now()))
            except DuplicateTaskError as exc:
                raise ValidationError(
                    "PAYLOAD_MISMATCH", str(exc), {"task_id": task_id}
                ) from exc
            task = self._load(task_id)

        self._logger.info(
            "Task posted",
            extra={"task_id": task_id, "requester_id": requester_id, "value": str(amount)},
        )
        return task

    def accept(self, task_id: str, worker_id: str) -> Task:
        """
        Assign a worker to a posted task.

        Raises:
            ValidationError: SELF_ACCEPT.
            StateError: ALREADY_CLAIMED, ILLEGAL_TRANSITION.
        """
        _require_id(worker_id, "worker_id")

        with self._db.transaction():
            task = self._load(task_id)
            if task.worker_id is not None:
                raise StateError(
                    "ALREADY_CLAIMED", "Task already has a worker", {"task_id": task_id}
                )
            if task.status != TaskStatus.POSTED:
                raise self._illegal(task, "accept")
            if worker_id == task.requester_id:
                raise ValidationError(
                    "SELF_ACCEPT", "Requester cannot accept their own task", {"task_id": task_id}
                )
            self._ledger.open_wallet(worker_id)
            task = self._move(
                task,
                "accept",
                TaskStatus.ACCEPTED,
                {"worker_id": worker_id, "accepted_at": _to_iso(_now())},
                require_no_worker=True,
            )

        self._logger.info("Task accepted", extra={"task_id": task_id, "worker_id": worker_id})
        return task

    def begin(self, task_id: str, actor_id: str) -> Task:
        """Worker starts work on an accepted task."""
        with self._db.transaction():
            task = self._load(task_id)
            if task.status != TaskStatus.ACCEPTED:
                raise self._illegal(task, "begin")
            self._require_actor(actor_id, task.worker_id, "assigned worker")
            task = self._move(
                task, "begin", TaskStatus.IN_PROGRESS, {"started_at": _to_iso(_now())}
            )

        self._logger.info("Task started", extra={"task_id": task_id})
        return task

    def submit(self, task_id: str, actor_id: str) -> Task:
        """Worker submits deliverables. Arms auto-release and the dispute window."""
        with self._db.transaction():
            task = self._load(task_id)
            if task.status != TaskStatus.IN_PROGRESS:
                raise self._illegal(task, "submit")
            self._require_actor(actor_id, task.worker_id, "assigned worker")
            submitted_at = _to_iso(_now())
            task = self._move(
                task,
                "submit",
                TaskStatus.SUBMITTED,
                {
                    "submitted_at": submitted_at,
                    "auto_release_deadline": self.compute_deadline(
                        submitted_at, self._config.escrow_release_delay_seconds
                    ),
                    "dispute_deadline": self.compute_deadline(
                        submitted_at, self._config.dispute_resolution_window_seconds
                    ),
                },
            )

        self._logger.info(
            "Task submitted",
            extra={"task_id": task_id, "auto_release_deadline": task.auto_release_deadline},
        )
        return task

    def review(self, task_id: str, actor_id: str) -> Task:
        """Requester opens review. Auto-release stays armed."""
        with self._db.transaction():
            task = self._load(task_id)
            if task.status != TaskStatus.SUBMITTED:
                raise self._illegal(task, "review")
            self._require_actor(actor_id, task.requester_id, "requester")
            task = self._move(
                task, "review", TaskStatus.UNDER_REVIEW, {"review_started_at": _to_iso(_now())}
            )

        self._logger.info("Task under review", extra={"task_id": task_id})
        return task

    def _release_to_worker(self, task: Task, approved_by: str) -> Task:
        """Release escrow and complete. Expects an open transaction."""
        if task.worker_id is None:
            raise ReconciliationError(
                "Reviewable task has no worker", {"task_id": task.task_id}
            )
        self._ledger.release(task.task_id, task.requester_id, task.worker_id, task.value)
        return self._move(
            task,
            "approve",
            TaskStatus.COMPLETED,
            {"completed_at": _to_iso(_now()), "approved_by": approved_by},
        )

    def approve(self, task_id: str, actor_id: str) -> Task:
        """
        Requester approves; escrow is released to the worker.

        Raises:
            StateError: ILLEGAL_TRANSITION unless submitted or under review.
            ForbiddenError: FORBIDDEN unless the actor is the requester.
        """
        with self._db.transaction():
            task = self._load(task_id)
            if task.status not in REVIEWABLE_STATUSES:
                raise self._illegal(task, "approve")
            self._require_actor(actor_id, task.requester_id, "requester")
            task = self._release_to_worker(task, actor_id)

        self._logger.info(
            "Task approved",
            extra={"task_id": task_id, "approved_by": actor_id, "worker_id": task.worker_id},
        )
        return task

    def auto_release(self, task_id: str) -> Task | None:
        """
        Approve on the requester's behalf once the auto-release deadline passes.

        Returns None without side effects when the task is not due, which
        makes repeated checks harmless.
        """
        with self._db.transaction():
            task = self._load(task_id)
            if task.status not in REVIEWABLE_STATUSES or task.auto_release_deadline is None:
                return None
            if _now() < parse_timestamp(task.auto_release_deadline):
                return None
            if self._disputes.get_dispute(task_id) is not None:
                return None
            task = self._release_to_worker(task, AUTO_RELEASE_ACTOR)

        self._logger.info(
            "Task auto-released",
            extra={"task_id": task_id, "worker_id": task.worker_id, "value": str(task.value)},
        )
        return task

    def dispute(self, task_id: str, filer_id: str, reason: str) -> Dispute:
        """
        Contest a submitted task. Disarms auto-release and opens a dispute.

        A task whose auto-release deadline has already passed is released
        first, so filing then fails as an illegal transition.

        Raises:
            ValidationError: INVALID_REASON.
            StateError: ILLEGAL_TRANSITION.
            ForbiddenError: FORBIDDEN unless filed by requester or worker.
        """
        _require_id(filer_id, "filer_id")
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("INVALID_REASON", "reason must be a non-empty string")
        if len(reason) > self._max_reason_length:
            raise ValidationError(
                "INVALID_REASON",
                f"reason must be at most {self._max_reason_length} characters",
            )

        self.auto_release(task_id)

        with self._db.transaction():
            task = self._load(task_id)
            if task.status not in REVIEWABLE_STATUSES:
                raise self._illegal(task, "dispute")
            if filer_id not in (task.requester_id, task.worker_id):
                raise ForbiddenError(
                    "FORBIDDEN", "Only the requester or worker can file a dispute"
                )
            filed_at = _to_iso(_now())
            deadline = task.dispute_deadline or self.compute_deadline(
                filed_at, self._config.dispute_resolution_window_seconds
            )
            self._move(
                task, "dispute", TaskStatus.DISPUTED, {"auto_release_deadline": None}
            )
            try:
                self._disputes.insert_dispute(
                    f"dispute-{uuid.uuid4()}", task_id, filer_id, reason, filed_at, str(deadline)
                )
            except DuplicateDisputeError as exc:
                raise StateError(
                    "ILLEGAL_TRANSITION", str(exc), {"task_id": task_id}
                ) from exc
            dispute = self._disputes.get_dispute(task_id)

        if dispute is None:
            msg = f"Dispute for task {task_id} not found after insert"
            raise RuntimeError(msg)
        self._logger.info(
            "Dispute filed",
            extra={"task_id": task_id, "filed_by": filer_id, "dispute_deadline": deadline},
        )
        return dispute

    def cancel(self, task_id: str, actor_id: str) -> Task:
        """Requester withdraws a posted task; escrow is refunded in full."""
        with self._db.transaction():
            task = self._load(task_id)
            if task.status != TaskStatus.POSTED:
                raise self._illegal(task, "cancel")
            self._require_actor(actor_id, task.requester_id, "requester")
            self._ledger.refund(task_id, task.requester_id, task.value)
            task = self._move(
                task, "cancel", TaskStatus.CANCELLED, {"cancelled_at": _to_iso(_now())}
            )

        self._logger.info("Task cancelled", extra={"task_id": task_id})
        return task

    def resolve(
        self, task_id: str, resolution: DisputeResolution, ratio: Decimal | None = None
    ) -> Task:
        """
        Settle a disputed task according to a verdict.

        Worker favor releases, requester favor refunds, compromise splits.
        Joins the caller's transaction when one is open.
        """
        with self._db.transaction():
            task = self._load(task_id)
            if task.status != TaskStatus.DISPUTED:
                raise self._illegal(task, "resolve")
            if task.worker_id is None:
                raise ReconciliationError("Disputed task has no worker", {"task_id": task_id})
            now = _to_iso(_now())

            if resolution == DisputeResolution.WORKER_FAVOR:
                self._ledger.release(task_id, task.requester_id, task.worker_id, task.value)
                target, updates = TaskStatus.COMPLETED, {"completed_at": now}
            elif resolution == DisputeResolution.REQUESTER_FAVOR:
                self._ledger.refund(task_id, task.requester_id, task.value)
                target, updates = TaskStatus.CANCELLED, {"cancelled_at": now}
            elif resolution == DisputeResolution.COMPROMISE:
                if ratio is None:
                    raise ValidationError("INVALID_RATIO", "Compromise requires a ratio")
                self._ledger.split(task_id, task.requester_id, task.worker_id, ratio)
                target, updates = TaskStatus.COMPLETED, {"completed_at": now}
            else:
                raise ValidationError(
                    "INVALID_RESOLUTION",
                    f"'{resolution.value}' is not a settlement verdict",
                )
            task = self._move(task, "resolve", target, updates)

        self._logger.info(
            "Disputed task settled",
            extra={"task_id": task_id, "resolution": resolution.value, "status": task.status},
        )
        return task

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def reconcile_task(self, task_id: str) -> Task | None:
        """
        Bring a task in line with its logged settlement.

        The transaction log is authoritative: a settled task that is not yet
        terminal is moved to the status its settlement implies. Returns None
        when there is nothing to do.

        Raises:
            ReconciliationError: the logged settlement contradicts the task.
        """
        with self._db.transaction():
            task = self._load(task_id)
            settled = self._ledger.get_settlement(task_id)
            if settled is None or task.is_terminal:
                return None
            kind, tx = settled
            target = _SETTLED_STATUS[kind]

            if kind != TransactionKind.REFUND and (
                task.worker_id is None
                or (kind == TransactionKind.RELEASE and tx.to_account != task.worker_id)
            ):
                details = {"task_id": task_id, "status": task.status.value, "kind": kind.value}
                self._logger.critical("Settlement contradicts task state", extra=details)
                raise ReconciliationError("Settlement contradicts task state", details)

            now = _to_iso(_now())
            column = "completed_at" if target == TaskStatus.COMPLETED else "cancelled_at"
            self._tasks.update_task(
                task_id,
                {"status": target, column: now, "auto_release_deadline": None},
                expected_status=task.status,
            )
            if task.status == TaskStatus.DISPUTED:
                self._disputes.update_dispute(
                    task_id,
                    {
                        "resolution": _SETTLED_RESOLUTION[kind],
                        "resolved_by": RECONCILE_ACTOR,
                        "resolved_at": now,
                    },
                    expected_resolution=None,
                )
            task = self._load(task_id)

        self._logger.warning(
            "Task reconciled from transaction log",
            extra={"task_id": task_id, "kind": kind.value, "status": task.status.value},
        )
        return task

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        """
        Get a single task by ID.

        Raises:
            NotFoundError: TASK_NOT_FOUND
        """
        return self._load(task_id)

    def list_tasks(
        self,
        status: str | None = None,
        requester_id: str | None = None,
        worker_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Task]:
        """List tasks with optional filters. All filters use AND logic."""
        parsed_status: TaskStatus | None = None
        if status is not None:
            try:
                parsed_status = TaskStatus(status)
            except ValueError as exc:
                raise ValidationError(
                    "INVALID_STATUS", f"Unknown task status '{status}'"
                ) from exc

        page_size = self._config.default_page_size if limit is None else limit
        if isinstance(page_size, bool) or not 1 <= page_size <= self._config.max_page_size:
            raise ValidationError(
                "INVALID_LIMIT",
                f"limit must be between 1 and {self._config.max_page_size}",
            )
        if isinstance(offset, bool) or offset < 0:
            raise ValidationError("INVALID_OFFSET", "offset must be non-negative")

        return self._tasks.list_tasks(parsed_status, requester_id, worker_id, page_size, offset)

    def list_due_for_release(self, limit: int) -> list[Task]:
        return self._tasks.list_due_for_release(_to_iso(_now()), limit)

    def count_tasks_by_status(self) -> dict[str, int]:
        return self._tasks.count_tasks_by_status()
