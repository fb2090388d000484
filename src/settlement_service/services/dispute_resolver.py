"""Dispute arbitration: binding verdicts and escalation of overdue disputes."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from settlement_service.core.exceptions import NotFoundError, StateError, ValidationError
from settlement_service.logging import get_logger
from settlement_service.models import FINAL_RESOLUTIONS, Dispute, DisputeResolution, Task
from settlement_service.services.ledger import parse_ratio

if TYPE_CHECKING:
    from settlement_service.services.database import Database
    from settlement_service.services.task_machine import TaskStateMachine


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


class DisputeResolver:
    """
    Accepts verdicts for open disputes.

    Recording the verdict and settling the task happen in one database
    transaction: the dispute row is moved off ``pending`` with a
    compare-and-set update, then TaskStateMachine.resolve performs the
    ledger settlement. A dispute past its resolution window is escalated
    and can then only be resolved with an admin override.
    """

    def __init__(self, db: Database, machine: TaskStateMachine) -> None:
        self._db = db
        self._machine = machine
        self._disputes = machine.disputes
        self._logger = get_logger(__name__)

    def get_dispute(self, task_id: str) -> Dispute:
        """
        Get the dispute filed against a task.

        Raises:
            NotFoundError: DISPUTE_NOT_FOUND
        """
        dispute = self._disputes.get_dispute(task_id)
        if dispute is None:
            raise NotFoundError("DISPUTE_NOT_FOUND", "Dispute not found", {"task_id": task_id})
        return dispute

    def resolve_dispute(
        self,
        task_id: str,
        resolution: str | DisputeResolution,
        ratio: object = None,
        *,
        resolved_by: str,
        admin_override: bool = False,
    ) -> tuple[Dispute, Task]:
        """
        Record a binding verdict and settle the task.

        Error precedence:
        1. INVALID_RESOLUTION / INVALID_RATIO: bad verdict
        2. NO_OPEN_DISPUTE: no dispute, or escalated without admin override
        3. ALREADY_RESOLVED: verdict previously recorded
        """
        verdict = self._parse_verdict(resolution)
        parsed_ratio = None
        if verdict == DisputeResolution.COMPROMISE:
            parsed_ratio = parse_ratio(ratio)
        elif ratio is not None:
            raise ValidationError(
                "INVALID_RATIO", "Ratio is only accepted for compromise verdicts"
            )
        if not isinstance(resolved_by, str) or not resolved_by.strip():
            raise ValidationError("MISSING_FIELD", "resolved_by must be a non-empty string")

        with self._db.transaction():
            dispute = self._disputes.get_dispute(task_id)
            if dispute is None:
                raise StateError(
                    "NO_OPEN_DISPUTE", "Task has no open dispute", {"task_id": task_id}
                )
            if dispute.resolution in FINAL_RESOLUTIONS:
                raise StateError(
                    "ALREADY_RESOLVED",
                    "Dispute has already been resolved",
                    {"task_id": task_id, "resolution": dispute.resolution.value},
                )
            if dispute.resolution == DisputeResolution.ESCALATED and not admin_override:
                raise StateError(
                    "NO_OPEN_DISPUTE",
                    "Dispute was escalated and requires admin resolution",
                    {"task_id": task_id},
                )

            changed = self._disputes.update_dispute(
                task_id,
                {
                    "resolution": verdict,
                    "worker_ratio": parsed_ratio,
                    "resolved_by": resolved_by,
                    "resolved_at": _now_iso(),
                },
                expected_resolution=dispute.resolution,
            )
            if changed == 0:
                raise StateError(
                    "ALREADY_RESOLVED", "Dispute has already been resolved", {"task_id": task_id}
                )
            task = self._machine.resolve(task_id, verdict, parsed_ratio)
            resolved = self.get_dispute(task_id)

        self._logger.info(
            "Dispute resolved",
            extra={
                "task_id": task_id,
                "resolution": verdict.value,
                "ratio": str(parsed_ratio) if parsed_ratio is not None else None,
                "resolved_by": resolved_by,
                "admin_override": admin_override,
            },
        )
        return resolved, task

    @staticmethod
    def _parse_verdict(resolution: str | DisputeResolution) -> DisputeResolution:
        try:
            verdict = DisputeResolution(resolution)
        except ValueError as exc:
            raise ValidationError(
                "INVALID_RESOLUTION", f"Unknown resolution '{resolution}'"
            ) from exc
        if verdict not in FINAL_RESOLUTIONS:
            raise ValidationError(
                "INVALID_RESOLUTION",
                "Resolution must be worker_favor, requester_favor or compromise",
            )
        return verdict

    def escalate_overdue(self, limit: int = 100) -> list[Dispute]:
        """Escalate pending disputes whose resolution window has closed."""
        now = _now_iso()
        escalated: list[Dispute] = []
        for dispute in self._disputes.list_overdue(now, limit):
            with self._db.transaction():
                changed = self._disputes.update_dispute(
                    dispute.task_id,
                    {"resolution": DisputeResolution.ESCALATED, "escalated_at": now},
                    expected_resolution=DisputeResolution.PENDING,
                )
            if changed == 0:
                self._logger.warning(
                    "Dispute changed before escalation", extra={"task_id": dispute.task_id}
                )
                continue
            self._logger.warning(
                "Dispute escalated for admin resolution",
                extra={"task_id": dispute.task_id, "dispute_deadline": dispute.dispute_deadline},
            )
            escalated.append(self.get_dispute(dispute.task_id))
        return escalated
