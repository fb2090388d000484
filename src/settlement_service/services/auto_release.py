"""Poll-based auto-release of submitted tasks and escalation of overdue disputes."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from settlement_service.core.exceptions import ReconciliationError, ServiceError
from settlement_service.logging import get_logger

if TYPE_CHECKING:
    from settlement_service.services.dispute_resolver import DisputeResolver
    from settlement_service.services.funds_gateway import FundsGateway
    from settlement_service.services.ledger import ConservationReport, WalletLedger
    from settlement_service.services.task_machine import TaskStateMachine


@dataclass
class TickResult:
    """What one scheduler pass did."""

    released: list[str] = field(default_factory=list)
    escalated: list[str] = field(default_factory=list)
    reconciled: list[str] = field(default_factory=list)
    # Tasks whose ledger settlement contradicts their state
    unreconciled: list[str] = field(default_factory=list)
    transfers_completed: int = 0
    conservation: ConservationReport | None = None


class AutoReleaseScheduler:
    """
    Background loop driven entirely by persisted deadlines.

    There are no in-memory timers: every tick scans tasks still in
    ``submitted``/``under_review`` whose auto-release deadline has passed,
    so a restart simply picks up where the last process left off. Each
    check is idempotent; a task settled manually in the meantime is
    skipped.
    """

    def __init__(
        self,
        machine: TaskStateMachine,
        resolver: DisputeResolver,
        ledger: WalletLedger,
        gateway: FundsGateway | None,
        *,
        poll_interval_seconds: float,
        batch_size: int,
    ) -> None:
        self._machine = machine
        self._resolver = resolver
        self._ledger = ledger
        self._gateway = gateway
        self._poll_interval_seconds = poll_interval_seconds
        self._batch_size = batch_size
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._ticks = 0
        self._last_conservation: ConservationReport | None = None
        self._logger = get_logger(__name__)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def ticks(self) -> int:
        return self._ticks

    @property
    def last_conservation(self) -> ConservationReport | None:
        return self._last_conservation

    # ------------------------------------------------------------------
    # One pass
    # ------------------------------------------------------------------

    async def run_once(self) -> TickResult:
        """Run every periodic check once."""
        result = TickResult()

        for task in self._machine.list_due_for_release(self._batch_size):
            try:
                released = self._machine.auto_release(task.task_id)
            except ReconciliationError as exc:
                self._reconciliation_required(task.task_id, exc, result)
                continue
            except ServiceError as exc:
                self._logger.warning(
                    "Auto-release skipped",
                    extra={"task_id": task.task_id, "error": exc.error},
                )
                continue
            if released is not None:
                result.released.append(task.task_id)

        result.escalated = [
            dispute.task_id for dispute in self._resolver.escalate_overdue(self._batch_size)
        ]

        for task_id in self._ledger.transaction_log.list_unreconciled_task_ids():
            if task_id in result.unreconciled:
                continue
            try:
                reconciled = self._machine.reconcile_task(task_id)
            except ReconciliationError as exc:
                self._reconciliation_required(task_id, exc, result)
                continue
            if reconciled is not None:
                result.reconciled.append(task_id)

        if self._gateway is not None:
            result.transfers_completed = await self._gateway.retry_pending(self._batch_size)

        result.conservation = self._ledger.check_conservation()
        self._last_conservation = result.conservation
        self._ticks += 1

        if result.released or result.escalated or result.reconciled or result.unreconciled:
            self._logger.info(
                "Scheduler tick",
                extra={
                    "released": len(result.released),
                    "escalated": len(result.escalated),
                    "reconciled": len(result.reconciled),
                    "unreconciled": len(result.unreconciled),
                    "transfers_completed": result.transfers_completed,
                },
            )
        return result

    def _reconciliation_required(
        self, task_id: str, exc: ReconciliationError, result: TickResult
    ) -> None:
        if task_id not in result.unreconciled:
            result.unreconciled.append(task_id)
        self._logger.critical(
            "Reconciliation required", extra={"task_id": task_id, "details": exc.details}
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run until stopped. The first tick runs immediately."""
        self._running = True
        self._logger.info(
            "Auto-release scheduler starting",
            extra={"poll_interval_seconds": self._poll_interval_seconds},
        )
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                self._logger.info("Auto-release scheduler cancelled, shutting down")
                self._running = False
                raise
            except Exception:
                self._logger.exception("Unhandled error in scheduler tick")
            await asyncio.sleep(self._poll_interval_seconds)

    def start(self) -> None:
        """Start the loop as a background task on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Stop the loop and wait for it to exit."""
        self._running = False
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        self._logger.info("Auto-release scheduler stopped", extra={"ticks": self._ticks})
