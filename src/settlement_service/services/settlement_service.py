"""Caller-facing settlement operations."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from settlement_service.core.exceptions import NotFoundError, ValidationError
from settlement_service.services.funds_gateway import RESERVED_REFERENCE_PREFIXES

if TYPE_CHECKING:
    from settlement_service.clients.identity_client import IdentityClient
    from settlement_service.models import Dispute, Task, Transaction, Wallet
    from settlement_service.services.dispute_resolver import DisputeResolver
    from settlement_service.services.funds_gateway import FundsGateway
    from settlement_service.services.ledger import WalletLedger
    from settlement_service.services.task_machine import TaskStateMachine


class SettlementService:
    """
    Single entry point for API layers and admin tooling.

    Checks account identity with the Identity service, then delegates to
    the state machine, resolver, ledger and funds gateway. Every method
    returns the updated entity or raises a typed ServiceError.
    """

    def __init__(
        self,
        ledger: WalletLedger,
        machine: TaskStateMachine,
        resolver: DisputeResolver,
        identity_client: IdentityClient,
        gateway: FundsGateway | None = None,
    ) -> None:
        self._ledger = ledger
        self._machine = machine
        self._resolver = resolver
        self._identity_client = identity_client
        self._gateway = gateway

    async def _require_account(self, account_id: str) -> None:
        if not await self._identity_client.account_exists(account_id):
            raise NotFoundError(
                "ACCOUNT_NOT_FOUND", "Account not found", {"account_id": account_id}
            )

    def _require_gateway(self) -> FundsGateway:
        if self._gateway is None:
            msg = "Funds network is not configured"
            raise RuntimeError(msg)
        return self._gateway

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    async def open_wallet(self, account_id: str) -> Wallet:
        """Open a wallet for a registered account. Idempotent."""
        if self._ledger.get_wallet(account_id) is None:
            await self._require_account(account_id)
        return self._ledger.open_wallet(account_id)

    async def get_wallet_balance(self, account_id: str) -> dict[str, Any]:
        return self._ledger.get_wallet_balance(account_id)

    async def deposit(self, account_id: str, amount: object, reference: str) -> Transaction:
        """Credit a wallet directly (funds already held by the platform)."""
        if reference.startswith(RESERVED_REFERENCE_PREFIXES):
            raise ValidationError(
                "INVALID_REFERENCE",
                "Reference prefix is reserved for external transfers",
                {"reference": reference},
            )
        await self.open_wallet(account_id)
        return self._ledger.deposit(account_id, amount, reference)

    async def fund_wallet(
        self, account_id: str, address: str, amount: object, reference: str
    ) -> Transaction:
        """Pull funds from an external address into a wallet."""
        await self.open_wallet(account_id)
        return await self._require_gateway().fund_wallet(account_id, address, amount, reference)

    async def withdraw(
        self, account_id: str, address: str, amount: object, reference: str
    ) -> Transaction:
        """Pay out available funds to an external address."""
        return await self._require_gateway().withdraw_to_address(
            account_id, address, amount, reference
        )

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    async def post_task(
        self, requester_id: str, value: object, *, task_id: str | None = None
    ) -> Task:
        await self._require_account(requester_id)
        return self._machine.post(requester_id, value, task_id=task_id)

    async def accept_task(self, task_id: str, worker_id: str) -> Task:
        await self._require_account(worker_id)
        return self._machine.accept(task_id, worker_id)

    async def begin_task(self, task_id: str, worker_id: str) -> Task:
        return self._machine.begin(task_id, worker_id)

    async def submit_task(self, task_id: str, worker_id: str) -> Task:
        return self._machine.submit(task_id, worker_id)

    async def review_task(self, task_id: str, requester_id: str) -> Task:
        return self._machine.review(task_id, requester_id)

    async def approve_task(self, task_id: str, requester_id: str) -> Task:
        return self._machine.approve(task_id, requester_id)

    async def cancel_task(self, task_id: str, requester_id: str) -> Task:
        return self._machine.cancel(task_id, requester_id)

    async def file_dispute(self, task_id: str, filer_id: str, reason: str) -> Dispute:
        return self._machine.dispute(task_id, filer_id, reason)

    async def resolve_dispute(
        self,
        task_id: str,
        resolution: str,
        ratio: object = None,
        *,
        resolved_by: str,
        admin_override: bool = False,
    ) -> tuple[Dispute, Task]:
        return self._resolver.resolve_dispute(
            task_id,
            resolution,
            ratio,
            resolved_by=resolved_by,
            admin_override=admin_override,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str) -> Task:
        return self._machine.get_task(task_id)

    async def list_tasks(
        self,
        status: str | None = None,
        requester_id: str | None = None,
        worker_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Task]:
        return self._machine.list_tasks(status, requester_id, worker_id, limit, offset)

    async def get_dispute(self, task_id: str) -> Dispute:
        return self._resolver.get_dispute(task_id)

    async def list_transactions(self, task_id: str) -> list[Transaction]:
        """Every ledger leg recorded for a task, in order."""
        self._machine.get_task(task_id)
        return self._ledger.list_transactions(task_id)

    async def list_account_transactions(self, account_id: str) -> list[Transaction]:
        return self._ledger.list_account_transactions(account_id)
