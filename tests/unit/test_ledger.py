"""Unit tests for WalletLedger balances, escrow, settlement and conservation."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from settlement_service.core.exceptions import (
    FundsError,
    NotFoundError,
    ServiceError,
    StateError,
    ValidationError,
)
from settlement_service.models import TransactionKind
from tests.helpers import FEE_ACCOUNT, OTHER, REQUESTER, WORKER, build_stack, fund, make_config

pytestmark = pytest.mark.unit


def _locked(stack, task_id: str = "task-1", amount: str = "10"):
    stack.ledger.open_wallet(WORKER)
    return stack.ledger.lock_escrow(REQUESTER, amount, task_id)


# ---------------------------------------------------------------------------
# Wallets and external funds
# ---------------------------------------------------------------------------


def test_open_wallet_is_idempotent(stack):
    first = stack.ledger.open_wallet(OTHER)
    second = stack.ledger.open_wallet(OTHER)

    assert first == second
    assert first.available == Decimal("0")
    assert first.escrowed == Decimal("0")


def test_fee_wallet_is_opened_at_construction(stack):
    assert stack.ledger.get_wallet(FEE_ACCOUNT) is not None


def test_deposit_is_idempotent_by_reference(stack):
    first = stack.ledger.deposit(REQUESTER, "5", "top-up-1")
    second = stack.ledger.deposit(REQUESTER, "5", "top-up-1")

    assert second == first
    assert stack.ledger.require_wallet(REQUESTER).available == Decimal("105")


def test_deposit_duplicate_reference_different_amount_errors(stack):
    stack.ledger.deposit(REQUESTER, "5", "top-up-1")

    with pytest.raises(ValidationError) as exc_info:
        stack.ledger.deposit(REQUESTER, "6", "top-up-1")

    assert exc_info.value.error == "PAYLOAD_MISMATCH"
    assert stack.ledger.require_wallet(REQUESTER).available == Decimal("105")


@pytest.mark.parametrize("amount", ["0", "-1", 0])
def test_deposit_rejects_non_positive_amount(stack, amount):
    with pytest.raises(ValidationError) as exc_info:
        stack.ledger.deposit(REQUESTER, amount, "bad")
    assert exc_info.value.error == "INVALID_AMOUNT"


def test_deposit_to_unknown_wallet_fails(stack):
    with pytest.raises(NotFoundError) as exc_info:
        stack.ledger.deposit("acct-ghost", "1", "ref")
    assert exc_info.value.error == "WALLET_NOT_FOUND"


def test_withdraw_debits_available(stack):
    tx = stack.ledger.withdraw(REQUESTER, "40", "payout-1")

    assert tx.kind == TransactionKind.WITHDRAWAL
    assert stack.ledger.require_wallet(REQUESTER).available == Decimal("60")


def test_withdraw_insufficient_funds_leaves_ledger_untouched(stack):
    with pytest.raises(FundsError) as exc_info:
        stack.ledger.withdraw(REQUESTER, "100.00000001", "payout-1")

    assert exc_info.value.error == "INSUFFICIENT_FUNDS"
    assert exc_info.value.status_code == 402
    assert stack.ledger.require_wallet(REQUESTER).available == Decimal("100")
    assert stack.ledger.list_account_transactions(REQUESTER)[-1].kind == TransactionKind.CREDIT


# ---------------------------------------------------------------------------
# Escrow
# ---------------------------------------------------------------------------


def test_lock_escrow_moves_available_to_escrowed(stack):
    tx = stack.ledger.lock_escrow(REQUESTER, "10", "task-1")

    wallet = stack.ledger.require_wallet(REQUESTER)
    assert tx.kind == TransactionKind.DEPOSIT
    assert wallet.available == Decimal("90")
    assert wallet.escrowed == Decimal("10")
    assert wallet.total == Decimal("100")


def test_lock_escrow_is_idempotent_per_task(stack):
    first = stack.ledger.lock_escrow(REQUESTER, "10", "task-1")
    second = stack.ledger.lock_escrow(REQUESTER, "10", "task-1")

    assert second == first
    assert stack.ledger.require_wallet(REQUESTER).escrowed == Decimal("10")


def test_lock_escrow_same_task_different_amount_conflicts(stack):
    stack.ledger.lock_escrow(REQUESTER, "10", "task-1")

    with pytest.raises(StateError) as exc_info:
        stack.ledger.lock_escrow(REQUESTER, "11", "task-1")

    assert exc_info.value.error == "ESCROW_ALREADY_LOCKED"
    assert stack.ledger.require_wallet(REQUESTER).escrowed == Decimal("10")


def test_lock_escrow_insufficient_funds(stack):
    with pytest.raises(FundsError) as exc_info:
        stack.ledger.lock_escrow(REQUESTER, "100.5", "task-1")

    assert exc_info.value.error == "INSUFFICIENT_FUNDS"
    wallet = stack.ledger.require_wallet(REQUESTER)
    assert wallet.available == Decimal("100")
    assert wallet.escrowed == Decimal("0")


def test_release_deducts_platform_fee(stack):
    _locked(stack)

    tx = stack.ledger.release("task-1", REQUESTER, WORKER, "10")

    assert tx.kind == TransactionKind.RELEASE
    assert tx.amount == Decimal("9.8")
    assert stack.ledger.require_wallet(WORKER).available == Decimal("9.8")
    assert stack.ledger.require_wallet(FEE_ACCOUNT).available == Decimal("0.2")
    assert stack.ledger.require_wallet(REQUESTER).escrowed == Decimal("0")
    kinds = [leg.kind for leg in stack.ledger.list_transactions("task-1")]
    assert kinds == [TransactionKind.DEPOSIT, TransactionKind.RELEASE, TransactionKind.FEE]


def test_release_without_fee_records_no_fee_leg(tmp_path):
    stack = build_stack(tmp_path / "settlement.db", make_config(platform_fee_pct=Decimal("0")))
    try:
        fund(stack.ledger, REQUESTER, "10")
        _locked(stack)

        stack.ledger.release("task-1", REQUESTER, WORKER, "10")

        kinds = [leg.kind for leg in stack.ledger.list_transactions("task-1")]
        assert kinds == [TransactionKind.DEPOSIT, TransactionKind.RELEASE]
        assert stack.ledger.require_wallet(WORKER).available == Decimal("10")
    finally:
        stack.close()


def test_release_replay_is_a_no_op(stack):
    _locked(stack)
    first = stack.ledger.release("task-1", REQUESTER, WORKER, "10")

    second = stack.ledger.release("task-1", REQUESTER, WORKER, "10")

    assert second == first
    assert stack.ledger.require_wallet(WORKER).available == Decimal("9.8")
    assert len(stack.ledger.list_transactions("task-1")) == 3


def test_release_insufficient_escrow(stack):
    stack.ledger.open_wallet(WORKER)

    with pytest.raises(FundsError) as exc_info:
        stack.ledger.release("task-1", REQUESTER, WORKER, "10")

    assert exc_info.value.error == "INSUFFICIENT_ESCROW"
    assert stack.ledger.get_settlement("task-1") is None
    assert stack.ledger.require_wallet(WORKER).available == Decimal("0")


def test_refund_returns_escrow_without_fee(stack):
    _locked(stack)

    tx = stack.ledger.refund("task-1", REQUESTER, "10")

    wallet = stack.ledger.require_wallet(REQUESTER)
    assert tx.kind == TransactionKind.REFUND
    assert wallet.available == Decimal("100")
    assert wallet.escrowed == Decimal("0")
    assert stack.ledger.require_wallet(FEE_ACCOUNT).available == Decimal("0")


def test_second_settlement_kind_is_rejected(stack):
    _locked(stack)
    stack.ledger.refund("task-1", REQUESTER, "10")

    with pytest.raises(StateError) as exc_info:
        stack.ledger.release("task-1", REQUESTER, WORKER, "10")

    assert exc_info.value.error == "ESCROW_ALREADY_SETTLED"
    assert stack.ledger.require_wallet(WORKER).available == Decimal("0")


def test_split_half_takes_fee_from_worker_share(stack):
    _locked(stack)

    stack.ledger.split("task-1", REQUESTER, WORKER, Decimal("0.5"))

    requester = stack.ledger.require_wallet(REQUESTER)
    assert stack.ledger.require_wallet(WORKER).available == Decimal("4.9")
    assert stack.ledger.require_wallet(FEE_ACCOUNT).available == Decimal("0.1")
    assert requester.available == Decimal("95")
    assert requester.escrowed == Decimal("0")
    kind, _tx = stack.ledger.get_settlement("task-1")
    assert kind == TransactionKind.SPLIT


@pytest.mark.parametrize(
    ("ratio", "worker", "requester"),
    [
        ("0", Decimal("0"), Decimal("100")),
        ("1", Decimal("9.8"), Decimal("90")),
    ],
)
def test_split_boundaries(stack, ratio, worker, requester):
    _locked(stack)

    stack.ledger.split("task-1", REQUESTER, WORKER, ratio)

    assert stack.ledger.require_wallet(WORKER).available == worker
    assert stack.ledger.require_wallet(REQUESTER).available == requester
    assert stack.ledger.require_wallet(REQUESTER).escrowed == Decimal("0")


@pytest.mark.parametrize("ratio", ["-0.1", "1.01", "abc", None, True])
def test_split_rejects_invalid_ratio(stack, ratio):
    _locked(stack)

    with pytest.raises(ValidationError) as exc_info:
        stack.ledger.split("task-1", REQUESTER, WORKER, ratio)

    assert exc_info.value.error == "INVALID_RATIO"
    assert stack.ledger.require_wallet(REQUESTER).escrowed == Decimal("10")


def test_split_replay_is_a_no_op(stack):
    _locked(stack)
    first = stack.ledger.split("task-1", REQUESTER, WORKER, "0.3")

    second = stack.ledger.split("task-1", REQUESTER, WORKER, "0.3")

    assert second == first
    assert stack.ledger.require_wallet(REQUESTER).available == Decimal("97")


# ---------------------------------------------------------------------------
# Freeze / close
# ---------------------------------------------------------------------------


def test_frozen_wallet_rejects_lock_and_withdraw(stack):
    stack.ledger.freeze_wallet(REQUESTER)

    with pytest.raises(StateError) as lock_exc:
        stack.ledger.lock_escrow(REQUESTER, "1", "task-1")
    with pytest.raises(StateError) as withdraw_exc:
        stack.ledger.withdraw(REQUESTER, "1", "payout")

    assert lock_exc.value.error == "WALLET_FROZEN"
    assert withdraw_exc.value.error == "WALLET_FROZEN"


def test_frozen_wallet_still_settles_in_flight_escrow(stack):
    _locked(stack)
    stack.ledger.freeze_wallet(REQUESTER)
    stack.ledger.freeze_wallet(WORKER)

    stack.ledger.release("task-1", REQUESTER, WORKER, "10")

    assert stack.ledger.require_wallet(WORKER).available == Decimal("9.8")
    assert stack.ledger.unfreeze_wallet(WORKER).frozen is False


def test_close_wallet_refuses_escrow_and_balance(stack):
    _locked(stack)

    with pytest.raises(StateError) as escrow_exc:
        stack.ledger.close_wallet(REQUESTER)
    stack.ledger.refund("task-1", REQUESTER, "10")
    with pytest.raises(StateError) as balance_exc:
        stack.ledger.close_wallet(REQUESTER)

    assert escrow_exc.value.error == "WALLET_HAS_ESCROW"
    assert balance_exc.value.error == "WALLET_NOT_EMPTY"


def test_close_empty_wallet_without_history_deletes_it(stack):
    stack.ledger.open_wallet(OTHER)

    stack.ledger.close_wallet(OTHER)

    assert stack.ledger.get_wallet(OTHER) is None


# ---------------------------------------------------------------------------
# Conservation
# ---------------------------------------------------------------------------


def test_conservation_holds_across_settlements(stack):
    stack.ledger.open_wallet(WORKER)
    stack.ledger.lock_escrow(REQUESTER, "10", "task-1")
    stack.ledger.lock_escrow(REQUESTER, "20", "task-2")
    stack.ledger.lock_escrow(REQUESTER, "7.5", "task-3")
    stack.ledger.release("task-1", REQUESTER, WORKER, "10")
    stack.ledger.split("task-2", REQUESTER, WORKER, "0.33333333")
    stack.ledger.withdraw(WORKER, "1", "payout-1")

    report = stack.ledger.check_conservation()

    assert report.ok
    assert report.total_balances == Decimal("99")
    assert report.external_net == Decimal("99")
    assert report.mismatched_accounts == []
    assert stack.ledger.total_escrowed() == Decimal("7.5")


def test_conservation_detects_tampered_balance(stack):
    with stack.db.transaction():
        stack.db.execute(
            "UPDATE wallets SET available = available + 1 WHERE account_id = ?", (REQUESTER,)
        )

    report = stack.ledger.check_conservation()

    assert not report.ok
    assert report.mismatched_accounts == [REQUESTER]


def test_no_balance_ever_goes_negative(stack):
    stack.ledger.open_wallet(WORKER)
    stack.ledger.lock_escrow(REQUESTER, "100", "task-1")

    with pytest.raises(FundsError):
        stack.ledger.lock_escrow(REQUESTER, "0.00000001", "task-2")
    with pytest.raises(FundsError):
        stack.ledger.withdraw(REQUESTER, "0.00000001", "payout")

    wallet = stack.ledger.require_wallet(REQUESTER)
    assert wallet.available == Decimal("0")
    assert wallet.escrowed == Decimal("100")


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_concurrent_release_is_atomic(tmp_path):
    """Concurrent releases from two connections must not double-credit the worker."""
    db_path = tmp_path / "settlement.db"
    stack_a = build_stack(db_path)
    stack_b = build_stack(db_path)
    try:
        fund(stack_a.ledger, REQUESTER, "50")
        stack_a.ledger.open_wallet(WORKER)
        stack_a.ledger.lock_escrow(REQUESTER, "50", "task-1")

        def release(stack):
            return stack.ledger.release("task-1", REQUESTER, WORKER, "50")

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(release, stack_a), pool.submit(release, stack_b)]

        results = [fut.result() for fut in futures]

        assert results[0] == results[1]
        assert stack_a.ledger.require_wallet(WORKER).available == Decimal("49")
        assert stack_a.ledger.check_conservation().ok
    finally:
        stack_a.close()
        stack_b.close()


def test_concurrent_conflicting_settlements_apply_once(tmp_path):
    """A refund racing a release: exactly one settles, the other is rejected."""
    db_path = tmp_path / "settlement.db"
    stack_a = build_stack(db_path)
    stack_b = build_stack(db_path)
    try:
        fund(stack_a.ledger, REQUESTER, "50")
        stack_a.ledger.open_wallet(WORKER)
        stack_a.ledger.lock_escrow(REQUESTER, "50", "task-1")

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [
                pool.submit(stack_a.ledger.release, "task-1", REQUESTER, WORKER, "50"),
                pool.submit(stack_b.ledger.refund, "task-1", REQUESTER, "50"),
            ]

        results = []
        errors = []
        for fut in futures:
            try:
                results.append(fut.result())
            except ServiceError as exc:
                errors.append(exc)

        assert len(results) == 1
        assert len(errors) == 1
        assert errors[0].error == "ESCROW_ALREADY_SETTLED"
        assert stack_a.ledger.require_wallet(REQUESTER).escrowed == Decimal("0")
        assert stack_a.ledger.check_conservation().ok
    finally:
        stack_a.close()
        stack_b.close()
