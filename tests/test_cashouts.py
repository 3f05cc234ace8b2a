"""Tests for the cash-out pipeline: delay window, cancel, processing."""

from decimal import Decimal

import pytest

from conftest import ADDR, OTHER_ADDR, exhaust_retries
from errors import (
    AlreadyTerminal,
    InsufficientBalance,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from ledger import LedgerStore

USER = "user-1"
HOUR = 3600


def _snap(db, user_id=USER):
    return LedgerStore(db).snapshot(user_id)


class TestRequest:
    def test_debits_immediately(self, db, fund, cashouts, t0):
        fund(USER, 5000)
        row = cashouts.request(USER, ADDR, 2000, now=t0)
        assert row["id"].startswith("CASHOUT-")
        assert row["status"] == "pending"
        assert row["available_at"] == t0 + 24 * HOUR
        assert _snap(db).balance == Decimal("30.00")
        assert _snap(db).lifetime_cashed_out == Decimal("20.00")

    def test_insufficient_balance(self, db, fund, cashouts, t0):
        fund(USER, 1000)
        with pytest.raises(InsufficientBalance):
            cashouts.request(USER, ADDR, 5000, now=t0)
        assert cashouts.list_for_user(USER) == []

    def test_token_address_validated(self, fund, cashouts):
        fund(USER, 1000)
        with pytest.raises(ValidationError):
            cashouts.request(USER, ADDR, 100, token_address="usdc")


class TestCancel:
    def test_cancel_restores_exact_amount(self, db, fund, cashouts, t0):
        fund(USER, 5000)
        row = cashouts.request(USER, ADDR, 1234, now=t0)
        cancelled = cashouts.cancel(row["id"], USER, now=t0 + HOUR)
        assert cancelled["status"] == "cancelled"
        snap = _snap(db)
        assert snap.balance == Decimal("50.00")
        assert snap.lifetime_cashed_out == Decimal("0.00")

    def test_cancel_by_other_user_is_not_found(self, fund, cashouts, t0):
        fund(USER, 5000)
        row = cashouts.request(USER, ADDR, 1000, now=t0)
        with pytest.raises(NotFound):
            cashouts.cancel(row["id"], "someone-else")
        assert cashouts.get(row["id"])["status"] == "pending"

    def test_cancel_twice(self, fund, cashouts, t0):
        fund(USER, 5000)
        row = cashouts.request(USER, ADDR, 1000, now=t0)
        cashouts.cancel(row["id"], USER)
        with pytest.raises(AlreadyTerminal):
            cashouts.cancel(row["id"], USER)

    def test_cancel_rejected_once_processing(self, db, fund, cashouts, executor, t0):
        fund(USER, 5000)
        row = cashouts.request(USER, ADDR, 1000, now=t0)
        executor.outcome = "accepted"
        cashouts.process_due(now=t0 + 24 * HOUR)
        with pytest.raises(InvalidTransition):
            cashouts.cancel(row["id"], USER)
        assert _snap(db).balance == Decimal("40.00")


class TestProcessing:
    def test_not_processed_inside_delay(self, fund, cashouts, executor, t0):
        fund(USER, 5000)
        row = cashouts.request(USER, ADDR, 1000, now=t0)
        result = cashouts.process_due(now=t0 + 23 * HOUR)
        assert result.claimed == 0
        assert executor.requests == []
        assert cashouts.get(row["id"])["status"] == "pending"

    def test_process_and_complete(self, fund, cashouts, executor, t0):
        fund(USER, 5000)
        row = cashouts.request(USER, OTHER_ADDR, 1000, now=t0)
        result = cashouts.process_due(now=t0 + 24 * HOUR)
        assert result.succeeded == 1
        done = cashouts.get(row["id"])
        assert done["status"] == "completed"
        assert done["exchange_rate"] == "2000"
        assert done["crypto_amount"] == "5000000000000000"
        assert done["tx_hash"] == "0x" + "f" * 64
        req = executor.requests[0]
        assert req.beneficiary == OTHER_ADDR
        assert req.kind == "cash_out"
        assert req.idempotency_key == row["id"]

    def test_failed_then_operator_refund(self, db, fund, cashouts, executor, t0):
        fund(USER, 5000)
        row = cashouts.request(USER, ADDR, 1000, now=t0)
        executor.outcome = "fail"
        cashouts.process_due(now=t0 + 24 * HOUR)
        assert cashouts.get(row["id"])["status"] == "failed"
        with pytest.raises(InvalidTransition):
            cashouts.refund(row["id"])
        exhaust_retries(cashouts, t0 + 24 * HOUR)
        refunded = cashouts.refund(row["id"])
        assert refunded["status"] == "refunded"
        assert _snap(db).balance == Decimal("50.00")

    def test_retry_due_completes(self, fund, cashouts, executor, t0):
        fund(USER, 5000)
        row = cashouts.request(USER, ADDR, 1000, now=t0)
        start = t0 + 24 * HOUR
        executor.outcome = "fail"
        cashouts.process_due(now=start)
        executor.outcome = "success"
        cashouts.retry_due(now=start + 60)
        assert cashouts.get(row["id"])["status"] == "completed"
