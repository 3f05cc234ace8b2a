"""Tests for the ledger store: money helpers, credit/debit, history."""

from decimal import Decimal

import pytest

from conftest import ADDR
from errors import InsufficientBalance, ValidationError
from ledger import MAX_AMOUNT_CENTS, LedgerStore, cents_to_decimal, check_cents, to_cents


# ── Money helpers ─────────────────────────────────────────────────────


class TestToCents:
    def test_string_dollars(self):
        assert to_cents("20.00") == 2000

    def test_decimal(self):
        assert to_cents(Decimal("0.01")) == 1

    def test_whole_dollars_int(self):
        assert to_cents(5) == 500

    @pytest.mark.parametrize("bad", [
        "0", "-1.00", "1.001", "abc", "NaN", 1.5, True, "1e30", "1e-30", "1e999999999",
        "10000000000.01",
    ])
    def test_rejects(self, bad):
        with pytest.raises(ValidationError):
            to_cents(bad)

    def test_cents_to_decimal_has_two_places(self):
        assert str(cents_to_decimal(2000)) == "20.00"
        assert str(cents_to_decimal(5)) == "0.05"

    def test_largest_amount_accepted(self):
        assert to_cents("10000000000.00") == MAX_AMOUNT_CENTS

    @pytest.mark.parametrize("bad", [0, -5, 1.0, "100", None, MAX_AMOUNT_CENTS + 1, 2 ** 63])
    def test_check_cents_rejects(self, bad):
        with pytest.raises(ValidationError):
            check_cents(bad)


# ── Credit / debit ────────────────────────────────────────────────────


class TestCreditDebit:
    def test_unknown_user_reads_as_zero(self, db):
        snap = LedgerStore(db).snapshot("nobody")
        assert snap.balance == Decimal("0.00")
        assert snap.last_activity_at is None

    def test_credit_creates_row(self, db):
        ledger = LedgerStore(db)
        with db.transaction() as tx:
            assert ledger.credit(tx, "u1", 5000, "PURCHASE-x", "purchase") == 5000
        snap = ledger.snapshot("u1")
        assert snap.balance == Decimal("50.00")
        assert snap.lifetime_purchased == Decimal("50.00")

    def test_debit_to_exactly_zero(self, db):
        ledger = LedgerStore(db)
        with db.transaction() as tx:
            ledger.credit(tx, "u1", 2000, "PURCHASE-x", "purchase")
            assert ledger.debit(tx, "u1", 2000, "SPEND-x", "spend") == 0
        snap = ledger.snapshot("u1")
        assert snap.balance == Decimal("0.00")
        assert snap.lifetime_spent == Decimal("20.00")

    def test_overdraw_rejected_and_rolled_back(self, db):
        ledger = LedgerStore(db)
        with db.transaction() as tx:
            ledger.credit(tx, "u1", 1000, "PURCHASE-x", "purchase")
        with pytest.raises(InsufficientBalance) as exc:
            with db.transaction() as tx:
                ledger.debit(tx, "u1", 1001, "SPEND-x", "spend")
        assert exc.value.requested_cents == 1001
        assert ledger.snapshot("u1").balance == Decimal("10.00")

    def test_debit_without_balance_row(self, db):
        with pytest.raises(InsufficientBalance):
            with db.transaction() as tx:
                LedgerStore(db).debit(tx, "ghost", 1, "SPEND-x", "spend")

    def test_refund_reasons_unwind_lifetime_counters(self, db):
        ledger = LedgerStore(db)
        with db.transaction() as tx:
            ledger.credit(tx, "u1", 3000, "PURCHASE-x", "purchase")
            ledger.debit(tx, "u1", 1000, "SPEND-x", "spend")
            ledger.debit(tx, "u1", 500, "CASHOUT-x", "cash_out")
            ledger.credit(tx, "u1", 1000, "SPEND-x", "spend_refund")
            ledger.credit(tx, "u1", 500, "CASHOUT-x", "cashout_cancel")
        snap = ledger.snapshot("u1")
        assert snap.balance == Decimal("30.00")
        assert snap.lifetime_spent == Decimal("0.00")
        assert snap.lifetime_cashed_out == Decimal("0.00")

    def test_unknown_reason_rejected(self, db):
        with pytest.raises(ValidationError):
            with db.transaction() as tx:
                LedgerStore(db).credit(tx, "u1", 100, "x", "gift")

    def test_snapshot_to_dict_uses_strings(self, db):
        ledger = LedgerStore(db)
        with db.transaction() as tx:
            ledger.credit(tx, "u1", 1234, "PURCHASE-x", "purchase")
        d = ledger.snapshot("u1").to_dict()
        assert d["balance"] == "12.34"
        assert d["lifetime_purchased"] == "12.34"


# ── Transaction history ───────────────────────────────────────────────


class TestTransactions:
    def test_signed_history_newest_first(self, db, fund, spends, t0):
        fund("u1", 5000)
        spends.request("u1", 1, ADDR, 1500, now=t0 + 10)
        txs = LedgerStore(db).get_transactions("u1")
        assert [t["type"] for t in txs] == ["spend", "purchase"]
        assert txs[0]["amount"] == "-15.00"
        assert txs[1]["amount"] == "50.00"
        assert txs[1]["status"] == "credited"

    def test_pagination(self, db, fund):
        for _ in range(3):
            fund("u1", 100)
        ledger = LedgerStore(db)
        assert len(ledger.get_transactions("u1", limit=2)) == 2
        assert len(ledger.get_transactions("u1", limit=2, offset=2)) == 1

    def test_other_users_excluded(self, db, fund):
        fund("u1", 100)
        assert LedgerStore(db).get_transactions("u2") == []
