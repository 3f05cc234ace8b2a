"""Tests for the purchase pipeline: intake, risk-delayed credit, disputes."""

import threading
from decimal import Decimal

import pytest

from errors import AlreadyTerminal, DuplicateExternalRef, NotFound, ValidationError
from events import entity_history
from ledger import LedgerStore
from purchases import DAY_SEC, PurchasePipeline

USER = "user-1"


def _balance(db, user_id=USER):
    return LedgerStore(db).snapshot(user_id).balance


class TestIntake:
    def test_low_risk_clears_immediately(self, purchases, t0):
        row = purchases.intake("pi_1", USER, 5000, risk_score=15, now=t0)
        assert row["status"] == "clearing"
        assert row["settlement_delay_days"] == 0
        assert row["clears_at"] == t0
        assert row["id"].startswith("PURCHASE-")

    def test_high_risk_delay(self, purchases, t0):
        row = purchases.intake("pi_1", USER, 5000, risk_score=70, now=t0)
        assert row["settlement_delay_days"] == 60
        assert row["clears_at"] == t0 + 60 * DAY_SEC

    def test_null_risk_uses_default(self, db, t0):
        row = PurchasePipeline(db, null_risk_delay_days=7).intake("pi_1", USER, 5000, now=t0)
        assert row["settlement_delay_days"] == 7

    def test_duplicate_external_ref(self, purchases, t0):
        first = purchases.intake("pi_1", USER, 5000, risk_score=0, now=t0)
        with pytest.raises(DuplicateExternalRef) as exc:
            purchases.intake("pi_1", USER, 5000, risk_score=0, now=t0)
        assert exc.value.existing_id == first["id"]
        assert len(purchases.list_user_purchases(USER)) == 1

    @pytest.mark.parametrize("kwargs", [
        {"fiat_amount_cents": 0},
        {"fiat_amount_cents": -100},
        {"risk_score": 101},
        {"currency": "EUR"},
    ])
    def test_invalid_input_rejected(self, purchases, kwargs):
        args = {"external_ref": "pi_1", "user_id": USER, "fiat_amount_cents": 5000, **kwargs}
        with pytest.raises(ValidationError):
            purchases.intake(**args)

    def test_uncaptured_waits_for_capture(self, purchases, t0):
        row = purchases.intake("pi_1", USER, 5000, risk_score=30, captured=False, now=t0)
        assert row["status"] == "pending"
        assert row["clears_at"] is None
        row = purchases.mark_captured("pi_1", now=t0 + 100)
        assert row["status"] == "clearing"
        assert row["clears_at"] == t0 + 100 + 7 * DAY_SEC


class TestCreditDue:
    def test_cleared_purchase_credited(self, db, purchases, t0):
        purchases.intake("pi_1", USER, 5000, risk_score=15, now=t0)
        result = purchases.credit_due(now=t0)
        assert result.claimed == 1
        assert result.succeeded == 1
        assert _balance(db) == Decimal("50.00")
        row = purchases.get_by_ref("pi_1")
        assert row["status"] == "credited"
        assert row["credited_at"] == t0
        assert row["claimed_by"] is None

    def test_high_risk_not_credited_early(self, db, purchases, t0):
        purchases.intake("pi_1", USER, 5000, risk_score=70, now=t0)
        purchases.credit_due(now=t0 + DAY_SEC)
        assert _balance(db) == Decimal("0.00")
        assert purchases.get_by_ref("pi_1")["status"] == "clearing"

        purchases.credit_due(now=t0 + 60 * DAY_SEC)
        assert _balance(db) == Decimal("50.00")

    def test_credit_happens_once(self, db, purchases, t0):
        purchases.intake("pi_1", USER, 5000, risk_score=0, now=t0)
        purchases.credit_due(now=t0)
        second = purchases.credit_due(now=t0 + 10)
        assert second.claimed == 0
        assert _balance(db) == Decimal("50.00")

    def test_credit_writes_audit_trail(self, db, purchases, t0):
        row = purchases.intake("pi_1", USER, 5000, risk_score=0, now=t0)
        purchases.credit_due(now=t0, runner_id="r1")
        with db.connection() as tx:
            events = entity_history(tx, "purchase", row["id"])
        assert [e.event_type for e in events] == ["purchase.created", "purchase.credited"]
        assert events[1].actor == "runner:r1"


class TestDisputeAndRefund:
    def test_dispute_blocks_credit(self, db, purchases, t0):
        row = purchases.intake("pi_1", USER, 5000, risk_score=50, now=t0)
        record, created = purchases.mark_disputed(row["id"], reason_code="fraudulent", now=t0)
        assert created
        assert record["target_id"] == row["id"]
        purchases.credit_due(now=t0 + 365 * DAY_SEC)
        assert _balance(db) == Decimal("0.00")
        assert purchases.get(row["id"])["status"] == "disputed"

    def test_dispute_after_credit_is_terminal(self, purchases, t0):
        row = purchases.intake("pi_1", USER, 5000, risk_score=0, now=t0)
        purchases.credit_due(now=t0)
        with pytest.raises(AlreadyTerminal) as exc:
            purchases.mark_disputed(row["id"])
        assert exc.value.status == "credited"

    def test_refund_before_credit(self, db, purchases, t0):
        purchases.intake("pi_1", USER, 5000, risk_score=50, now=t0)
        row = purchases.mark_refunded("pi_1", now=t0 + 5)
        assert row["status"] == "refunded"
        purchases.credit_due(now=t0 + 365 * DAY_SEC)
        assert _balance(db) == Decimal("0.00")

    def test_refund_redelivery_is_noop(self, purchases, t0):
        purchases.intake("pi_1", USER, 5000, risk_score=50, now=t0)
        purchases.mark_refunded("pi_1")
        assert purchases.mark_refunded("pi_1")["status"] == "refunded"

    def test_refund_unknown_ref(self, purchases):
        with pytest.raises(NotFound):
            purchases.mark_refunded("pi_missing")


class TestDisputeRace:
    def test_dispute_racing_credit_has_one_winner(self, db, purchases, t0):
        ids = [purchases.intake(f"pi_{i}", USER, 100, risk_score=0, now=t0)["id"]
               for i in range(10)]
        disputed = []

        def dispute_all():
            for purchase_id in ids:
                try:
                    purchases.mark_disputed(purchase_id, reason_code="fraudulent", now=t0)
                    disputed.append(purchase_id)
                except AlreadyTerminal:
                    pass

        threads = [
            threading.Thread(target=dispute_all),
            threading.Thread(target=lambda: purchases.credit_due(now=t0, limit=1)),
            threading.Thread(target=lambda: purchases.credit_due(now=t0)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        with db.connection() as tx:
            records = {r["target_id"] for r in tx.fetchall("SELECT target_id FROM disputes")}
        credited = 0
        for purchase_id in ids:
            status = purchases.get(purchase_id)["status"]
            assert status in ("credited", "disputed")
            assert (status == "disputed") == (purchase_id in records)
            credited += status == "credited"
        assert set(disputed) == records
        assert _balance(db) == Decimal(credited) / 100
