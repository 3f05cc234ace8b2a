# Juice Purchase Pipeline
# Fiat → Juice credit, held back by a risk-scored clearing delay.
#
#   intake:      one row per processor payment (external_ref is UNIQUE)
#   clearing:    clears_at = capture time + delay_days(risk_score)
#   credit_due:  matured clearing rows credited and marked credited in the
#                claim transaction
#   dispute:     freezes pending/clearing rows for good; they are never credited

import logging
import os
import time
from typing import Optional

from db import Database, get_database
from disputes import DisputeLog
from errors import AlreadyTerminal, DuplicateExternalRef, NotFound, ValidationError
from events import PurchaseStatus, StateMachine
from ledger import LedgerStore, cents_to_decimal, check_cents
from risk import delay_days, validate_risk_score
from runner import BatchResult, claim_batch, new_runner_id

log = logging.getLogger("juice")

NULL_RISK_DELAY_DAYS = int(os.environ.get("JUICE_PURCHASE_NULL_RISK_DELAY_DAYS", "7"))
SUPPORTED_CURRENCY = "USD"
DAY_SEC = 86400


def check_currency(currency: str) -> str:
    if (currency or "").upper() != SUPPORTED_CURRENCY:
        raise ValidationError(f"Unsupported currency: {currency!r} (only USD)")
    return SUPPORTED_CURRENCY


class PurchasePipeline:
    def __init__(self, db: Optional[Database] = None,
                 null_risk_delay_days: int = NULL_RISK_DELAY_DAYS):
        self.db = db or get_database()
        self.null_risk_delay_days = null_risk_delay_days
        self.sm = StateMachine("purchase")
        self.ledger = LedgerStore(self.db)
        self.disputes = DisputeLog(self.db)

    def intake(self, external_ref: str, user_id: str, fiat_amount_cents: int,
               risk_score: Optional[int] = None, captured: bool = True,
               charge_ref: Optional[str] = None, risk_level: Optional[str] = None,
               currency: str = SUPPORTED_CURRENCY, now: Optional[float] = None) -> dict:
        """Record a purchase. Raises DuplicateExternalRef on redelivery."""
        if not external_ref:
            raise ValidationError("external_ref is required")
        if not user_id:
            raise ValidationError("user_id is required")
        check_cents(fiat_amount_cents)
        currency = check_currency(currency)
        risk_score = validate_risk_score(risk_score)
        days = delay_days(risk_score, self.null_risk_delay_days)

        now = time.time() if now is None else now
        status = PurchaseStatus.CLEARING if captured else PurchaseStatus.PENDING
        clears_at = now + days * DAY_SEC if captured else None
        purchase_id = f"PURCHASE-{int(now)}-{os.urandom(4).hex()}"

        with self.db.transaction() as tx:
            cur = tx.execute(
                """INSERT INTO juice_purchases
                   (id, user_id, external_ref, charge_ref, risk_score, risk_level,
                    fiat_amount_cents, juice_amount_cents, currency, status,
                    settlement_delay_days, clears_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (external_ref) DO NOTHING""",
                (purchase_id, user_id, external_ref, charge_ref, risk_score, risk_level,
                 fiat_amount_cents, fiat_amount_cents, currency, status.value,
                 days, clears_at, now, now),
            )
            if cur.rowcount != 1:
                existing = tx.fetchone(
                    "SELECT id FROM juice_purchases WHERE external_ref = ?", (external_ref,)
                )
                raise DuplicateExternalRef(external_ref, existing["id"])
            self.sm.record_created(tx, purchase_id, status, now, "webhook",
                                   data={"amount_cents": fiat_amount_cents,
                                         "risk_score": risk_score, "delay_days": days})

        log.info("PURCHASE %s user=%s amount=%s risk=%s delay=%dd status=%s",
                 purchase_id, user_id, cents_to_decimal(fiat_amount_cents),
                 risk_score, days, status.value)
        return self.get(purchase_id)

    def mark_captured(self, external_ref: str, now: Optional[float] = None) -> dict:
        """pending → clearing. The delay clock starts at capture."""
        now = time.time() if now is None else now
        row = self.get_by_ref(external_ref)
        if row["status"] == PurchaseStatus.CLEARING.value:
            return row
        with self.db.transaction() as tx:
            ok = self.sm.transition(
                tx, row["id"], [PurchaseStatus.PENDING], PurchaseStatus.CLEARING,
                now=now, actor="webhook",
                sets={"clears_at": now + row["settlement_delay_days"] * DAY_SEC},
            )
        if not ok:
            current = self.get(row["id"])["status"]
            raise AlreadyTerminal(row["id"], current)
        return self.get(row["id"])

    def credit_due(self, now: Optional[float] = None, runner_id: Optional[str] = None,
                   limit: Optional[int] = None) -> BatchResult:
        """Credit every clearing purchase whose clears_at has passed."""
        now = time.time() if now is None else now
        runner_id = runner_id or new_runner_id()
        result = BatchResult(job="purchase.credit_due")
        actor = f"runner:{runner_id}"

        def advance(tx, row):
            ok = self.sm.transition(
                tx, row["id"], [PurchaseStatus.CLEARING], PurchaseStatus.CREDITED,
                now=now, actor=actor,
                sets={"credited_at": now, "claimed_by": None, "claim_expires_at": None},
            )
            if ok:
                self.ledger.credit(tx, row["user_id"], row["juice_amount_cents"],
                                   row["id"], "purchase", now=now)
            return ok

        rows = claim_batch(
            self.db, "juice_purchases", "status = ? AND clears_at <= ?",
            (PurchaseStatus.CLEARING.value, now),
            limit=limit, runner_id=runner_id, now=now, order_by="clears_at",
            advance=advance, result=result,
        )
        result.succeeded += len(rows)
        return result

    def mark_disputed(self, purchase_id: str, reason_code: Optional[str] = None,
                      provider_dispute_id: Optional[str] = None,
                      amount_cents: Optional[int] = None, actor: str = "webhook",
                      now: Optional[float] = None) -> tuple[dict, bool]:
        return self.disputes.freeze(
            self.sm, purchase_id, [PurchaseStatus.PENDING, PurchaseStatus.CLEARING],
            PurchaseStatus.DISPUTED, reason_code=reason_code,
            provider_dispute_id=provider_dispute_id, amount_cents=amount_cents,
            actor=actor, now=now,
        )

    def mark_refunded(self, external_ref: str, actor: str = "webhook",
                      now: Optional[float] = None) -> dict:
        """Processor refunded the charge before the credit cleared."""
        now = time.time() if now is None else now
        row = self.get_by_ref(external_ref)
        if row["status"] == PurchaseStatus.REFUNDED.value:
            return row
        with self.db.transaction() as tx:
            ok = self.sm.transition(
                tx, row["id"], [PurchaseStatus.PENDING, PurchaseStatus.CLEARING],
                PurchaseStatus.REFUNDED, now=now, actor=actor,
                sets={"claimed_by": None, "claim_expires_at": None},
            )
        if not ok:
            current = self.get(row["id"])["status"]
            log.error("PURCHASE %s refund arrived after the row became %s", row["id"], current)
            raise AlreadyTerminal(row["id"], current)
        log.info("PURCHASE %s refunded ref=%s", row["id"], external_ref)
        return self.get(row["id"])

    # ── Queries ───────────────────────────────────────────────────────

    def get(self, purchase_id: str) -> dict:
        with self.db.connection() as tx:
            row = tx.fetchone("SELECT * FROM juice_purchases WHERE id = ?", (purchase_id,))
        if row is None:
            raise NotFound(f"Purchase {purchase_id} not found", row_id=purchase_id)
        return row

    def find_by_ref(self, external_ref: str) -> Optional[dict]:
        with self.db.connection() as tx:
            return tx.fetchone(
                "SELECT * FROM juice_purchases WHERE external_ref = ?", (external_ref,)
            )

    def get_by_ref(self, external_ref: str) -> dict:
        row = self.find_by_ref(external_ref)
        if row is None:
            raise NotFound(f"No purchase for {external_ref}", external_ref=external_ref)
        return row

    def list_user_purchases(self, user_id: str, limit: int = 50) -> list[dict]:
        with self.db.connection() as tx:
            return tx.fetchall(
                "SELECT * FROM juice_purchases WHERE user_id = ? "
                "ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            )


_pipeline: Optional[PurchasePipeline] = None


def get_purchase_pipeline() -> PurchasePipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = PurchasePipeline()
    return _pipeline
