# Juice Direct Fiat Settlement
# Card payments for a project that bypass the Juice ledger and settle
# straight to the project's beneficiary on-chain once the risk delay passes.
#
#   pending_settlement ─(settles_at)─▶ settling ─▶ settled
#                                          └────▶ failed ─retry─▶ settling
#   pending_settlement | settling | failed ─dispute─▶ disputed (frozen)
#
# The ETH/USD rate and the wei amount are locked when a row enters settling.

import logging
import os
import time
from typing import Optional

from disputes import DisputeLog
from errors import AlreadyTerminal, DuplicateExternalRef, NotFound, ValidationError
from events import FiatPaymentStatus
from executor import ExecutePaymentRequest, ExecutionResult, usd_to_wei
from ledger import cents_to_decimal, check_cents
from pipeline import (
    ExecutionPipeline,
    lazy_rate,
    new_row_id,
    validate_address,
    validate_positive_int,
)
from purchases import DAY_SEC, check_currency
from risk import delay_days, validate_risk_score
from runner import BatchResult, claim_batch, new_runner_id

log = logging.getLogger("juice")

NULL_RISK_DELAY_DAYS = int(os.environ.get("JUICE_SETTLEMENT_NULL_RISK_DELAY_DAYS", "7"))

UNSETTLED = (
    FiatPaymentStatus.PENDING_SETTLEMENT.value,
    FiatPaymentStatus.SETTLING.value,
    FiatPaymentStatus.FAILED.value,
)


class SettlementPipeline(ExecutionPipeline):
    entity_type = "fiat_payment"
    prefix = "FIAT"
    kind = "fiat_payment"
    verb = "SETTLED"
    in_flight = FiatPaymentStatus.SETTLING
    failed = FiatPaymentStatus.FAILED
    completed = FiatPaymentStatus.SETTLED
    public_columns = (
        "id", "user_id", "external_ref", "amount_cents", "currency", "project_id",
        "chain_id", "memo", "beneficiary_address", "settlement_delay_days", "paid_at",
        "settles_at", "status", "settled_at", "settlement_rate", "settlement_amount_wei",
        "settlement_tx_hash", "tokens_received", "created_at", "updated_at",
    )

    def __init__(self, *args, null_risk_delay_days: int = NULL_RISK_DELAY_DAYS, **kwargs):
        super().__init__(*args, **kwargs)
        self.null_risk_delay_days = null_risk_delay_days
        self.disputes = DisputeLog(self.db)

    def build_request(self, row: dict) -> ExecutePaymentRequest:
        return ExecutePaymentRequest(
            idempotency_key=row["id"],
            kind=self.kind,
            chain_id=row["chain_id"],
            beneficiary=row["beneficiary_address"],
            amount_base_units=row["settlement_amount_wei"],
            project_id=row["project_id"],
            memo=row["memo"],
        )

    def lock_sets(self, row: dict, rate) -> dict:
        return {
            "settlement_rate": str(rate),
            "settlement_amount_wei": str(usd_to_wei(row["amount_cents"], rate)),
        }

    def completion_sets(self, result: ExecutionResult, now: float) -> dict:
        return {
            "settlement_tx_hash": result.tx_hash,
            "tokens_received": result.tokens_received,
            "settled_at": now,
        }

    # ── Intake ────────────────────────────────────────────────────────

    def intake(self, external_ref: str, amount_cents: int, project_id: int, chain_id: int,
               beneficiary_address: str, user_id: Optional[str] = None,
               memo: Optional[str] = None, risk_score: Optional[int] = None,
               charge_ref: Optional[str] = None, currency: str = "USD",
               paid_at: Optional[float] = None, now: Optional[float] = None) -> dict:
        """Record a direct payment. Raises DuplicateExternalRef on redelivery."""
        if not external_ref:
            raise ValidationError("external_ref is required")
        check_cents(amount_cents)
        currency = check_currency(currency)
        validate_positive_int(project_id, "project_id")
        validate_positive_int(chain_id, "chain_id")
        validate_address(beneficiary_address, "beneficiary address")
        risk_score = validate_risk_score(risk_score)
        days = delay_days(risk_score, self.null_risk_delay_days)

        now = time.time() if now is None else now
        paid_at = now if paid_at is None else paid_at
        settles_at = paid_at + days * DAY_SEC
        payment_id = new_row_id(self.prefix)

        with self.db.transaction() as tx:
            cur = tx.execute(
                """INSERT INTO pending_fiat_payments
                   (id, user_id, external_ref, charge_ref, amount_cents, currency,
                    project_id, chain_id, memo, beneficiary_address, risk_score,
                    settlement_delay_days, paid_at, settles_at, status, retry_count,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                   ON CONFLICT (external_ref) DO NOTHING""",
                (payment_id, user_id, external_ref, charge_ref, amount_cents, currency,
                 project_id, chain_id, memo, beneficiary_address, risk_score,
                 days, paid_at, settles_at, FiatPaymentStatus.PENDING_SETTLEMENT.value,
                 now, now),
            )
            if cur.rowcount != 1:
                existing = tx.fetchone(
                    "SELECT id FROM pending_fiat_payments WHERE external_ref = ?",
                    (external_ref,),
                )
                raise DuplicateExternalRef(external_ref, existing["id"])
            self.sm.record_created(tx, payment_id, FiatPaymentStatus.PENDING_SETTLEMENT,
                                   now, "webhook",
                                   data={"amount_cents": amount_cents,
                                         "risk_score": risk_score, "delay_days": days})

        log.info("FIAT %s project=%s chain=%s amount=%s risk=%s settles_in=%dd",
                 payment_id, project_id, chain_id, cents_to_decimal(amount_cents),
                 risk_score, days)
        return self.get(payment_id)

    # ── Settlement ────────────────────────────────────────────────────

    def settle_due(self, now: Optional[float] = None, runner_id: Optional[str] = None,
                   limit: Optional[int] = None) -> BatchResult:
        """Lock the rate on matured payments, move them to settling and dispatch.

        Also re-dispatches settling rows whose last dispatch timed out.
        """
        now = time.time() if now is None else now
        runner_id = runner_id or new_runner_id()
        result = BatchResult(job="fiat_payment.settle_due")
        actor = f"runner:{runner_id}"
        rate = lazy_rate(self.rates)

        def advance(tx, row):
            sets = {**self.lock_sets(row, rate()), "dispatched_at": now}
            ok = self.sm.transition(tx, row["id"], [FiatPaymentStatus.PENDING_SETTLEMENT],
                                    FiatPaymentStatus.SETTLING, now=now, actor=actor,
                                    sets=sets, data={"settlement_rate": sets["settlement_rate"]})
            row.update(sets)
            return ok

        rows = claim_batch(
            self.db, self.table, "status = ? AND settles_at <= ?",
            (FiatPaymentStatus.PENDING_SETTLEMENT.value, now),
            limit=limit, runner_id=runner_id, now=now, order_by="settles_at",
            advance=advance, result=result,
        )
        for row in rows:
            self._dispatch_row(row, result, runner_id, now)

        result.merge(self.execute_due(now=now, runner_id=runner_id, limit=limit))
        return result

    def mark_disputed(self, payment_id: str, reason_code: Optional[str] = None,
                      provider_dispute_id: Optional[str] = None,
                      amount_cents: Optional[int] = None, actor: str = "webhook",
                      now: Optional[float] = None) -> tuple[dict, bool]:
        return self.disputes.freeze(
            self.sm, payment_id,
            [FiatPaymentStatus.PENDING_SETTLEMENT, FiatPaymentStatus.SETTLING,
             FiatPaymentStatus.FAILED],
            FiatPaymentStatus.DISPUTED, reason_code=reason_code,
            provider_dispute_id=provider_dispute_id, amount_cents=amount_cents,
            actor=actor, now=now,
        )

    def mark_refunded(self, external_ref: str, actor: str = "webhook",
                      now: Optional[float] = None) -> dict:
        now = time.time() if now is None else now
        row = self.get_by_ref(external_ref)
        if row["status"] == FiatPaymentStatus.REFUNDED.value:
            return row
        with self.db.transaction() as tx:
            ok = self.sm.transition(
                tx, row["id"],
                [FiatPaymentStatus.PENDING_SETTLEMENT, FiatPaymentStatus.FAILED],
                FiatPaymentStatus.REFUNDED, now=now, actor=actor,
                sets={"claimed_by": None, "claim_expires_at": None},
            )
        if not ok:
            current = self.get(row["id"])["status"]
            log.error("FIAT %s refund arrived while the row is %s", row["id"], current)
            raise AlreadyTerminal(row["id"], current)
        log.info("FIAT %s refunded ref=%s", row["id"], external_ref)
        return self.get(row["id"])

    # ── Queries ───────────────────────────────────────────────────────

    def find_by_ref(self, external_ref: str) -> Optional[dict]:
        with self.db.connection() as tx:
            return tx.fetchone(
                "SELECT * FROM pending_fiat_payments WHERE external_ref = ?", (external_ref,)
            )

    def get_by_ref(self, external_ref: str) -> dict:
        row = self.find_by_ref(external_ref)
        if row is None:
            raise NotFound(f"No fiat payment for {external_ref}", external_ref=external_ref)
        return row

    def project_pending_balance(self, project_id: int, chain_id: int) -> dict:
        """Unsettled fiat owed to a project: count, USD total, next settlement time."""
        placeholders = ", ".join("?" for _ in UNSETTLED)
        with self.db.connection() as tx:
            row = tx.fetchone(
                f"""SELECT COUNT(*) AS payment_count,
                           COALESCE(SUM(amount_cents), 0) AS total_cents,
                           MIN(settles_at) AS next_settlement_at
                    FROM pending_fiat_payments
                    WHERE project_id = ? AND chain_id = ? AND status IN ({placeholders})""",
                (project_id, chain_id, *UNSETTLED),
            )
        return {
            "project_id": project_id,
            "chain_id": chain_id,
            "payment_count": row["payment_count"],
            "total_usd": str(cents_to_decimal(row["total_cents"])),
            "next_settlement_at": row["next_settlement_at"],
        }

    def user_pending_payments(self, user_id: str) -> list[dict]:
        placeholders = ", ".join("?" for _ in UNSETTLED)
        with self.db.connection() as tx:
            rows = tx.fetchall(
                f"""SELECT * FROM pending_fiat_payments
                    WHERE user_id = ? AND status IN ({placeholders})
                    ORDER BY settles_at""",
                (user_id, *UNSETTLED),
            )
        return [self.present(row) for row in rows]


_pipeline: Optional[SettlementPipeline] = None


def get_settlement_pipeline() -> SettlementPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = SettlementPipeline()
    return _pipeline
