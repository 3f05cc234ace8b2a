# Juice Cash-Out Pipeline
# Credit → crypto in the user's wallet.
#
#   request:  debit immediately, row pending, available after a fixed delay
#             (the chargeback window for freshly credited Juice)
#   cancel:   user only, only while pending; exact amount credited back
#   process:  due pending rows → processing in the claim transaction, rate
#             locked there, then dispatched to the executor
#   failed:   retried with backoff; exhausted rows wait for operator refund

import logging
import os
import time
from typing import Optional

from errors import AlreadyTerminal, InvalidTransition, NotFound, ValidationError
from events import CashOutStatus, is_terminal
from executor import ExecutePaymentRequest, usd_to_wei
from ledger import check_cents, cents_to_decimal
from pipeline import (
    DEFAULT_CHAIN_ID,
    RefundablePipeline,
    lazy_rate,
    new_row_id,
    validate_address,
    validate_positive_int,
)
from runner import BatchResult, claim_batch, new_runner_id

log = logging.getLogger("juice")

CASH_OUT_DELAY_HOURS = int(os.environ.get("JUICE_CASH_OUT_DELAY_HOURS", "24"))


class CashOutPipeline(RefundablePipeline):
    entity_type = "cash_out"
    prefix = "CASHOUT"
    kind = "cash_out"
    verb = "CASHOUT"
    in_flight = CashOutStatus.PROCESSING
    failed = CashOutStatus.FAILED
    completed = CashOutStatus.COMPLETED
    refunded = CashOutStatus.REFUNDED
    refund_reason = "cashout_refund"
    public_columns = (
        "id", "user_id", "destination_address", "chain_id", "token_address",
        "juice_amount_cents", "crypto_amount", "exchange_rate", "status", "available_at",
        "tx_hash", "completed_at", "created_at", "updated_at",
    )

    def __init__(self, *args, delay_hours: int = CASH_OUT_DELAY_HOURS, **kwargs):
        super().__init__(*args, **kwargs)
        self.delay_hours = delay_hours

    def build_request(self, row: dict) -> ExecutePaymentRequest:
        return ExecutePaymentRequest(
            idempotency_key=row["id"],
            kind=self.kind,
            chain_id=row["chain_id"],
            beneficiary=row["destination_address"],
            amount_base_units=row["crypto_amount"],
            token_address=row["token_address"],
        )

    def lock_sets(self, row: dict, rate) -> dict:
        return {
            "crypto_amount": str(usd_to_wei(row["juice_amount_cents"], rate)),
            "exchange_rate": str(rate),
        }

    def request(self, user_id: str, destination: str, amount_cents: int,
                chain_id: Optional[int] = None, token_address: Optional[str] = None,
                now: Optional[float] = None) -> dict:
        if not user_id:
            raise ValidationError("user_id is required")
        validate_address(destination, "destination address")
        if token_address is not None:
            validate_address(token_address, "token address")
        chain_id = validate_positive_int(chain_id or DEFAULT_CHAIN_ID, "chain_id")
        check_cents(amount_cents)

        now = time.time() if now is None else now
        available_at = now + self.delay_hours * 3600
        cash_out_id = new_row_id(self.prefix)
        actor = f"user:{user_id}"

        with self.db.transaction() as tx:
            tx.execute(
                """INSERT INTO juice_cash_outs
                   (id, user_id, destination_address, chain_id, token_address,
                    juice_amount_cents, status, available_at, retry_count,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)""",
                (cash_out_id, user_id, destination, chain_id, token_address,
                 amount_cents, CashOutStatus.PENDING.value, available_at, now, now),
            )
            self.sm.record_created(tx, cash_out_id, CashOutStatus.PENDING, now, actor,
                                   data={"amount_cents": amount_cents,
                                         "available_at": available_at})
            self.ledger.debit(tx, user_id, amount_cents, cash_out_id, "cash_out", now=now)

        log.info("CASHOUT %s requested user=%s amount=%s available_at=%.0f",
                 cash_out_id, user_id, cents_to_decimal(amount_cents), available_at)
        return self.get(cash_out_id)

    def cancel(self, cash_out_id: str, user_id: str, now: Optional[float] = None) -> dict:
        """Cancel a pending cash-out and restore the debited amount."""
        now = time.time() if now is None else now
        with self.db.transaction() as tx:
            row = tx.fetchone("SELECT * FROM juice_cash_outs WHERE id = ?", (cash_out_id,))
            if row is None or row["user_id"] != user_id:
                raise NotFound(f"Cash out {cash_out_id} not found", row_id=cash_out_id)
            ok = self.sm.transition(
                tx, cash_out_id, [CashOutStatus.PENDING], CashOutStatus.CANCELLED,
                now=now, actor=f"user:{user_id}",
                sets={"claimed_by": None, "claim_expires_at": None},
            )
            if not ok:
                current = tx.fetchone(
                    "SELECT status FROM juice_cash_outs WHERE id = ?", (cash_out_id,)
                )["status"]
                if is_terminal(self.entity_type, current):
                    raise AlreadyTerminal(cash_out_id, current)
                raise InvalidTransition(
                    f"Cash out {cash_out_id} is {current}, it can no longer be cancelled"
                )
            self.ledger.credit(tx, user_id, row["juice_amount_cents"], cash_out_id,
                               "cashout_cancel", now=now)

        log.info("CASHOUT %s cancelled user=%s amount=%s",
                 cash_out_id, user_id, cents_to_decimal(row["juice_amount_cents"]))
        return self.get(cash_out_id)

    def process_due(self, now: Optional[float] = None, runner_id: Optional[str] = None,
                    limit: Optional[int] = None) -> BatchResult:
        """Move matured pending cash-outs to processing and dispatch them.

        Also re-dispatches processing rows whose last dispatch timed out.
        """
        now = time.time() if now is None else now
        runner_id = runner_id or new_runner_id()
        result = BatchResult(job="cash_out.process_due")
        actor = f"runner:{runner_id}"
        rate = lazy_rate(self.rates)

        def advance(tx, row):
            sets = {**self.lock_sets(row, rate()), "dispatched_at": now}
            ok = self.sm.transition(tx, row["id"], [CashOutStatus.PENDING],
                                    CashOutStatus.PROCESSING, now=now, actor=actor, sets=sets)
            row.update(sets)
            return ok

        rows = claim_batch(
            self.db, self.table, "status = ? AND available_at <= ?",
            (CashOutStatus.PENDING.value, now),
            limit=limit, runner_id=runner_id, now=now, order_by="available_at",
            advance=advance, result=result,
        )
        for row in rows:
            self._dispatch_row(row, result, runner_id, now)

        result.merge(self.execute_due(now=now, runner_id=runner_id, limit=limit))
        return result


_pipeline: Optional[CashOutPipeline] = None


def get_cashout_pipeline() -> CashOutPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = CashOutPipeline()
    return _pipeline
