# Juice Spend Pipeline
# Credit → on-chain project payment.
#
#   request:  debit + row created + pending → executing, one transaction
#   execute:  executor pays the project; completed (tx hash, tokens) or failed
#   failed:   retried with backoff; once exhausted, operator refund restores
#             the exact amount and marks the spend refunded

import logging
import time
from typing import Optional

from errors import ValidationError
from events import SpendStatus
from executor import ExecutePaymentRequest, ExecutionResult, usd_to_wei
from ledger import check_cents, cents_to_decimal
from pipeline import (
    DEFAULT_CHAIN_ID,
    RefundablePipeline,
    new_row_id,
    validate_address,
    validate_positive_int,
)

log = logging.getLogger("juice")

MAX_MEMO_LENGTH = 500


class SpendPipeline(RefundablePipeline):
    entity_type = "spend"
    prefix = "SPEND"
    kind = "spend"
    verb = "SPEND"
    in_flight = SpendStatus.EXECUTING
    failed = SpendStatus.FAILED
    completed = SpendStatus.COMPLETED
    refunded = SpendStatus.REFUNDED
    refund_reason = "spend_refund"
    public_columns = (
        "id", "user_id", "project_id", "chain_id", "beneficiary_address", "memo",
        "juice_amount_cents", "crypto_amount", "exchange_rate", "status",
        "tx_hash", "tokens_received", "completed_at", "created_at", "updated_at",
    )

    def build_request(self, row: dict) -> ExecutePaymentRequest:
        return ExecutePaymentRequest(
            idempotency_key=row["id"],
            kind=self.kind,
            chain_id=row["chain_id"],
            beneficiary=row["beneficiary_address"],
            amount_base_units=row["crypto_amount"],
            project_id=row["project_id"],
            memo=row["memo"],
        )

    def lock_sets(self, row: dict, rate) -> dict:
        return {
            "crypto_amount": str(usd_to_wei(row["juice_amount_cents"], rate)),
            "exchange_rate": str(rate),
        }

    def completion_sets(self, result: ExecutionResult, now: float) -> dict:
        return {
            "tx_hash": result.tx_hash,
            "tokens_received": result.tokens_received,
            "completed_at": now,
        }

    def request(self, user_id: str, project_id: int, beneficiary: str,
                amount_cents: int, chain_id: Optional[int] = None,
                memo: Optional[str] = None, now: Optional[float] = None) -> dict:
        """Reserve credit for a project payment.

        The debit is the balance check: InsufficientBalance rolls the whole
        request back and no spend row is left behind.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        validate_positive_int(project_id, "project_id")
        chain_id = validate_positive_int(chain_id or DEFAULT_CHAIN_ID, "chain_id")
        validate_address(beneficiary, "beneficiary address")
        check_cents(amount_cents)
        if memo is not None and len(memo) > MAX_MEMO_LENGTH:
            raise ValidationError(f"Memo longer than {MAX_MEMO_LENGTH} characters")

        rate = self.rates.eth_usd()
        now = time.time() if now is None else now
        spend_id = new_row_id(self.prefix)
        actor = f"user:{user_id}"

        with self.db.transaction() as tx:
            tx.execute(
                """INSERT INTO juice_spends
                   (id, user_id, project_id, chain_id, beneficiary_address, memo,
                    juice_amount_cents, status, retry_count, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)""",
                (spend_id, user_id, project_id, chain_id, beneficiary, memo,
                 amount_cents, SpendStatus.PENDING.value, now, now),
            )
            self.sm.record_created(tx, spend_id, SpendStatus.PENDING, now, actor,
                                   data={"amount_cents": amount_cents})
            self.ledger.debit(tx, user_id, amount_cents, spend_id, "spend", now=now)
            row = {"juice_amount_cents": amount_cents}
            self.sm.transition(tx, spend_id, [SpendStatus.PENDING], SpendStatus.EXECUTING,
                               now=now, actor=actor, sets=self.lock_sets(row, rate))

        log.info("SPEND %s requested user=%s project=%s chain=%s amount=%s",
                 spend_id, user_id, project_id, chain_id, cents_to_decimal(amount_cents))
        return self.get(spend_id)


_pipeline: Optional[SpendPipeline] = None


def get_spend_pipeline() -> SpendPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = SpendPipeline()
    return _pipeline
