# Juice Inbound Notifications
# Payment processor and execution-service callbacks. Every handler is
# idempotent under at-least-once delivery:
#
#   payment           → purchase or direct fiat payment (duplicate = no-op)
#   dispute           → freeze the matching row (redelivery = no-op)
#   refund            → mark the matching unsettled row refunded
#   execution result  → routed by row-id prefix to spends / cash-outs / fiat

import logging
from dataclasses import dataclass
from typing import Optional

from cashouts import CashOutPipeline, get_cashout_pipeline
from errors import DuplicateExternalRef, NotFound, ValidationError
from executor import ExecutionResult
from purchases import PurchasePipeline, get_purchase_pipeline
from settlement import SettlementPipeline, get_settlement_pipeline
from spends import SpendPipeline, get_spend_pipeline

log = logging.getLogger("juice")

KIND_PURCHASE = "juice_purchase"
KIND_DIRECT = "direct_payment"


@dataclass
class PaymentNotification:
    external_ref: str
    fiat_amount_cents: int
    currency: str = "USD"
    kind: str = KIND_PURCHASE
    user_id: Optional[str] = None
    risk_score: Optional[int] = None
    risk_level: Optional[str] = None
    charge_ref: Optional[str] = None
    captured: bool = True
    project_id: Optional[int] = None
    chain_id: Optional[int] = None
    beneficiary_address: Optional[str] = None
    memo: Optional[str] = None


class NotificationHandler:
    """Applies processor and executor callbacks to the pipelines."""

    def __init__(self, purchases: Optional[PurchasePipeline] = None,
                 settlement: Optional[SettlementPipeline] = None,
                 spends: Optional[SpendPipeline] = None,
                 cashouts: Optional[CashOutPipeline] = None):
        self.purchases = purchases = purchases or get_purchase_pipeline()
        self.settlement = settlement = settlement or get_settlement_pipeline()
        self.spends = spends = spends or get_spend_pipeline()
        self.cashouts = cashouts = cashouts or get_cashout_pipeline()
        self.by_prefix = {
            spends.prefix: spends,
            cashouts.prefix: cashouts,
            settlement.prefix: settlement,
        }

    # ── Payments ──────────────────────────────────────────────────────

    def handle_payment(self, note: PaymentNotification) -> dict:
        """Create the purchase or fiat payment. Redelivery returns the original row."""
        if note.kind == KIND_PURCHASE:
            pipeline, kind = self.purchases, "purchase"
        elif note.kind == KIND_DIRECT:
            pipeline, kind = self.settlement, "fiat_payment"
        else:
            raise ValidationError(f"Unknown payment kind: {note.kind!r}")

        try:
            if kind == "purchase":
                row = self.purchases.intake(
                    note.external_ref, note.user_id, note.fiat_amount_cents,
                    risk_score=note.risk_score, captured=note.captured,
                    charge_ref=note.charge_ref, risk_level=note.risk_level,
                    currency=note.currency,
                )
            else:
                row = self.settlement.intake(
                    note.external_ref, note.fiat_amount_cents, note.project_id,
                    note.chain_id, note.beneficiary_address, user_id=note.user_id,
                    memo=note.memo, risk_score=note.risk_score,
                    charge_ref=note.charge_ref, currency=note.currency,
                )
            duplicate = False
        except DuplicateExternalRef as e:
            log.info("PAYMENT %s redelivered, already recorded as %s",
                     note.external_ref, e.existing_id)
            row = pipeline.get(e.existing_id)
            duplicate = True
        return {"kind": kind, "id": row["id"], "status": row["status"], "duplicate": duplicate}

    def handle_captured(self, external_ref: str) -> dict:
        row = self.purchases.mark_captured(external_ref)
        return {"kind": "purchase", "id": row["id"], "status": row["status"]}

    # ── Disputes / refunds ────────────────────────────────────────────

    def _find(self, external_ref: str):
        row = self.purchases.find_by_ref(external_ref)
        if row is not None:
            return self.purchases, "purchase", row
        row = self.settlement.find_by_ref(external_ref)
        if row is not None:
            return self.settlement, "fiat_payment", row
        raise NotFound(f"No payment for {external_ref}", external_ref=external_ref)

    def handle_dispute(self, external_ref: str, reason_code: Optional[str] = None,
                       dispute_id: Optional[str] = None,
                       amount_cents: Optional[int] = None) -> dict:
        pipeline, kind, row = self._find(external_ref)
        record, created = pipeline.mark_disputed(
            row["id"], reason_code=reason_code, provider_dispute_id=dispute_id,
            amount_cents=amount_cents,
        )
        return {"kind": kind, "id": row["id"], "dispute": record, "duplicate": not created}

    def handle_refund(self, external_ref: str) -> dict:
        pipeline, kind, _ = self._find(external_ref)
        row = pipeline.mark_refunded(external_ref)
        return {"kind": kind, "id": row["id"], "status": row["status"]}

    # ── Execution results ─────────────────────────────────────────────

    def pipeline_for(self, row_id: str):
        prefix = (row_id or "").split("-", 1)[0]
        pipeline = self.by_prefix.get(prefix)
        if pipeline is None:
            raise NotFound(f"Unroutable row id: {row_id!r}", row_id=row_id)
        return pipeline

    def handle_execution_result(self, result: ExecutionResult) -> dict:
        pipeline = self.pipeline_for(result.row_id)
        applied = pipeline.record_result(result, actor="webhook")
        row = pipeline.get(result.row_id)
        return {
            "kind": pipeline.entity_type,
            "id": row["id"],
            "status": row["status"],
            "applied": applied,
        }


_handler: Optional[NotificationHandler] = None


def get_notification_handler() -> NotificationHandler:
    global _handler
    if _handler is None:
        _handler = NotificationHandler()
    return _handler
