"""Juice ledger schema: balances, pipelines, disputes, audit events

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

RISK_SCORE_CHECK = "risk_score IS NULL OR (risk_score >= 0 AND risk_score <= 100)"
DELAY_CHECK = "settlement_delay_days >= 0 AND settlement_delay_days <= 120"


def _claim_columns():
    return [
        sa.Column("claimed_by", sa.Text(), nullable=True),
        sa.Column("claim_expires_at", sa.Float(), nullable=True),
    ]


def _retry_columns():
    return [
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.Float(), nullable=True),
        sa.Column("dispatched_at", sa.Float(), nullable=True),
    ]


def _timestamps():
    return [
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
    ]


def upgrade() -> None:
    # Per-user stored value, integer cents
    op.create_table(
        "juice_balances",
        sa.Column("user_id", sa.Text(), primary_key=True),
        sa.Column("balance_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("lifetime_purchased_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("lifetime_spent_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("lifetime_cashed_out_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_activity_at", sa.Float(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("balance_cents >= 0", name="ck_juice_balances_non_negative"),
    )

    # Fiat → Juice purchases
    op.create_table(
        "juice_purchases",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("external_ref", sa.Text(), nullable=False, unique=True),
        sa.Column("charge_ref", sa.Text(), nullable=True),
        sa.Column("risk_score", sa.Integer(), nullable=True),
        sa.Column("risk_level", sa.Text(), nullable=True),
        sa.Column("fiat_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("juice_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="USD"),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("settlement_delay_days", sa.Integer(), nullable=False),
        sa.Column("clears_at", sa.Float(), nullable=True),
        sa.Column("credited_at", sa.Float(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_claim_columns(),
        *_timestamps(),
        sa.CheckConstraint(RISK_SCORE_CHECK, name="ck_juice_purchases_risk"),
        sa.CheckConstraint(DELAY_CHECK, name="ck_juice_purchases_delay"),
        sa.CheckConstraint("fiat_amount_cents > 0", name="ck_juice_purchases_fiat"),
        sa.CheckConstraint("juice_amount_cents > 0", name="ck_juice_purchases_juice"),
        sa.CheckConstraint(
            "status IN ('pending', 'clearing', 'credited', 'disputed', 'refunded')",
            name="ck_juice_purchases_status",
        ),
    )
    op.create_index("idx_juice_purchases_user", "juice_purchases", ["user_id"])
    op.execute(
        "CREATE INDEX idx_juice_purchases_clears ON juice_purchases (clears_at) "
        "WHERE status = 'clearing'"
    )

    # Juice → project payments
    op.create_table(
        "juice_spends",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("beneficiary_address", sa.Text(), nullable=False),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("juice_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("crypto_amount", sa.Text(), nullable=True),
        sa.Column("exchange_rate", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("tx_hash", sa.Text(), nullable=True),
        sa.Column("tokens_received", sa.Text(), nullable=True),
        *_retry_columns(),
        sa.Column("completed_at", sa.Float(), nullable=True),
        *_claim_columns(),
        *_timestamps(),
        sa.CheckConstraint("juice_amount_cents > 0", name="ck_juice_spends_amount"),
        sa.CheckConstraint(
            "status IN ('pending', 'executing', 'completed', 'failed', 'refunded')",
            name="ck_juice_spends_status",
        ),
    )
    op.create_index("idx_juice_spends_user", "juice_spends", ["user_id"])
    op.create_index(
        "idx_juice_spends_status", "juice_spends", [sa.text("status"), sa.text("created_at")]
    )

    # Juice → user wallet
    op.create_table(
        "juice_cash_outs",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("destination_address", sa.Text(), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("token_address", sa.Text(), nullable=True),
        sa.Column("juice_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("crypto_amount", sa.Text(), nullable=True),
        sa.Column("exchange_rate", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("available_at", sa.Float(), nullable=False),
        sa.Column("tx_hash", sa.Text(), nullable=True),
        *_retry_columns(),
        sa.Column("completed_at", sa.Float(), nullable=True),
        *_claim_columns(),
        *_timestamps(),
        sa.CheckConstraint("juice_amount_cents > 0", name="ck_juice_cash_outs_amount"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', "
            "'cancelled', 'refunded')",
            name="ck_juice_cash_outs_status",
        ),
    )
    op.create_index("idx_juice_cash_outs_user", "juice_cash_outs", ["user_id"])
    op.execute(
        "CREATE INDEX idx_juice_cash_outs_available ON juice_cash_outs (available_at) "
        "WHERE status = 'pending'"
    )

    # Direct fiat → on-chain project settlement
    op.create_table(
        "pending_fiat_payments",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=True),
        sa.Column("external_ref", sa.Text(), nullable=False, unique=True),
        sa.Column("charge_ref", sa.Text(), nullable=True),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="USD"),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("beneficiary_address", sa.Text(), nullable=False),
        sa.Column("risk_score", sa.Integer(), nullable=True),
        sa.Column("settlement_delay_days", sa.Integer(), nullable=False),
        sa.Column("paid_at", sa.Float(), nullable=False),
        sa.Column("settles_at", sa.Float(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("settled_at", sa.Float(), nullable=True),
        sa.Column("settlement_rate", sa.Text(), nullable=True),
        sa.Column("settlement_amount_wei", sa.Text(), nullable=True),
        sa.Column("settlement_tx_hash", sa.Text(), nullable=True),
        sa.Column("tokens_received", sa.Text(), nullable=True),
        *_retry_columns(),
        *_claim_columns(),
        *_timestamps(),
        sa.CheckConstraint(RISK_SCORE_CHECK, name="ck_pending_fiat_risk"),
        sa.CheckConstraint(DELAY_CHECK, name="ck_pending_fiat_delay"),
        sa.CheckConstraint("amount_cents > 0", name="ck_pending_fiat_amount"),
        sa.CheckConstraint(
            "status IN ('pending_settlement', 'settling', 'settled', 'disputed', "
            "'refunded', 'failed')",
            name="ck_pending_fiat_status",
        ),
    )
    op.create_index("idx_pending_fiat_user", "pending_fiat_payments", ["user_id"])
    op.create_index(
        "idx_pending_fiat_project", "pending_fiat_payments", ["project_id", "chain_id"]
    )
    op.execute(
        "CREATE INDEX idx_pending_fiat_settles ON pending_fiat_payments (settles_at) "
        "WHERE status = 'pending_settlement'"
    )

    # Chargebacks, one per frozen row
    op.create_table(
        "disputes",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("target_kind", sa.Text(), nullable=False),
        sa.Column("target_id", sa.Text(), nullable=False),
        sa.Column("external_ref", sa.Text(), nullable=False),
        sa.Column("provider_dispute_id", sa.Text(), nullable=True),
        sa.Column("reason_code", sa.Text(), nullable=True),
        sa.Column("amount_cents", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("resolved_at", sa.Float(), nullable=True),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "target_kind IN ('purchase', 'fiat_payment')", name="ck_disputes_target"
        ),
        sa.CheckConstraint(
            "resolution IS NULL OR resolution IN ('won', 'lost', 'withdrawn')",
            name="ck_disputes_resolution",
        ),
    )
    op.create_index(
        "idx_disputes_target", "disputes", ["target_kind", "target_id"], unique=True
    )

    # Hash-chained audit trail
    op.create_table(
        "ledger_events",
        sa.Column("event_id", sa.Text(), primary_key=True),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("entity_type", sa.Text(), nullable=False),
        sa.Column("entity_id", sa.Text(), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.Float(), nullable=False),
        sa.Column("actor", sa.Text(), nullable=False, server_default=""),
        sa.Column("data", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("prev_hash", sa.Text(), nullable=False, server_default=""),
        sa.Column("event_hash", sa.Text(), nullable=False),
    )
    op.create_index(
        "idx_ledger_events_entity", "ledger_events",
        ["entity_type", "entity_id", "seq"], unique=True,
    )


def downgrade() -> None:
    op.drop_index("idx_ledger_events_entity")
    op.drop_table("ledger_events")
    op.drop_index("idx_disputes_target")
    op.drop_table("disputes")
    op.drop_index("idx_pending_fiat_settles")
    op.drop_index("idx_pending_fiat_project")
    op.drop_index("idx_pending_fiat_user")
    op.drop_table("pending_fiat_payments")
    op.drop_index("idx_juice_cash_outs_available")
    op.drop_index("idx_juice_cash_outs_user")
    op.drop_table("juice_cash_outs")
    op.drop_index("idx_juice_spends_status")
    op.drop_index("idx_juice_spends_user")
    op.drop_table("juice_spends")
    op.drop_index("idx_juice_purchases_clears")
    op.drop_index("idx_juice_purchases_user")
    op.drop_table("juice_purchases")
    op.drop_table("juice_balances")
