# Juice Ledger Store
# Per-user stored-value balance, USD-pegged, held as integer cents.
#
#   - credit/debit always run inside the caller's transaction, together with
#     the pipeline status change that justifies them
#   - balance_cents >= 0 is a CHECK constraint; a debit that would break it
#     surfaces as InsufficientBalance, never as a negative balance
#   - lifetime counters track purchases, spends and cash-outs net of refunds

import logging
import os
import time
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Optional

from db import Database, get_database
from errors import InsufficientBalance, ValidationError

log = logging.getLogger("juice")

CENT = Decimal("0.01")
# Largest single amount accepted anywhere, in cents ($10B). Keeps every
# balance and lifetime counter far inside a signed 64-bit column.
MAX_AMOUNT_CENTS = int(os.environ.get("JUICE_MAX_AMOUNT_CENTS", str(10 ** 12)))


# ── Money helpers ─────────────────────────────────────────────────────

def to_cents(amount) -> int:
    """Convert a positive USD amount (Decimal, str or int dollars) to cents.

    Floats are refused; more than two decimal places is a validation error.
    """
    if isinstance(amount, bool) or isinstance(amount, float):
        raise ValidationError(f"Amount must be a Decimal or string, got {amount!r}")
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")
    if value <= 0:
        raise ValidationError(f"Amount must be positive: {amount}")
    if value > cents_to_decimal(MAX_AMOUNT_CENTS):
        raise ValidationError(
            f"Amount exceeds the maximum of {cents_to_decimal(MAX_AMOUNT_CENTS)}"
        )
    try:
        whole = value.quantize(CENT, rounding=ROUND_DOWN)
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount!r}")
    if value != whole:
        raise ValidationError(f"Amount has more than 2 decimal places: {amount}")
    return int(value * 100)


def check_cents(amount_cents) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError(f"Amount in cents must be an integer, got {amount_cents!r}")
    if amount_cents <= 0:
        raise ValidationError(f"Amount must be positive: {amount_cents}")
    if amount_cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"Amount exceeds the maximum of {MAX_AMOUNT_CENTS} cents")
    return amount_cents


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


# Credit reasons and the lifetime counter each one moves.
CREDIT_REASONS = {
    "purchase": ("lifetime_purchased_cents", 1),
    "spend_refund": ("lifetime_spent_cents", -1),
    "cashout_refund": ("lifetime_cashed_out_cents", -1),
    "cashout_cancel": ("lifetime_cashed_out_cents", -1),
}

DEBIT_REASONS = {
    "spend": "lifetime_spent_cents",
    "cash_out": "lifetime_cashed_out_cents",
}


@dataclass
class BalanceSnapshot:
    user_id: str
    balance: Decimal
    lifetime_purchased: Decimal
    lifetime_spent: Decimal
    lifetime_cashed_out: Decimal
    last_activity_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "balance": str(self.balance),
            "lifetime_purchased": str(self.lifetime_purchased),
            "lifetime_spent": str(self.lifetime_spent),
            "lifetime_cashed_out": str(self.lifetime_cashed_out),
            "last_activity_at": self.last_activity_at,
        }


# ── Ledger Store ──────────────────────────────────────────────────────

class LedgerStore:
    """The only writer of juice_balances."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def _ensure_row(self, tx, user_id: str, now: float):
        tx.execute(
            """INSERT INTO juice_balances (user_id, balance_cents, created_at, updated_at)
               VALUES (?, 0, ?, ?)
               ON CONFLICT (user_id) DO NOTHING""",
            (user_id, now, now),
        )

    def _balance(self, tx, user_id: str) -> int:
        row = tx.fetchone(
            "SELECT balance_cents FROM juice_balances WHERE user_id = ?", (user_id,)
        )
        return row["balance_cents"] if row else 0

    def credit(self, tx, user_id: str, amount_cents: int, source_ref: str,
               reason: str, now: Optional[float] = None) -> int:
        """Add credit. Creates the balance row on first use. Returns the new balance."""
        check_cents(amount_cents)
        if reason not in CREDIT_REASONS:
            raise ValidationError(f"Unknown credit reason: {reason}")
        now = time.time() if now is None else now
        counter, sign = CREDIT_REASONS[reason]

        self._ensure_row(tx, user_id, now)
        tx.execute(
            f"""UPDATE juice_balances
                SET balance_cents = balance_cents + ?,
                    {counter} = {counter} + ?,
                    last_activity_at = ?,
                    updated_at = ?
                WHERE user_id = ?""",
            (amount_cents, sign * amount_cents, now, now, user_id),
        )
        balance = self._balance(tx, user_id)
        log.info("CREDIT user=%s amount=%s reason=%s ref=%s balance=%s",
                 user_id, cents_to_decimal(amount_cents), reason, source_ref,
                 cents_to_decimal(balance))
        return balance

    def debit(self, tx, user_id: str, amount_cents: int, source_ref: str,
              reason: str, now: Optional[float] = None) -> int:
        """Remove credit in one read-modify-write statement. Returns the new balance.

        Raises InsufficientBalance if the user has no balance row or the CHECK
        constraint rejects the result.
        """
        check_cents(amount_cents)
        if reason not in DEBIT_REASONS:
            raise ValidationError(f"Unknown debit reason: {reason}")
        now = time.time() if now is None else now
        counter = DEBIT_REASONS[reason]

        try:
            cur = tx.execute(
                f"""UPDATE juice_balances
                    SET balance_cents = balance_cents - ?,
                        {counter} = {counter} + ?,
                        last_activity_at = ?,
                        updated_at = ?
                    WHERE user_id = ?""",
                (amount_cents, amount_cents, now, now, user_id),
            )
        except tx.integrity_errors():
            log.warning("DEBIT REJECTED user=%s amount=%s reason=%s ref=%s",
                        user_id, cents_to_decimal(amount_cents), reason, source_ref)
            raise InsufficientBalance(user_id, amount_cents)
        if cur.rowcount != 1:
            raise InsufficientBalance(user_id, amount_cents)

        balance = self._balance(tx, user_id)
        log.info("DEBIT user=%s amount=%s reason=%s ref=%s balance=%s",
                 user_id, cents_to_decimal(amount_cents), reason, source_ref,
                 cents_to_decimal(balance))
        return balance

    # ── Queries ───────────────────────────────────────────────────────

    def snapshot(self, user_id: str) -> BalanceSnapshot:
        """Balance snapshot. Users with no balance row read as all zeros."""
        with self.db.connection() as tx:
            row = tx.fetchone("SELECT * FROM juice_balances WHERE user_id = ?", (user_id,))
        if row is None:
            zero = cents_to_decimal(0)
            return BalanceSnapshot(user_id, zero, zero, zero, zero, None)
        return BalanceSnapshot(
            user_id=user_id,
            balance=cents_to_decimal(row["balance_cents"]),
            lifetime_purchased=cents_to_decimal(row["lifetime_purchased_cents"]),
            lifetime_spent=cents_to_decimal(row["lifetime_spent_cents"]),
            lifetime_cashed_out=cents_to_decimal(row["lifetime_cashed_out_cents"]),
            last_activity_at=row["last_activity_at"],
        )

    def get_transactions(self, user_id: str, limit: int = 50, offset: int = 0) -> list[dict]:
        """Purchases, spends and cash-outs for a user, newest first.

        Purchases are positive, spends and cash-outs negative.
        """
        limit = max(1, min(int(limit), 500))
        offset = max(0, int(offset))
        with self.db.connection() as tx:
            rows = tx.fetchall(
                """SELECT id, 'purchase' AS type, juice_amount_cents AS amount_cents,
                          status, created_at, external_ref AS reference
                   FROM juice_purchases WHERE user_id = ?
                   UNION ALL
                   SELECT id, 'spend' AS type, -juice_amount_cents AS amount_cents,
                          status, created_at, tx_hash AS reference
                   FROM juice_spends WHERE user_id = ?
                   UNION ALL
                   SELECT id, 'cash_out' AS type, -juice_amount_cents AS amount_cents,
                          status, created_at, tx_hash AS reference
                   FROM juice_cash_outs WHERE user_id = ?
                   ORDER BY created_at DESC, id DESC
                   LIMIT ? OFFSET ?""",
                (user_id, user_id, user_id, limit, offset),
            )
        return [
            {
                "id": r["id"],
                "type": r["type"],
                "amount": str(cents_to_decimal(r["amount_cents"])),
                "status": r["status"],
                "reference": r["reference"],
                "created_at": r["created_at"],
            }
            for r in rows
        ]


_ledger: Optional[LedgerStore] = None


def get_ledger() -> LedgerStore:
    global _ledger
    if _ledger is None:
        _ledger = LedgerStore()
    return _ledger
