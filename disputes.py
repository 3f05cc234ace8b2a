# Juice Dispute Log
# Append-only record of chargebacks against purchases and direct fiat
# payments. One dispute per target row. The resolution (won, lost, withdrawn)
# is written once and never changed; the frozen row stays disputed either way.

import logging
import os
import time
from typing import Optional

from db import Database, get_database
from errors import AlreadyTerminal, InvalidTransition, NotFound, ValidationError
from events import DisputeResolution, LedgerEvent, StateMachine, append_event

log = logging.getLogger("juice")

TARGET_KINDS = ("purchase", "fiat_payment")


def new_dispute_id() -> str:
    return f"DISPUTE-{int(time.time())}-{os.urandom(4).hex()}"


class DisputeLog:
    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def record(self, tx, target_kind: str, target_id: str, external_ref: str,
               reason_code: Optional[str] = None, provider_dispute_id: Optional[str] = None,
               amount_cents: Optional[int] = None, now: Optional[float] = None) -> dict:
        """Insert the dispute record inside the caller's transaction."""
        if target_kind not in TARGET_KINDS:
            raise ValidationError(f"Unknown dispute target: {target_kind}")
        now = time.time() if now is None else now
        record = {
            "id": new_dispute_id(),
            "target_kind": target_kind,
            "target_id": target_id,
            "external_ref": external_ref,
            "provider_dispute_id": provider_dispute_id,
            "reason_code": reason_code,
            "amount_cents": amount_cents,
            "created_at": now,
            "resolved_at": None,
            "resolution": None,
        }
        tx.execute(
            """INSERT INTO disputes
               (id, target_kind, target_id, external_ref, provider_dispute_id,
                reason_code, amount_cents, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (record["id"], target_kind, target_id, external_ref, provider_dispute_id,
             reason_code, amount_cents, now),
        )
        log.warning("DISPUTED %s %s ref=%s reason=%s dispute=%s",
                    target_kind, target_id, external_ref, reason_code, record["id"])
        return record

    def freeze(self, sm: StateMachine, row_id: str, allowed: list, disputed,
               reason_code: Optional[str] = None, provider_dispute_id: Optional[str] = None,
               amount_cents: Optional[int] = None, actor: str = "webhook",
               now: Optional[float] = None) -> tuple[dict, bool]:
        """Move a purchase or fiat payment to disputed and log the dispute.

        Returns (dispute record, created). A redelivered dispute for a row
        that is already disputed returns the existing record untouched.
        """
        now = time.time() if now is None else now
        with self.db.transaction() as tx:
            row = tx.fetchone(f"SELECT * FROM {sm.table} WHERE id = ?", (row_id,))
            if row is None:
                raise NotFound(f"{sm.entity_type} {row_id} not found", row_id=row_id)
            if row["status"] == disputed.value:
                existing = self.for_target(tx, sm.entity_type, row_id)
                log.info("DISPUTED %s %s redelivered, already frozen", sm.entity_type, row_id)
                return existing, False

            ok = sm.transition(
                tx, row_id, allowed, disputed, now=now, actor=actor,
                sets={"claimed_by": None, "claim_expires_at": None},
                data={"reason_code": reason_code, "provider_dispute_id": provider_dispute_id},
            )
            if not ok:
                current = tx.fetchone(
                    f"SELECT status FROM {sm.table} WHERE id = ?", (row_id,)
                )["status"]
                log.error("DISPUTED %s %s arrived too late, row is already %s (ref=%s)",
                          sm.entity_type, row_id, current, row["external_ref"])
                raise AlreadyTerminal(row_id, current)

            record = self.record(tx, sm.entity_type, row_id, row["external_ref"],
                                 reason_code=reason_code,
                                 provider_dispute_id=provider_dispute_id,
                                 amount_cents=amount_cents, now=now)
        return record, True

    def for_target(self, tx, target_kind: str, target_id: str) -> Optional[dict]:
        return tx.fetchone(
            "SELECT * FROM disputes WHERE target_kind = ? AND target_id = ?",
            (target_kind, target_id),
        )

    def get(self, dispute_id: str) -> dict:
        with self.db.connection() as tx:
            row = tx.fetchone("SELECT * FROM disputes WHERE id = ?", (dispute_id,))
        if row is None:
            raise NotFound(f"Dispute {dispute_id} not found", dispute_id=dispute_id)
        return row

    def list(self, unresolved_only: bool = False, limit: int = 100) -> list[dict]:
        sql = "SELECT * FROM disputes"
        if unresolved_only:
            sql += " WHERE resolution IS NULL"
        sql += " ORDER BY created_at DESC LIMIT ?"
        with self.db.connection() as tx:
            return tx.fetchall(sql, (limit,))

    def resolve(self, dispute_id: str, resolution: str, actor: str = "operator",
                now: Optional[float] = None) -> dict:
        """Record the outcome once. A second resolution is rejected."""
        try:
            resolution = DisputeResolution(resolution)
        except ValueError:
            raise ValidationError(f"Unknown dispute resolution: {resolution!r}")
        now = time.time() if now is None else now

        with self.db.transaction() as tx:
            row = tx.fetchone("SELECT * FROM disputes WHERE id = ?", (dispute_id,))
            if row is None:
                raise NotFound(f"Dispute {dispute_id} not found", dispute_id=dispute_id)
            cur = tx.execute(
                "UPDATE disputes SET resolution = ?, resolved_at = ? "
                "WHERE id = ? AND resolution IS NULL",
                (resolution.value, now, dispute_id),
            )
            if cur.rowcount != 1:
                raise InvalidTransition(
                    f"Dispute {dispute_id} already resolved ({row['resolution']})"
                )
            append_event(tx, LedgerEvent(
                event_type="dispute.resolved",
                entity_type="dispute",
                entity_id=dispute_id,
                timestamp=now,
                actor=actor,
                data={"resolution": resolution.value, "target_id": row["target_id"]},
            ))

        log.info("DISPUTE %s resolved %s (%s %s)", dispute_id, resolution.value,
                 row["target_kind"], row["target_id"])
        return self.get(dispute_id)


_dispute_log: Optional[DisputeLog] = None


def get_dispute_log() -> DisputeLog:
    global _dispute_log
    if _dispute_log is None:
        _dispute_log = DisputeLog()
    return _dispute_log
