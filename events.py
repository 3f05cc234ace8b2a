# Juice Ledger State Machines + Audit Events
# Strict lifecycles for every pipeline, compare-and-set transitions, and an
# append-only event history written in the same transaction as the change.
#
# Purchase:     pending → clearing → credited | disputed | refunded
# Spend:        pending → executing → completed | failed → executing | refunded
# Cash-out:     pending → processing → completed | failed → processing | refunded
#               pending → cancelled
# Fiat payment: pending_settlement → settling → settled | failed → settling
#               pending_settlement | settling | failed → disputed
#               pending_settlement | failed → refunded
#
# TAMPER-EVIDENT: each event carries the SHA-256 hash of the previous event
# for the same entity. Status changes on an entity are serialized by the CAS,
# so every entity has a single linear chain.

import hashlib
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Iterable, Optional

from errors import InvalidTransition, ValidationError

log = logging.getLogger("juice")


# ── States ────────────────────────────────────────────────────────────

class PurchaseStatus(str, Enum):
    PENDING = "pending"         # Charge capture still in flight
    CLEARING = "clearing"       # Waiting out the risk delay
    CREDITED = "credited"       # Terminal: balance credited
    DISPUTED = "disputed"       # Terminal: chargeback, never credited
    REFUNDED = "refunded"       # Terminal: refunded at the processor


class SpendStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"     # Debited, on-chain payment in flight
    COMPLETED = "completed"     # Terminal
    FAILED = "failed"           # Retryable until the budget is spent
    REFUNDED = "refunded"       # Terminal: credit restored


class CashOutStatus(str, Enum):
    PENDING = "pending"         # Debited, inside the fraud window
    PROCESSING = "processing"   # Transfer in flight
    COMPLETED = "completed"     # Terminal
    FAILED = "failed"           # Retryable until the budget is spent
    CANCELLED = "cancelled"     # Terminal: user cancelled, credit restored
    REFUNDED = "refunded"       # Terminal: operator refund, credit restored


class FiatPaymentStatus(str, Enum):
    PENDING_SETTLEMENT = "pending_settlement"
    SETTLING = "settling"       # On-chain payment in flight
    SETTLED = "settled"         # Terminal
    DISPUTED = "disputed"       # Terminal: chargeback, never settled
    REFUNDED = "refunded"       # Terminal
    FAILED = "failed"           # Retryable


class DisputeResolution(str, Enum):
    WON = "won"
    LOST = "lost"
    WITHDRAWN = "withdrawn"


# Valid transitions per entity type. Anything not listed is rejected.
VALID_TRANSITIONS: dict[str, dict[Enum, set]] = {
    "purchase": {
        PurchaseStatus.PENDING: {PurchaseStatus.CLEARING, PurchaseStatus.DISPUTED,
                                 PurchaseStatus.REFUNDED},
        PurchaseStatus.CLEARING: {PurchaseStatus.CREDITED, PurchaseStatus.DISPUTED,
                                  PurchaseStatus.REFUNDED},
        PurchaseStatus.CREDITED: set(),
        PurchaseStatus.DISPUTED: set(),
        PurchaseStatus.REFUNDED: set(),
    },
    "spend": {
        SpendStatus.PENDING: {SpendStatus.EXECUTING},
        SpendStatus.EXECUTING: {SpendStatus.COMPLETED, SpendStatus.FAILED},
        SpendStatus.FAILED: {SpendStatus.EXECUTING, SpendStatus.REFUNDED},
        SpendStatus.COMPLETED: set(),
        SpendStatus.REFUNDED: set(),
    },
    "cash_out": {
        CashOutStatus.PENDING: {CashOutStatus.PROCESSING, CashOutStatus.CANCELLED},
        CashOutStatus.PROCESSING: {CashOutStatus.COMPLETED, CashOutStatus.FAILED},
        CashOutStatus.FAILED: {CashOutStatus.PROCESSING, CashOutStatus.REFUNDED},
        CashOutStatus.COMPLETED: set(),
        CashOutStatus.CANCELLED: set(),
        CashOutStatus.REFUNDED: set(),
    },
    "fiat_payment": {
        FiatPaymentStatus.PENDING_SETTLEMENT: {FiatPaymentStatus.SETTLING,
                                               FiatPaymentStatus.DISPUTED,
                                               FiatPaymentStatus.REFUNDED},
        FiatPaymentStatus.SETTLING: {FiatPaymentStatus.SETTLED, FiatPaymentStatus.FAILED,
                                     FiatPaymentStatus.DISPUTED},
        FiatPaymentStatus.FAILED: {FiatPaymentStatus.SETTLING, FiatPaymentStatus.DISPUTED,
                                   FiatPaymentStatus.REFUNDED},
        FiatPaymentStatus.SETTLED: set(),
        FiatPaymentStatus.DISPUTED: set(),
        FiatPaymentStatus.REFUNDED: set(),
    },
}

STATUS_ENUMS = {
    "purchase": PurchaseStatus,
    "spend": SpendStatus,
    "cash_out": CashOutStatus,
    "fiat_payment": FiatPaymentStatus,
}


def parse_status(entity_type: str, value: str) -> Enum:
    """Convert a stored status into its enum. Unknown values are rejected."""
    enum_cls = STATUS_ENUMS[entity_type]
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown {entity_type} status: {value!r}")


def is_terminal(entity_type: str, status) -> bool:
    return not VALID_TRANSITIONS[entity_type][parse_status(entity_type, status)]


# ── Events ────────────────────────────────────────────────────────────

@dataclass
class LedgerEvent:
    """Immutable record of one status change or money movement."""
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = ""
    entity_type: str = ""      # purchase, spend, cash_out, fiat_payment, dispute
    entity_id: str = ""
    seq: int = 0
    timestamp: float = field(default_factory=time.time)
    actor: str = ""            # "runner:<id>", "webhook", "user:<id>", "operator"
    data: dict = field(default_factory=dict)
    prev_hash: str = ""
    event_hash: str = ""

    def compute_hash(self) -> str:
        canonical = json.dumps({
            "event_id": self.event_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "seq": self.seq,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "data": self.data,
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        return asdict(self)


def append_event(tx, event: LedgerEvent) -> LedgerEvent:
    """Append an event inside the caller's transaction, chained per entity."""
    row = tx.fetchone(
        "SELECT seq, event_hash FROM ledger_events "
        "WHERE entity_type = ? AND entity_id = ? ORDER BY seq DESC LIMIT 1",
        (event.entity_type, event.entity_id),
    )
    event.seq = (row["seq"] + 1) if row else 1
    event.prev_hash = row["event_hash"] if row else ""
    event.event_hash = event.compute_hash()
    tx.execute(
        """INSERT INTO ledger_events
           (event_id, event_type, entity_type, entity_id, seq, timestamp,
            actor, data, prev_hash, event_hash)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            event.event_id, event.event_type, event.entity_type, event.entity_id,
            event.seq, event.timestamp, event.actor,
            json.dumps(event.data, sort_keys=True, default=str),
            event.prev_hash, event.event_hash,
        ),
    )
    return event


def _row_to_event(row: dict) -> LedgerEvent:
    return LedgerEvent(
        event_id=row["event_id"],
        event_type=row["event_type"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        seq=row["seq"],
        timestamp=row["timestamp"],
        actor=row["actor"],
        data=json.loads(row["data"] or "{}"),
        prev_hash=row["prev_hash"],
        event_hash=row["event_hash"],
    )


def entity_history(tx, entity_type: str, entity_id: str) -> list[LedgerEvent]:
    rows = tx.fetchall(
        "SELECT * FROM ledger_events WHERE entity_type = ? AND entity_id = ? ORDER BY seq",
        (entity_type, entity_id),
    )
    return [_row_to_event(r) for r in rows]


def verify_chain(tx, entity_type: str, entity_id: str) -> dict:
    """Replay an entity's chain. Any edited or missing event breaks it."""
    events = entity_history(tx, entity_type, entity_id)
    prev = ""
    for i, evt in enumerate(events, start=1):
        if evt.seq != i or evt.prev_hash != prev or evt.compute_hash() != evt.event_hash:
            return {"valid": False, "events_checked": i, "broken_at": evt.event_id}
        prev = evt.event_hash
    return {"valid": True, "events_checked": len(events), "broken_at": None}


# ── State Machine ─────────────────────────────────────────────────────

TABLES = {
    "purchase": "juice_purchases",
    "spend": "juice_spends",
    "cash_out": "juice_cash_outs",
    "fiat_payment": "pending_fiat_payments",
}


class StateMachine:
    """Validated compare-and-set transitions for one entity type.

    A transition succeeds only if the row is still in one of the expected
    states at write time. Losing a race returns False instead of raising, so
    a dispute and a settlement landing together resolve to exactly one winner.
    """

    def __init__(self, entity_type: str):
        self.entity_type = entity_type
        self.table = TABLES[entity_type]
        self.transitions = VALID_TRANSITIONS[entity_type]

    def check(self, current, target):
        current = parse_status(self.entity_type, current)
        target = parse_status(self.entity_type, target)
        if target not in self.transitions[current]:
            raise InvalidTransition(
                f"Invalid {self.entity_type} transition: {current.value} → {target.value}"
            )
        return current, target

    def transition(
        self,
        tx,
        row_id: str,
        expected: Iterable,
        target,
        now: Optional[float] = None,
        actor: str = "system",
        sets: Optional[dict] = None,
        data: Optional[dict] = None,
    ) -> bool:
        """CAS the row from any of `expected` to `target`, plus extra column sets.

        Returns True if this call won. Records an event only on success.
        """
        now = time.time() if now is None else now
        expected = [parse_status(self.entity_type, s) for s in expected]
        for current in expected:
            self.check(current, target)
        target = parse_status(self.entity_type, target)

        columns = {"status": target.value, "updated_at": now, **(sets or {})}
        assignments = ", ".join(f"{col} = ?" for col in columns)
        placeholders = ", ".join("?" for _ in expected)
        row = tx.fetchone(
            f"SELECT status FROM {self.table} WHERE id = ?", (row_id,)
        )
        if row is None:
            return False
        cur = tx.execute(
            f"UPDATE {self.table} SET {assignments} "
            f"WHERE id = ? AND status IN ({placeholders})",
            (*columns.values(), row_id, *[s.value for s in expected]),
        )
        if cur.rowcount != 1:
            return False

        append_event(tx, LedgerEvent(
            event_type=f"{self.entity_type}.{target.value}",
            entity_type=self.entity_type,
            entity_id=row_id,
            timestamp=now,
            actor=actor,
            data={"previous_state": row["status"], "new_state": target.value, **(data or {})},
        ))
        log.info("STATE %s %s → %s | %s | actor=%s",
                 self.entity_type, row["status"], target.value, row_id, actor)
        return True

    def record_created(self, tx, row_id: str, status, now: float, actor: str,
                       data: Optional[dict] = None):
        """Log the initial state of a freshly inserted row."""
        status = parse_status(self.entity_type, status)
        append_event(tx, LedgerEvent(
            event_type=f"{self.entity_type}.created",
            entity_type=self.entity_type,
            entity_id=row_id,
            timestamp=now,
            actor=actor,
            data={"new_state": status.value, **(data or {})},
        ))
