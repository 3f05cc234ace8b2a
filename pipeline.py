# Juice Execution Pipeline
# Shared machinery for the three pipelines that end in an on-chain payment
# (spends, cash-outs, direct fiat settlement):
#
#   in-flight row ─dispatch─▶ executor ─result─▶ completed | failed
#                      │                               │
#                 timeout: stays in flight,       retry with backoff
#                 re-dispatched with the same     until MAX_RETRIES,
#                 idempotency key                 then operator refund
#
# retry_count counts failed and timed-out attempts. A failed row with
# retry_count >= MAX_RETRIES is exhausted and only leaves via refund.
# An in-flight row that timed out on its last attempt is stalled: it is no
# longer re-dispatched and is never refunded, because the payment may have
# gone through. Only an executor result moves it on.

import logging
import os
import re
import time
from typing import Callable, Optional

from db import Database, get_database
from errors import (
    AlreadyTerminal,
    ExecutionFailure,
    ExecutionTimeout,
    InvalidTransition,
    NotFound,
    RetryExhausted,
    ValidationError,
)
from events import LedgerEvent, StateMachine, append_event, is_terminal
from executor import (
    EXECUTION_TIMEOUT_SEC,
    ChainExecutor,
    ExecutePaymentRequest,
    ExecutionResult,
    RateProvider,
    get_executor,
    get_rate_provider,
)
from ledger import LedgerStore
from runner import CLAIM_TIMEOUT_SEC, BatchResult, claim_batch, new_runner_id, release_claim

log = logging.getLogger("juice")

MAX_RETRIES = int(os.environ.get("JUICE_MAX_RETRIES", "5"))
RETRY_BACKOFF_SEC = int(os.environ.get("JUICE_RETRY_BACKOFF_SEC", "60"))
DEFAULT_CHAIN_ID = int(os.environ.get("JUICE_DEFAULT_CHAIN_ID", "42161"))

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

STATUS_PROCESSING = "processing"
STATUS_CONTACT_SUPPORT = "failed, contact support"


def validate_address(address, field_name: str = "address") -> str:
    if not isinstance(address, str) or not ADDRESS_RE.match(address):
        raise ValidationError(f"Invalid {field_name}: {address!r}")
    return address


def validate_positive_int(value, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field_name} must be a positive integer, got {value!r}")
    return value


def new_row_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time())}-{os.urandom(4).hex()}"


def retry_delay(retry_count: int, base: int = RETRY_BACKOFF_SEC) -> int:
    """Seconds a failed row waits before the next attempt: base, 2x, 4x, ..."""
    return base * 2 ** max(retry_count - 1, 0)


def lazy_rate(rates: RateProvider) -> Callable:
    """Fetch the ETH/USD rate at most once per batch, on first use."""
    cache = {}

    def get():
        if "rate" not in cache:
            cache["rate"] = rates.eth_usd()
        return cache["rate"]

    return get


class ExecutionPipeline:
    """Base for pipelines whose rows are paid out by the chain executor.

    Subclasses set the entity type, row-id prefix and statuses, and build
    the execute-payment request for a row.
    """

    entity_type = ""
    prefix = ""
    kind = ""
    verb = ""
    in_flight = None
    failed = None
    completed = None
    public_columns = ()

    def __init__(self, db: Optional[Database] = None,
                 executor: Optional[ChainExecutor] = None,
                 rates: Optional[RateProvider] = None,
                 max_retries: int = MAX_RETRIES,
                 retry_backoff_sec: int = RETRY_BACKOFF_SEC,
                 execution_timeout_sec: int = EXECUTION_TIMEOUT_SEC):
        self.db = db or get_database()
        self._executor = executor
        self._rates = rates
        self.max_retries = max_retries
        self.retry_backoff_sec = retry_backoff_sec
        self.execution_timeout_sec = execution_timeout_sec
        self.sm = StateMachine(self.entity_type)
        self.table = self.sm.table
        self.ledger = LedgerStore(self.db)

    @property
    def executor(self) -> ChainExecutor:
        return self._executor or get_executor()

    @property
    def rates(self) -> RateProvider:
        return self._rates or get_rate_provider()

    # ── Hooks ─────────────────────────────────────────────────────────

    def build_request(self, row: dict) -> ExecutePaymentRequest:
        raise NotImplementedError

    def lock_sets(self, row: dict, rate) -> dict:
        """Columns derived from the exchange rate, stored on entering flight."""
        return {}

    def completion_sets(self, result: ExecutionResult, now: float) -> dict:
        return {"tx_hash": result.tx_hash, "completed_at": now}

    # ── Queries ───────────────────────────────────────────────────────

    def get(self, row_id: str) -> dict:
        with self.db.connection() as tx:
            row = tx.fetchone(f"SELECT * FROM {self.table} WHERE id = ?", (row_id,))
        if row is None:
            raise NotFound(f"{self.entity_type} {row_id} not found", row_id=row_id)
        return row

    def list_for_user(self, user_id: str, limit: int = 50) -> list[dict]:
        with self.db.connection() as tx:
            return tx.fetchall(
                f"SELECT * FROM {self.table} WHERE user_id = ? "
                f"ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            )

    def list_exhausted(self, limit: int = 100) -> list[dict]:
        """Failed rows that used up their retries and need an operator."""
        with self.db.connection() as tx:
            return tx.fetchall(
                f"SELECT * FROM {self.table} WHERE status = ? AND retry_count >= ? "
                f"ORDER BY updated_at LIMIT ?",
                (self.failed.value, self.max_retries, limit),
            )

    def is_exhausted(self, row: dict) -> bool:
        return row["status"] == self.failed.value and row["retry_count"] >= self.max_retries

    def list_stalled(self, limit: int = 100) -> list[dict]:
        """In-flight rows that timed out on every attempt, awaiting an executor result."""
        with self.db.connection() as tx:
            return tx.fetchall(
                f"SELECT * FROM {self.table} WHERE status = ? AND retry_count >= ? "
                f"AND dispatched_at IS NOT NULL ORDER BY updated_at LIMIT ?",
                (self.in_flight.value, self.max_retries, limit),
            )

    def user_facing_status(self, row: dict) -> str:
        """Status as shown to the user. Retry counts stay internal."""
        status = row["status"]
        if status == self.failed.value:
            return STATUS_CONTACT_SUPPORT if self.is_exhausted(row) else STATUS_PROCESSING
        if status == self.in_flight.value:
            return STATUS_PROCESSING
        return status

    def present(self, row: dict) -> dict:
        """The row as its user sees it. Retry bookkeeping and raw errors stay internal."""
        view = {k: row[k] for k in self.public_columns if k in row}
        view["display_status"] = self.user_facing_status(row)
        return view

    # ── Dispatch ──────────────────────────────────────────────────────

    def execute_due(self, now: Optional[float] = None, runner_id: Optional[str] = None,
                    limit: Optional[int] = None) -> BatchResult:
        """Dispatch in-flight rows never sent, or whose last dispatch timed out."""
        now = time.time() if now is None else now
        runner_id = runner_id or new_runner_id()
        result = BatchResult(job=f"{self.entity_type}.execute_due")
        actor = f"runner:{runner_id}"

        def advance(tx, row):
            if row["dispatched_at"] is None:
                cur = tx.execute(
                    f"UPDATE {self.table} SET dispatched_at = ?, updated_at = ? "
                    f"WHERE id = ? AND status = ?",
                    (now, now, row["id"], self.in_flight.value),
                )
                row["dispatched_at"] = now
                return cur.rowcount == 1
            return self._redispatch_timed_out(tx, row, now, actor)

        rows = claim_batch(
            self.db, self.table,
            "status = ? AND (dispatched_at IS NULL OR "
            "(dispatched_at <= ? AND retry_count < ?))",
            (self.in_flight.value, now - self.execution_timeout_sec, self.max_retries),
            limit=limit, runner_id=runner_id, now=now, advance=advance, result=result,
        )
        for row in rows:
            self._dispatch_row(row, result, runner_id, now)
        return result

    def _redispatch_timed_out(self, tx, row: dict, now: float, actor: str) -> bool:
        attempts = row["retry_count"] + 1
        if attempts >= self.max_retries:
            cur = tx.execute(
                f"UPDATE {self.table} SET retry_count = ?, last_retry_at = ?, "
                f"error_message = ?, updated_at = ? WHERE id = ? AND status = ?",
                (attempts, now, "execution timed out, awaiting executor result",
                 now, row["id"], self.in_flight.value),
            )
            if cur.rowcount == 1:
                append_event(tx, LedgerEvent(
                    event_type=f"{self.entity_type}.stalled",
                    entity_type=self.entity_type,
                    entity_id=row["id"],
                    timestamp=now,
                    actor=actor,
                    data={"retry_count": attempts, "last_dispatch_at": row["dispatched_at"]},
                ))
                log.error("%s %s timed out on its last attempt (%d), left in flight "
                          "for operator review", self.verb, row["id"], attempts)
            return False

        cur = tx.execute(
            f"UPDATE {self.table} SET retry_count = ?, last_retry_at = ?, "
            f"dispatched_at = ?, updated_at = ? WHERE id = ? AND status = ?",
            (attempts, now, now, now, row["id"], self.in_flight.value),
        )
        if cur.rowcount != 1:
            return False
        append_event(tx, LedgerEvent(
            event_type=f"{self.entity_type}.redispatched",
            entity_type=self.entity_type,
            entity_id=row["id"],
            timestamp=now,
            actor=actor,
            data={"retry_count": attempts, "previous_dispatch_at": row["dispatched_at"]},
        ))
        log.warning("%s %s dispatch timed out, re-dispatching (attempt %d)",
                    self.verb, row["id"], attempts)
        row["retry_count"] = attempts
        row["dispatched_at"] = now
        return True

    def _dispatch_row(self, row: dict, result: BatchResult, runner_id: str, now: float):
        """Send one claimed row to the executor and record what came back."""
        row_id = row["id"]
        try:
            request = self.build_request(row)
            try:
                outcome = self.executor.execute(request)
            except ExecutionTimeout as e:
                log.warning("%s %s executor timed out, left in flight: %s", self.verb, row_id, e)
                with self.db.transaction() as tx:
                    release_claim(tx, self.table, row_id, runner_id)
                result.count("failed", f"{row_id}: {e}")
                return
            except ExecutionFailure as e:
                outcome = ExecutionResult(row_id=row_id, success=False, error=str(e))

            if outcome is None:
                with self.db.transaction() as tx:
                    release_claim(tx, self.table, row_id, runner_id)
                result.count("succeeded")
                return

            applied = self.record_result(outcome, actor=f"runner:{runner_id}", now=now)
            if not applied:
                result.count("skipped")
            elif outcome.success:
                result.count("succeeded")
            else:
                result.count("failed", f"{row_id}: {outcome.error}")
        except Exception as e:
            # The lease expires on its own; the next run picks the row up again.
            log.exception("%s %s dispatch failed", self.verb, row_id)
            result.count("failed", f"{row_id}: {e}")

    def record_result(self, result: ExecutionResult, actor: str = "webhook",
                      now: Optional[float] = None) -> bool:
        """Apply an execution result. Returns False if the row had already moved on."""
        now = time.time() if now is None else now
        with self.db.transaction() as tx:
            row = tx.fetchone(f"SELECT * FROM {self.table} WHERE id = ?", (result.row_id,))
            if row is None:
                raise NotFound(f"{self.entity_type} {result.row_id} not found",
                               row_id=result.row_id)
            release = {"claimed_by": None, "claim_expires_at": None}
            if result.success:
                target = self.completed
                applied = self.sm.transition(
                    tx, row["id"], [self.in_flight], target, now=now, actor=actor,
                    sets={**self.completion_sets(result, now), "error_message": None, **release},
                    data={"tx_hash": result.tx_hash, "tokens_received": result.tokens_received},
                )
                attempts = row["retry_count"]
            else:
                target = self.failed
                attempts = row["retry_count"] + 1
                applied = self.sm.transition(
                    tx, row["id"], [self.in_flight], target, now=now, actor=actor,
                    sets={
                        "error_message": (result.error or "execution failed")[:500],
                        "retry_count": attempts,
                        "last_retry_at": now,
                        **release,
                    },
                    data={"error": result.error, "retry_count": attempts},
                )

        if not applied:
            if row["status"] == target.value:
                log.info("%s %s duplicate result ignored (%s)", self.verb, row["id"], row["status"])
            else:
                log.error("%s %s result (success=%s) arrived while row is %s, not applied",
                          self.verb, row["id"], result.success, row["status"])
            return False

        if result.success:
            log.info("%s %s completed tx=%s tokens=%s",
                     self.verb, row["id"], result.tx_hash, result.tokens_received)
        elif attempts >= self.max_retries:
            log.error("%s %s failed, retries exhausted (%d): %s",
                      self.verb, row["id"], attempts, result.error)
        else:
            log.warning("%s %s failed (attempt %d/%d): %s",
                        self.verb, row["id"], attempts, self.max_retries, result.error)
        return True

    # ── Retry ─────────────────────────────────────────────────────────

    def _retry_sets(self, row: dict, rate, now: float, runner_id: Optional[str] = None) -> dict:
        sets = {**self.lock_sets(row, rate), "dispatched_at": now, "error_message": None}
        if runner_id is not None:
            sets["claimed_by"] = runner_id
            sets["claim_expires_at"] = now + CLAIM_TIMEOUT_SEC
        return sets

    def retry_due(self, now: Optional[float] = None, runner_id: Optional[str] = None,
                  limit: Optional[int] = None) -> BatchResult:
        """Re-attempt failed rows whose backoff has elapsed."""
        now = time.time() if now is None else now
        runner_id = runner_id or new_runner_id()
        result = BatchResult(job=f"{self.entity_type}.retry_due")
        actor = f"runner:{runner_id}"
        rate = lazy_rate(self.rates)

        windows, params = [], [self.failed.value, self.max_retries]
        for n in range(self.max_retries):
            windows.append("(retry_count = ? AND last_retry_at <= ?)")
            params.extend([n, now - retry_delay(n, self.retry_backoff_sec)])
        where = (f"status = ? AND retry_count < ? AND "
                 f"(last_retry_at IS NULL OR {' OR '.join(windows)})")

        def advance(tx, row):
            sets = self._retry_sets(row, rate(), now)
            ok = self.sm.transition(tx, row["id"], [self.failed], self.in_flight,
                                    now=now, actor=actor, sets=sets,
                                    data={"retry_count": row["retry_count"]})
            row.update(sets)
            return ok

        rows = claim_batch(self.db, self.table, where, tuple(params), limit=limit,
                           runner_id=runner_id, now=now, order_by="last_retry_at",
                           advance=advance, result=result)
        for row in rows:
            self._dispatch_row(row, result, runner_id, now)
        return result

    def retry_now(self, row_id: str, actor: str = "operator",
                  now: Optional[float] = None) -> dict:
        """Operator retry of one failed row, ignoring the backoff window."""
        now = time.time() if now is None else now
        row = self.get(row_id)
        if row["status"] != self.failed.value:
            if is_terminal(self.entity_type, row["status"]):
                raise AlreadyTerminal(row_id, row["status"])
            raise InvalidTransition(f"{row_id} is {row['status']}, only failed rows can be retried")
        if row["retry_count"] >= self.max_retries:
            raise RetryExhausted(row_id, row["retry_count"])

        runner_id = new_runner_id()
        sets = self._retry_sets(row, self.rates.eth_usd(), now, runner_id)
        with self.db.transaction() as tx:
            ok = self.sm.transition(tx, row_id, [self.failed], self.in_flight,
                                    now=now, actor=actor, sets=sets,
                                    data={"retry_count": row["retry_count"], "manual": True})
        if not ok:
            raise InvalidTransition(f"{row_id} changed while retrying")
        row.update(sets, status=self.in_flight.value)

        result = BatchResult(job=f"{self.entity_type}.retry_now", claimed=1)
        self._dispatch_row(row, result, runner_id, now)
        return self.get(row_id)


class RefundablePipeline(ExecutionPipeline):
    """Execution pipeline funded by a ledger debit; refund credits it back."""

    refunded = None
    refund_reason = ""

    def refund(self, row_id: str, actor: str = "operator",
               now: Optional[float] = None) -> dict:
        """Operator refund of an exhausted row: credit restored, row marked refunded.

        Rows with retries left are refused; retry_due will pick them up again.
        """
        now = time.time() if now is None else now
        with self.db.transaction() as tx:
            row = tx.fetchone(f"SELECT * FROM {self.table} WHERE id = ?", (row_id,))
            if row is None:
                raise NotFound(f"{self.entity_type} {row_id} not found", row_id=row_id)
            if row["status"] == self.failed.value and not self.is_exhausted(row):
                raise InvalidTransition(
                    f"{row_id} has retries left ({row['retry_count']}/{self.max_retries}), "
                    f"refund once exhausted"
                )
            ok = row["status"] == self.failed.value and self.sm.transition(
                tx, row_id, [self.failed], self.refunded, now=now, actor=actor,
                sets={"claimed_by": None, "claim_expires_at": None},
                data={"amount_cents": row["juice_amount_cents"]},
            )
            if not ok:
                if is_terminal(self.entity_type, row["status"]):
                    raise AlreadyTerminal(row_id, row["status"])
                raise InvalidTransition(
                    f"{row_id} is {row['status']}, only failed rows can be refunded"
                )
            self.ledger.credit(tx, row["user_id"], row["juice_amount_cents"], row_id,
                               self.refund_reason, now=now)
        log.info("%s %s refunded amount_cents=%d user=%s actor=%s",
                 self.verb, row_id, row["juice_amount_cents"], row["user_id"], actor)
        return self.get(row_id)
