# Juice Batch Claim / Processor Runner
# "Find due rows, claim them, advance them", shared by every pipeline.
#
#   - Leased claims: claimed_by + claim_expires_at, written in one short
#     transaction. A crashed runner's lease simply expires.
#   - PostgreSQL selects with FOR UPDATE SKIP LOCKED; SQLite's BEGIN IMMEDIATE
#     write lock serializes claimers. Either way concurrent runners get
#     disjoint rows.
#   - One row failing never aborts the batch. Each row advances inside its
#     own savepoint and the job reports a BatchResult.
#   - trigger() is the single entry point for the timer thread, the CLI and
#     the cron endpoint.

import logging
import os
import socket
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

log = logging.getLogger("juice.runner")

CLAIM_TIMEOUT_SEC = int(os.environ.get("JUICE_CLAIM_TIMEOUT_SEC", "300"))
BATCH_LIMIT = int(os.environ.get("JUICE_BATCH_LIMIT", "50"))
RUNNER_INTERVAL_SEC = int(os.environ.get("JUICE_RUNNER_INTERVAL_SEC", "60"))
LOG_FILE = os.environ.get(
    "JUICE_LOG_FILE", os.path.join(os.path.dirname(__file__), "juice.log")
)


def setup_logging(log_file=None, level=logging.INFO):
    """Console + file under the "juice" namespace. Idempotent."""
    log_file = log_file or LOG_FILE
    logger = logging.getLogger("juice")

    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


def new_runner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


@dataclass
class BatchResult:
    job: str
    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list = field(default_factory=list)

    def count(self, outcome: str, error: Optional[str] = None):
        if outcome == "succeeded":
            self.succeeded += 1
        elif outcome == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
        if error:
            self.errors.append(error)

    def merge(self, other: "BatchResult"):
        self.claimed += other.claimed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.skipped += other.skipped
        self.errors.extend(other.errors)

    def to_dict(self) -> dict:
        return asdict(self)


# ── Claiming ──────────────────────────────────────────────────────────

def claim_batch(
    db,
    table: str,
    where: str,
    params=(),
    limit: Optional[int] = None,
    runner_id: Optional[str] = None,
    now: Optional[float] = None,
    order_by: str = "created_at",
    advance: Optional[Callable] = None,
    result: Optional[BatchResult] = None,
) -> list[dict]:
    """Lease up to `limit` rows matching `where` to `runner_id`.

    `advance(tx, row)` runs for each leased row inside the claim transaction,
    under a savepoint. Returning False (or raising) releases that row's lease
    and leaves it out of the returned list.
    """
    limit = limit or BATCH_LIMIT
    runner_id = runner_id or new_runner_id()
    now = time.time() if now is None else now
    expires = now + CLAIM_TIMEOUT_SEC
    claimed = []

    with db.transaction() as tx:
        rows = tx.fetchall(
            f"SELECT * FROM {table} "
            f"WHERE ({where}) AND (claimed_by IS NULL OR claim_expires_at <= ?) "
            f"ORDER BY {order_by} LIMIT ?{tx.skip_locked}",
            (*params, now, limit),
        )
        for row in rows:
            cur = tx.execute(
                f"UPDATE {table} SET claimed_by = ?, claim_expires_at = ? "
                f"WHERE id = ? AND (claimed_by IS NULL OR claim_expires_at <= ?)",
                (runner_id, expires, row["id"], now),
            )
            if cur.rowcount != 1:
                continue
            row["claimed_by"] = runner_id
            row["claim_expires_at"] = expires
            if result is not None:
                result.claimed += 1

            if advance is None:
                claimed.append(row)
                continue

            tx.execute("SAVEPOINT claim_row")
            try:
                keep = advance(tx, row)
            except Exception as e:
                tx.execute("ROLLBACK TO SAVEPOINT claim_row")
                tx.execute("RELEASE SAVEPOINT claim_row")
                release_claim(tx, table, row["id"], runner_id)
                log.exception("CLAIM %s %s advance failed", table, row["id"])
                if result is not None:
                    result.count("failed", f"{row['id']}: {e}")
                continue
            tx.execute("RELEASE SAVEPOINT claim_row")
            if keep:
                claimed.append(row)
            else:
                release_claim(tx, table, row["id"], runner_id)
                if result is not None:
                    result.count("skipped")

    if claimed:
        log.info("CLAIM %s rows=%d runner=%s", table, len(claimed), runner_id)
    return claimed


def release_claim(tx, table: str, row_id: str, runner_id: Optional[str] = None):
    if runner_id is None:
        tx.execute(
            f"UPDATE {table} SET claimed_by = NULL, claim_expires_at = NULL WHERE id = ?",
            (row_id,),
        )
    else:
        tx.execute(
            f"UPDATE {table} SET claimed_by = NULL, claim_expires_at = NULL "
            f"WHERE id = ? AND claimed_by = ?",
            (row_id, runner_id),
        )


# ── Processor Runner ──────────────────────────────────────────────────

class ProcessorRunner:
    """Runs the pipeline jobs. Safe to run concurrently with itself."""

    def __init__(self, jobs: dict[str, Callable], runner_id: Optional[str] = None):
        self.jobs = jobs
        self.runner_id = runner_id or new_runner_id()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_job(self, name: str, now: Optional[float] = None) -> BatchResult:
        if name not in self.jobs:
            raise KeyError(f"Unknown job: {name}")
        started = time.time()
        try:
            result = self.jobs[name](now=now, runner_id=self.runner_id)
        except Exception as e:
            log.exception("BATCH %s aborted", name)
            result = BatchResult(job=name)
            result.errors.append(str(e))
            result.failed += 1
        log.info("BATCH %s claimed=%d succeeded=%d failed=%d skipped=%d in %.2fs",
                 name, result.claimed, result.succeeded, result.failed,
                 result.skipped, time.time() - started)
        return result

    def trigger(self, job: Optional[str] = None, now: Optional[float] = None) -> dict:
        """Run one job, or all of them in order. Returns {job: BatchResult}."""
        names = [job] if job else list(self.jobs)
        return {name: self.run_job(name, now=now) for name in names}

    def loop(self, interval: int = RUNNER_INTERVAL_SEC):
        while not self._stop.is_set():
            self.trigger()
            self._stop.wait(interval)

    def start(self, interval: int = RUNNER_INTERVAL_SEC) -> threading.Thread:
        """Run trigger() every `interval` seconds in a background thread."""
        self._stop.clear()
        self._thread = threading.Thread(target=self.loop, args=(interval,), daemon=True)
        self._thread.start()
        log.info("RUNNER %s started (interval=%ds)", self.runner_id, interval)
        return self._thread

    def stop(self, timeout: float = 10):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        log.info("RUNNER %s stopped", self.runner_id)


def default_jobs() -> dict[str, Callable]:
    from cashouts import get_cashout_pipeline
    from purchases import get_purchase_pipeline
    from settlement import get_settlement_pipeline
    from spends import get_spend_pipeline

    purchases = get_purchase_pipeline()
    spends = get_spend_pipeline()
    cashouts = get_cashout_pipeline()
    settlement = get_settlement_pipeline()
    return {
        "purchases.credit_due": purchases.credit_due,
        "spends.execute_due": spends.execute_due,
        "spends.retry_due": spends.retry_due,
        "cashouts.process_due": cashouts.process_due,
        "cashouts.retry_due": cashouts.retry_due,
        "settlement.settle_due": settlement.settle_due,
        "settlement.retry_due": settlement.retry_due,
    }


_runner: Optional[ProcessorRunner] = None


def get_runner() -> ProcessorRunner:
    global _runner
    if _runner is None:
        _runner = ProcessorRunner(default_jobs())
    return _runner
