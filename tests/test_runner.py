"""Tests for batch claiming and the processor runner."""

import threading
from decimal import Decimal

import pytest

from ledger import LedgerStore
from runner import BatchResult, ProcessorRunner, claim_batch

USER = "user-1"


def _seed_purchases(purchases, count, now):
    for i in range(count):
        purchases.intake(f"pi_{i}", USER, 100, risk_score=0, now=now)


class TestClaimBatch:
    def test_claims_are_leased(self, db, purchases, t0):
        _seed_purchases(purchases, 3, t0)
        rows = claim_batch(db, "juice_purchases", "status = ?", ("clearing",),
                           runner_id="r1", now=t0)
        assert len(rows) == 3
        assert all(r["claimed_by"] == "r1" for r in rows)
        # Leased rows are invisible to a second runner until the lease expires
        assert claim_batch(db, "juice_purchases", "status = ?", ("clearing",),
                           runner_id="r2", now=t0 + 1) == []
        again = claim_batch(db, "juice_purchases", "status = ?", ("clearing",),
                            runner_id="r2", now=t0 + 301)
        assert len(again) == 3

    def test_limit(self, db, purchases, t0):
        _seed_purchases(purchases, 5, t0)
        rows = claim_batch(db, "juice_purchases", "status = ?", ("clearing",),
                           limit=2, now=t0)
        assert len(rows) == 2

    def test_one_bad_row_does_not_abort_batch(self, db, purchases, t0):
        _seed_purchases(purchases, 3, t0)
        result = BatchResult(job="test")
        bad = {}

        def advance(tx, row):
            if not bad:
                bad["id"] = row["id"]
                raise RuntimeError("boom")
            return True

        rows = claim_batch(db, "juice_purchases", "status = ?", ("clearing",),
                           runner_id="r1", now=t0, advance=advance, result=result)
        assert len(rows) == 2
        assert result.claimed == 3
        assert result.failed == 1
        assert "boom" in result.errors[0]
        failed_row = purchases.get(bad["id"])
        assert failed_row["claimed_by"] is None

    def test_advance_false_releases(self, db, purchases, t0):
        _seed_purchases(purchases, 2, t0)
        result = BatchResult(job="test")
        rows = claim_batch(db, "juice_purchases", "status = ?", ("clearing",),
                           runner_id="r1", now=t0, advance=lambda tx, row: False,
                           result=result)
        assert rows == []
        assert result.skipped == 2
        assert all(r["claimed_by"] is None for r in purchases.list_user_purchases(USER))

    def test_failed_advance_rolls_back_its_writes(self, db, purchases, t0):
        _seed_purchases(purchases, 1, t0)

        def advance(tx, row):
            tx.execute("UPDATE juice_purchases SET status = 'credited' WHERE id = ?",
                       (row["id"],))
            raise RuntimeError("after write")

        claim_batch(db, "juice_purchases", "status = ?", ("clearing",), now=t0,
                    advance=advance)
        assert purchases.get_by_ref("pi_0")["status"] == "clearing"


class TestConcurrentRunners:
    def test_parallel_credit_due_never_double_credits(self, db, purchases, t0):
        _seed_purchases(purchases, 20, t0)
        results = []
        lock = threading.Lock()

        def run(runner_id):
            r = purchases.credit_due(now=t0, runner_id=runner_id, limit=5)
            with lock:
                results.append(r)

        threads = [threading.Thread(target=run, args=(f"r{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(r.succeeded for r in results) == 20
        assert LedgerStore(db).snapshot(USER).balance == Decimal("20.00")
        statuses = {p["status"] for p in purchases.list_user_purchases(USER, limit=100)}
        assert statuses == {"credited"}


class TestProcessorRunner:
    def test_trigger_runs_every_job(self, t0):
        calls = []

        def job(now=None, runner_id=None):
            calls.append((now, runner_id))
            return BatchResult(job="j", claimed=1, succeeded=1)

        runner = ProcessorRunner({"a": job, "b": job}, runner_id="r1")
        results = runner.trigger(now=t0)
        assert set(results) == {"a", "b"}
        assert calls == [(t0, "r1"), (t0, "r1")]

    def test_trigger_single_job(self):
        runner = ProcessorRunner({"a": lambda **kw: BatchResult(job="a"),
                                  "b": lambda **kw: BatchResult(job="b")})
        assert list(runner.trigger("b")) == ["b"]

    def test_failing_job_is_reported_not_raised(self):
        def boom(now=None, runner_id=None):
            raise RuntimeError("database went away")

        runner = ProcessorRunner({"boom": boom, "ok": lambda **kw: BatchResult(job="ok")})
        results = runner.trigger()
        assert results["boom"].failed == 1
        assert "database went away" in results["boom"].errors[0]
        assert results["ok"].failed == 0

    def test_unknown_job(self):
        with pytest.raises(KeyError):
            ProcessorRunner({}).run_job("nope")

    def test_start_and_stop(self):
        ran = threading.Event()

        def job(now=None, runner_id=None):
            ran.set()
            return BatchResult(job="j")

        runner = ProcessorRunner({"j": job})
        runner.start(interval=3600)
        assert ran.wait(5)
        runner.stop(timeout=5)

    def test_batch_result_merge(self):
        a = BatchResult(job="a", claimed=2, succeeded=1, failed=1, errors=["x"])
        a.merge(BatchResult(job="b", claimed=1, skipped=1))
        assert a.to_dict() == {"job": "a", "claimed": 3, "succeeded": 1, "failed": 1,
                               "skipped": 1, "errors": ["x"]}
