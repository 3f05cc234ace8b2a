"""Shared pytest configuration for the Juice test suite.

Puts the project root on sys.path so tests import the flat modules
(ledger, spends, api, ...) directly, and provides an isolated SQLite
ledger plus fake chain-execution collaborators per test.
"""

import os
import sys
import tempfile
import time
from pathlib import Path

import pytest

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Before any project import: keep files out of the repo, no bearer auth
_tmp_ctx = tempfile.TemporaryDirectory(prefix="juice_test_")
os.environ["JUICE_ENV"] = "test"
os.environ["JUICE_DB_BACKEND"] = "sqlite"
os.environ["JUICE_DB_PATH"] = os.path.join(_tmp_ctx.name, "juice.db")
os.environ["JUICE_LOG_FILE"] = os.path.join(_tmp_ctx.name, "juice.log")

from cashouts import CashOutPipeline
from db import Database
from errors import ExecutionFailure, ExecutionTimeout
from executor import ChainExecutor, ExecutionResult, StaticRateProvider
from pipeline import retry_delay
from purchases import PurchasePipeline
from settlement import SettlementPipeline
from spends import SpendPipeline

ADDR = "0x" + "ab" * 20
OTHER_ADDR = "0x" + "cd" * 20
ETH_USD = "2000"


class FakeExecutor(ChainExecutor):
    """Records every request and answers with the configured outcome.

    outcome: "success", "fail", "accepted", "timeout" or "error".
    """

    def __init__(self, outcome="success"):
        self.outcome = outcome
        self.requests = []

    def execute(self, request):
        self.requests.append(request)
        if self.outcome == "timeout":
            raise ExecutionTimeout("executor timed out", row_id=request.idempotency_key)
        if self.outcome == "error":
            raise ExecutionFailure("executor unreachable", row_id=request.idempotency_key)
        if self.outcome == "accepted":
            return None
        if self.outcome == "fail":
            return ExecutionResult(row_id=request.idempotency_key, success=False,
                                   error="execution reverted")
        return ExecutionResult(
            row_id=request.idempotency_key, success=True,
            tx_hash="0x" + "f" * 64, tokens_received="1000000000000000000",
        )

    @property
    def keys(self):
        return [r.idempotency_key for r in self.requests]


def exhaust_retries(pipeline, now):
    """Run retry_due through a failed row's remaining attempts.

    The executor must already be answering "fail". Returns the final clock.
    """
    for n in range(1, pipeline.max_retries):
        now += retry_delay(n, pipeline.retry_backoff_sec)
        pipeline.retry_due(now=now)
    return now


@pytest.fixture
def t0():
    """Whole-second clock, so offsets like t0 + 60 - 60 compare exactly."""
    return float(int(time.time()))


@pytest.fixture
def db(tmp_path):
    database = Database(db_path=str(tmp_path / "ledger.db"), backend="sqlite")
    yield database
    database.close()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def rates():
    return StaticRateProvider(ETH_USD)


@pytest.fixture
def purchases(db):
    return PurchasePipeline(db)


@pytest.fixture
def spends(db, executor, rates):
    return SpendPipeline(db, executor=executor, rates=rates, max_retries=3,
                         retry_backoff_sec=60, execution_timeout_sec=120)


@pytest.fixture
def cashouts(db, executor, rates):
    return CashOutPipeline(db, executor=executor, rates=rates, max_retries=3,
                           retry_backoff_sec=60, execution_timeout_sec=120,
                           delay_hours=24)


@pytest.fixture
def settlement(db, executor, rates):
    return SettlementPipeline(db, executor=executor, rates=rates, max_retries=3,
                              retry_backoff_sec=60, execution_timeout_sec=120)


@pytest.fixture
def fund(purchases, t0):
    """Credit a user through a cleared zero-risk purchase."""

    def _fund(user_id, amount_cents):
        ref = f"pi_{user_id}_{os.urandom(4).hex()}"
        purchases.intake(ref, user_id, amount_cents, risk_score=0, now=t0)
        purchases.credit_due(now=t0)
        return ref

    return _fund
