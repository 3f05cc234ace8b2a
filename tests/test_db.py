"""Tests for the Juice database layer — schema, transactions, backend shims."""

import sqlite3

import pytest

import db as db_mod
from db import Database, Tx, get_database, schema_statements

TABLES = {
    "juice_balances",
    "juice_purchases",
    "juice_spends",
    "juice_cash_outs",
    "pending_fiat_payments",
    "disputes",
    "ledger_events",
}


def _insert_balance(tx, user_id="u1", cents=0):
    tx.execute(
        "INSERT INTO juice_balances (user_id, balance_cents, created_at, updated_at) "
        "VALUES (?, ?, 1, 1)",
        (user_id, cents),
    )


class TestSchema:
    def test_tables_created(self, db):
        with db.connection() as tx:
            names = {r["name"] for r in tx.fetchall(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            )}
        assert TABLES <= names

    def test_wal_mode_enabled(self, db):
        with db.connection() as tx:
            assert tx.fetchone("PRAGMA journal_mode")["journal_mode"] == "wal"

    def test_schema_is_idempotent(self, db):
        again = Database(db_path=db.db_path, backend="sqlite")
        with again.connection() as tx:
            assert tx.fetchone("SELECT COUNT(*) AS n FROM juice_balances")["n"] == 0

    def test_postgres_types(self):
        ddl = "\n".join(schema_statements("postgres"))
        assert "BIGINT" in ddl
        assert "DOUBLE PRECISION" in ddl
        assert "{INT}" not in ddl

    def test_sqlite_types(self):
        ddl = "\n".join(schema_statements("sqlite"))
        assert "BIGINT" not in ddl
        assert "CHECK (balance_cents >= 0)" in ddl

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            Database(backend="oracle")


class TestConstraints:
    def test_negative_balance_rejected(self, db):
        with pytest.raises(sqlite3.IntegrityError):
            with db.transaction() as tx:
                _insert_balance(tx, cents=-1)

    def test_unknown_status_rejected(self, db):
        with pytest.raises(sqlite3.IntegrityError):
            with db.transaction() as tx:
                tx.execute(
                    """INSERT INTO juice_spends
                       (id, user_id, project_id, chain_id, beneficiary_address,
                        juice_amount_cents, status, created_at, updated_at)
                       VALUES ('SPEND-1', 'u1', 1, 1, '0x', 100, 'lost', 1, 1)"""
                )

    def test_risk_score_range(self, db):
        with pytest.raises(sqlite3.IntegrityError):
            with db.transaction() as tx:
                tx.execute(
                    """INSERT INTO juice_purchases
                       (id, user_id, external_ref, risk_score, fiat_amount_cents,
                        juice_amount_cents, status, settlement_delay_days,
                        created_at, updated_at)
                       VALUES ('P-1', 'u1', 'pi_1', 150, 100, 100, 'clearing', 0, 1, 1)"""
                )

    def test_external_ref_unique(self, db):
        sql = """INSERT INTO pending_fiat_payments
                 (id, external_ref, amount_cents, project_id, chain_id,
                  beneficiary_address, settlement_delay_days, paid_at, settles_at,
                  status, created_at, updated_at)
                 VALUES (?, 'pi_1', 100, 1, 1, '0x', 0, 1, 1, 'pending_settlement', 1, 1)"""
        with db.transaction() as tx:
            tx.execute(sql, ("FIAT-1",))
        with pytest.raises(sqlite3.IntegrityError):
            with db.transaction() as tx:
                tx.execute(sql, ("FIAT-2",))


class TestTransactions:
    def test_commit(self, db):
        with db.transaction() as tx:
            _insert_balance(tx, cents=100)
        with db.connection() as tx:
            assert tx.fetchone("SELECT balance_cents FROM juice_balances")["balance_cents"] == 100

    def test_rollback_on_exception(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction() as tx:
                _insert_balance(tx, cents=100)
                raise RuntimeError("abort")
        with db.connection() as tx:
            assert tx.fetchall("SELECT * FROM juice_balances") == []

    def test_rows_are_dicts(self, db):
        with db.transaction() as tx:
            _insert_balance(tx)
            row = tx.fetchone("SELECT * FROM juice_balances WHERE user_id = ?", ("u1",))
        assert isinstance(row, dict)
        assert row["user_id"] == "u1"

    def test_fetchone_missing(self, db):
        with db.connection() as tx:
            assert tx.fetchone("SELECT * FROM juice_balances WHERE user_id = ?", ("x",)) is None


class TestBackendShims:
    def test_placeholders_translated_for_postgres(self):
        assert Tx(None, "postgres")._sql("a = ? AND b = ?") == "a = %s AND b = %s"
        assert Tx(None, "sqlite")._sql("a = ?") == "a = ?"

    def test_skip_locked_only_on_postgres(self):
        assert Tx(None, "postgres").skip_locked == " FOR UPDATE SKIP LOCKED"
        assert Tx(None, "sqlite").skip_locked == ""

    def test_sqlite_integrity_errors(self):
        assert Tx(None, "sqlite").integrity_errors() == (sqlite3.IntegrityError,)


class TestSingleton:
    def test_get_database_uses_env_path(self, tmp_path, monkeypatch):
        path = str(tmp_path / "singleton.db")
        monkeypatch.setenv("JUICE_DB_PATH", path)
        monkeypatch.setattr(db_mod, "DB_BACKEND", "sqlite")
        monkeypatch.setattr(db_mod, "_database", None)
        first = get_database()
        assert first.db_path == path
        assert get_database() is first
