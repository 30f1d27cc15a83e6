"""Tests for nightfix/db/engine.py — PostgreSQL engine.

Requires a running PostgreSQL instance. Skipped if unavailable.
"""

import uuid

import pytest

from nightfix.core.exceptions import DatabaseError

from tests.conftest import requires_postgres


def _insert_session(cur_or_engine, name: str) -> None:
    cur_or_engine.execute(
        "INSERT INTO run_sessions (id, status, created_at, state) VALUES (%s, 'QUEUED', now(), '{}'::jsonb)",
        [name],
    )


@requires_postgres
class TestDatabaseEngine:
    def test_connect_and_query(self, db_engine):
        result = db_engine.fetch_one("SELECT 1 AS num")
        assert result is not None
        assert result["num"] == 1

    def test_schema_initialized(self, db_engine):
        """Schema creates the session and target tables."""
        tables = db_engine.fetch_all(
            """SELECT table_name FROM information_schema.tables
               WHERE table_schema = 'public'
               AND table_type = 'BASE TABLE'"""
        )
        names = {r["table_name"] for r in tables}
        assert {"run_sessions", "contract_targets"}.issubset(names)

    def test_schema_is_idempotent(self, db_engine):
        db_engine.initialize_schema()

    def test_execute_and_fetch(self, db_engine):
        sid = f"test-exec-{uuid.uuid4().hex[:8]}"
        _insert_session(db_engine, sid)
        row = db_engine.fetch_one("SELECT * FROM run_sessions WHERE id = %s", [sid])
        assert row is not None
        assert row["status"] == "QUEUED"
        db_engine.execute("DELETE FROM run_sessions WHERE id = %s", [sid])

    def test_fetch_all(self, db_engine):
        rows = db_engine.fetch_all("SELECT 1 AS a UNION SELECT 2 AS a ORDER BY a")
        assert [r["a"] for r in rows] == [1, 2]

    def test_fetch_one_no_results(self, db_engine):
        assert db_engine.fetch_one("SELECT * FROM run_sessions WHERE id = %s", ["nope"]) is None

    def test_transaction_commit(self, db_engine):
        sid = f"txn-{uuid.uuid4().hex[:8]}"
        with db_engine.transaction() as cur:
            _insert_session(cur, sid)
        assert db_engine.fetch_one("SELECT id FROM run_sessions WHERE id = %s", [sid]) is not None
        db_engine.execute("DELETE FROM run_sessions WHERE id = %s", [sid])

    def test_transaction_rollback(self, db_engine):
        sid = f"rollback-{uuid.uuid4().hex[:8]}"
        with pytest.raises(RuntimeError):
            with db_engine.transaction() as cur:
                _insert_session(cur, sid)
                raise RuntimeError("Force rollback")
        assert db_engine.fetch_one("SELECT id FROM run_sessions WHERE id = %s", [sid]) is None

    def test_bad_query_raises(self, db_engine):
        with pytest.raises(DatabaseError):
            db_engine.execute("SELECT * FROM no_such_table")
