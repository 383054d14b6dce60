"""
数据库事务测试
"""

import time

import pytest

from yedeli.core.exceptions import (
    DatabaseError,
    PersistenceConflictError,
    PersistenceTimeoutError,
)
from yedeli.utils.time import to_db, utcnow


def write_log(conn, action):
    conn.execute(
        "INSERT INTO logs(action, created_at) VALUES (?, ?)", [action, to_db(utcnow())])


def actions(db):
    return [r["action"] for r in db.execute_query("SELECT action FROM logs ORDER BY log_id")]


class TestTransactionTimeout:
    """事务超时"""

    def test_slow_body_is_not_committed(self, test_db):
        with pytest.raises(PersistenceTimeoutError) as exc:
            with test_db.transaction(timeout=0.05) as conn:
                write_log(conn, "slow")
                time.sleep(0.2)

        assert exc.value.details["timeout_seconds"] == 0.05
        assert actions(test_db) == []

    def test_running_statement_is_interrupted(self, test_db):
        started = time.monotonic()
        with pytest.raises(PersistenceTimeoutError):
            with test_db.transaction(timeout=0.05) as conn:
                write_log(conn, "before-scan")
                conn.execute("SELECT count(*) FROM range(10000000000) t(i) WHERE i % 7 = 3").fetchone()

        assert time.monotonic() - started < 5
        assert actions(test_db) == []

    def test_connection_usable_after_timeout(self, test_db):
        with pytest.raises(PersistenceTimeoutError):
            with test_db.transaction(timeout=0.05) as conn:
                write_log(conn, "lost")
                time.sleep(0.2)

        with test_db.transaction(timeout=2) as conn:
            write_log(conn, "kept")
        assert actions(test_db) == ["kept"]


class TestTransactionErrors:
    """事务异常映射"""

    def test_constraint_violation_is_conflict(self, test_db):
        with pytest.raises(PersistenceConflictError):
            with test_db.transaction() as conn:
                conn.execute("INSERT INTO pickup_codes VALUES ('AAAAAA', 'o-1', ?)", [to_db(utcnow())])
                conn.execute("INSERT INTO pickup_codes VALUES ('AAAAAA', 'o-2', ?)", [to_db(utcnow())])

        assert test_db.execute_query("SELECT code FROM pickup_codes") == []

    def test_other_errors_are_database_errors(self, test_db):
        with pytest.raises(DatabaseError):
            with test_db.transaction() as conn:
                write_log(conn, "half")
                conn.execute("SELECT * FROM no_such_table")

        assert actions(test_db) == []

    def test_application_errors_pass_through(self, test_db):
        with pytest.raises(PersistenceConflictError, match="并发"):
            with test_db.transaction() as conn:
                write_log(conn, "aborted")
                raise PersistenceConflictError("并发修改")

        assert actions(test_db) == []
