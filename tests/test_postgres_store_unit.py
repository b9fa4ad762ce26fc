from pathlib import Path

import pytest

from tradegate.storage.errors import VersionConflict
from tradegate.storage.models import utcnow
from tradegate.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows):
        self._rows = rows
        self.rowcount = len(rows)

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), list(params or [])))
        return FakeCursor(self.results.pop(0) if self.results else [])


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(results)

    def connection(self):
        return self.conn


def _store(tmp_path: Path, *results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(*results)
    store.fs_root = tmp_path
    return store


def test_failed_login_increment_is_one_statement(tmp_path):
    store = _store(tmp_path, [{"failed_login_attempts": 3}])
    now = utcnow()

    assert store.increment_failed_logins("u1", now) == 3

    [(sql, params)] = store.pool.conn.statements
    assert sql.startswith("UPDATE app_user SET failed_login_attempts = failed_login_attempts + 1")
    assert sql.endswith("RETURNING failed_login_attempts")
    assert params == [now, "u1"]


def test_versioned_update_reports_current_version(tmp_path):
    store = _store(tmp_path, [], [{"version": 4}])

    with pytest.raises(VersionConflict) as excinfo:
        store._versioned_update("role", "role", "r1", 2, {"display_name": "X"})

    assert excinfo.value.detail == {
        "entity": "role",
        "id": "r1",
        "expected_version": 2,
        "current_version": 4,
    }
    update_sql, update_params = store.pool.conn.statements[0]
    assert "WHERE id = %s AND version = %s" in update_sql
    assert update_params == ["X", "r1", 2]


def test_versioned_update_of_missing_row(tmp_path):
    store = _store(tmp_path, [], [])
    assert store._versioned_update("company", "company", "c1", 1, {"name": "X"}) is None


def test_reset_token_consumed_with_guarded_update(tmp_path):
    store = _store(tmp_path, [])
    now = utcnow()

    assert store.consume_reset_token("h", now) is None

    [(sql, params)] = store.pool.conn.statements
    assert "used_at IS NULL AND expires_at > %s" in sql
    assert params == [now, "h", now]


def test_touch_session_updates_activity_columns_only(tmp_path):
    store = _store(tmp_path, [])
    now = utcnow()

    store.touch_session("s1", now, now)

    [(sql, params)] = store.pool.conn.statements
    assert sql == "UPDATE auth_session SET expires_at = %s, last_activity_at = %s WHERE sid = %s"
    assert params == [now, now, "s1"]


def test_list_companies_filter(tmp_path):
    store = _store(tmp_path, [])

    assert store.list_companies(is_internal=True) == []

    [(sql, params)] = store.pool.conn.statements
    assert sql == "SELECT * FROM company WHERE is_internal = %s ORDER BY created_at"
    assert params == [True]


def test_missing_schema_is_refused(tmp_path):
    store = _store(tmp_path, *([[{"oid": "x"}]] * 12 + [[{"oid": None}]]))

    with pytest.raises(RuntimeError, match="login_attempt"):
        store._verify_required_schema()
