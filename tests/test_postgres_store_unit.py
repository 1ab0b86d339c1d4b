from datetime import datetime, timezone

import pytest

from gatekeep.deadline import Deadline
from gatekeep.logging import get_logger
from gatekeep.storage.common import DEFAULT_COLLECTIONS
from gatekeep.storage.errors import BatchCommitError, DocumentNotFound
from gatekeep.storage.models import (
    USER_OTPS,
    USER_SESSIONS,
    USERS,
    BatchOperation,
    QueryFilter,
    QueryOptions,
)
from gatekeep.storage.postgres import (
    PostgresDocumentStore,
    filter_clause,
    order_clause,
)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeTransaction:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.conn.rolled_back = exc_type is not None
        return False


class FakeConnection:
    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.executed = []
        self.rolled_back = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def transaction(self):
        return FakeTransaction(self)

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        if self.responses:
            return self.responses.pop(0)
        return FakeResult()


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _make_store(pool) -> PostgresDocumentStore:
    store: PostgresDocumentStore = PostgresDocumentStore.__new__(PostgresDocumentStore)
    store.pool = pool
    store.allowed_collections = DEFAULT_COLLECTIONS
    store.logger = get_logger("test")
    return store


def test_equality_filter_compares_jsonb():
    sql, params = filter_clause(QueryFilter("used", "==", False))
    assert sql == "data -> %s = %s::jsonb"
    assert params == ["used", "false"]


def test_datetime_range_filter_casts_tagged_value():
    cutoff = datetime(2026, 1, 1, tzinfo=timezone.utc)
    sql, params = filter_clause(QueryFilter("expires_at", "<", cutoff))
    assert "::timestamptz" in sql
    assert sql.endswith("< %s")
    assert params == ["expires_at", "expires_at", cutoff]


def test_order_clause_uses_timestamp_columns():
    sql, params = order_clause("created_at", "desc")
    assert sql == " ORDER BY created_at DESC"
    assert params == []

    sql, params = order_clause("attempt", "asc")
    assert "NULLS LAST" in sql
    assert params == ["attempt"]


def test_batch_validation_happens_before_database_access():
    store = _make_store(DummyPool())
    with pytest.raises(BatchCommitError) as exc_info:
        store.commit_batch(
            [
                BatchOperation.create(USERS, {"email": "a@x.com"}, document_id="u1"),
                BatchOperation.update(USER_SESSIONS, "s1", {"active": False}),
                BatchOperation.create("archive", {"email": "a@x.com"}),
            ]
        )
    assert exc_info.value.index == 2


def test_batch_rolls_back_when_update_target_missing():
    conn = FakeConnection([FakeResult(), FakeResult(rowcount=0)])
    store = _make_store(FakePool(conn))

    with pytest.raises(BatchCommitError) as exc_info:
        store.commit_batch(
            [
                BatchOperation.create(USERS, {"email": "a@x.com"}, document_id="u1"),
                BatchOperation.update(USER_SESSIONS, "missing", {"active": False}),
            ]
        )

    assert exc_info.value.index == 1
    assert conn.rolled_back is True


def test_update_if_reports_lost_condition():
    conn = FakeConnection([FakeResult(rows=[]), FakeResult(rows=[{"found": 1}])])
    store = _make_store(FakePool(conn))

    applied = store.update_if(USER_OTPS, "o1", {"used": True}, expected={"used": False})

    assert applied is False
    update_sql, update_params = conn.executed[0]
    assert "data @> %s::jsonb" in update_sql
    assert update_params[-1] == '{"used": false}'


def test_update_if_missing_document_raises():
    conn = FakeConnection([FakeResult(rows=[]), FakeResult(rows=[])])
    store = _make_store(FakePool(conn))

    with pytest.raises(DocumentNotFound):
        store.update_if(USER_OTPS, "o1", {"used": True}, expected={"used": False})


def test_get_decodes_tagged_datetimes():
    row = {
        "id": "s1",
        "data": {"active": True, "expires_at": {"$date": "2026-01-01T00:00:00+00:00"}},
    }
    conn = FakeConnection([FakeResult(rows=[row])])
    store = _make_store(FakePool(conn))

    doc = store.get(USER_SESSIONS, "s1")

    assert doc.data["active"] is True
    assert doc.data["expires_at"] == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_query_builds_filters_order_and_window():
    conn = FakeConnection([FakeResult(rows=[])])
    store = _make_store(FakePool(conn))

    store.query(
        USER_OTPS,
        QueryOptions(
            filters=[QueryFilter("email", "==", "a@x.com")],
            order_by="created_at",
            order_dir="desc",
            limit=1,
            offset=2,
        ),
    )

    sql, params = conn.executed[0]
    assert sql.startswith("SELECT id, data FROM documents WHERE collection = %s AND data -> %s = %s::jsonb")
    assert sql.endswith("ORDER BY created_at DESC LIMIT %s OFFSET %s")
    assert params == [USER_OTPS, "email", '"a@x.com"', 1, 2]


def test_deadline_sets_statement_timeout():
    conn = FakeConnection()
    store = _make_store(FakePool(conn))

    store.delete(USERS, "u1", deadline=Deadline.after(5))

    sql, params = conn.executed[0]
    assert "set_config('statement_timeout'" in sql
    assert 1 <= int(params[0]) <= 5000
    assert conn.executed[1][0].startswith("DELETE FROM documents")
