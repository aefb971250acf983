from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from sessionauth.storage.errors import ConstraintViolation, StoreTimeout
from sessionauth.storage.postgres import PostgresStore


class DummyCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class DummyConnection:
    def __init__(self, responses):
        self.responses = list(responses)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class DummyPool:
    def __init__(self, *responses, fail_with=None):
        self.conn = DummyConnection(responses)
        self.fail_with = fail_with

    @contextmanager
    def connection(self):
        if self.fail_with is not None:
            raise self.fail_with
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.timeout_seconds = 1.0
    return store


def _row(**overrides):
    row = {
        "id": 5,
        "email": "a@x.com",
        "display_name": "Alice",
        "phone": None,
        "extension": None,
        "mobile": None,
        "must_change_password": False,
        "blocked_since": None,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "updated_at": None,
    }
    row.update(overrides)
    return row


def test_persist_token_pair_is_single_update():
    pool = DummyPool(DummyCursor(rowcount=1))
    store = _store(pool)

    assert store.persist_token_pair(5, "acc", "ref") is True

    [(sql, params)] = pool.conn.statements
    assert sql.startswith("UPDATE app_user SET access_token = %s, refresh_token = %s")
    assert params == ("acc", "ref", 5)


def test_persist_token_pair_unknown_user():
    store = _store(DummyPool(DummyCursor(rowcount=0)))
    assert store.persist_token_pair(99, None, None) is False


def test_check_credentials_compares_in_database():
    pool = DummyPool(DummyCursor(rows=[_row()]))
    store = _store(pool)

    user = store.check_credentials(" A@x.com ", "pw")

    assert user.id == 5
    sql, params = pool.conn.statements[0]
    assert "password_hash = crypt(%s, password_hash)" in sql
    assert params == ("A@x.com", "pw")


def test_rotate_access_token_is_conditional_on_refresh_slot():
    pool = DummyPool(DummyCursor(rowcount=0))
    store = _store(pool)

    assert store.rotate_access_token(5, "ref", "acc") is False

    [(sql, params)] = pool.conn.statements
    assert sql.endswith("WHERE id = %s AND refresh_token = %s")
    assert params == ("acc", 5, "ref")


def test_get_token_slots():
    store = _store(DummyPool(DummyCursor(rows=[{"access_token": "acc", "refresh_token": None}])))
    slots = store.get_token_slots(5)
    assert slots.access_token == "acc"
    assert slots.refresh_token is None


def test_get_token_slots_unknown_user():
    assert _store(DummyPool(DummyCursor())).get_token_slots(5) is None


def test_unique_violation_becomes_constraint_violation():
    failure = errors.UniqueViolation('duplicate key value violates unique constraint "app_user_email_key"')
    store = _store(DummyPool(failure))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user(5, "a@x.com", "Alice", "pw")
    assert excinfo.value.detail == {"field": "email"}
    assert excinfo.value.__cause__ is failure


def test_pool_timeout_becomes_store_timeout():
    store = _store(DummyPool(fail_with=PoolTimeout("pool exhausted")))
    with pytest.raises(StoreTimeout):
        store.get_user_by_id(5)


def test_list_users_filters_and_counts():
    pool = DummyPool(DummyCursor(rows=[_row()]), DummyCursor(rows=[{"total": 1}]))
    store = _store(pool)

    items, total = store.list_users(offset=0, limit=10, search="ali")

    assert total == 1
    assert items[0].display_name == "Alice"
    list_sql, list_params = pool.conn.statements[0]
    assert "ILIKE" in list_sql
    assert list_params == ("%ali%", "%ali%", "%ali%", 0, 10)
