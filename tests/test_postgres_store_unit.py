import contextlib
import uuid
from contextvars import ContextVar
from datetime import timedelta

import pytest
from psycopg import errors

from schoolgate.logging import get_logger
from schoolgate.storage.errors import ConstraintViolation
from schoolgate.storage.models import Role, Session
from schoolgate.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, responses=None, error=None):
        self.statements = []
        self.responses = list(responses or [])
        self.error = error

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        return self.responses.pop(0) if self.responses else FakeResult()


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.checkouts = 0
        self.committed = 0
        self.rolled_back = 0

    @contextlib.contextmanager
    def connection(self):
        self.checkouts += 1
        try:
            yield self.conn
        except BaseException:
            self.rolled_back += 1
            raise
        self.committed += 1


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.logger = get_logger(__name__)
    store._tx_conn = ContextVar(f"test_tx_{id(store)}", default=None)
    return store


def _user_row(user_id, email="a@x.com"):
    return {
        "id": user_id,
        "email": email,
        "password_hash": "hash",
        "role": "STUDENT",
        "status": "PENDING",
        "created_at": None,
        "updated_at": None,
        "last_login_at": None,
    }


def test_non_uuid_ids_never_reach_the_database():
    store = _store(DummyPool())

    assert store.get_user("not-a-uuid") is None
    assert store.update_user("not-a-uuid", status="ACTIVE") is None
    assert store.delete_user("not-a-uuid") is False


def test_unknown_update_fields_rejected():
    store = _store(DummyPool())

    with pytest.raises(ValueError):
        store.update_user(str(uuid.uuid4()), password="plain")


def test_transaction_reuses_one_connection():
    conn = FakeConnection()
    pool = FakePool(conn)
    store = _store(pool)
    user_id = str(uuid.uuid4())

    with store.transaction():
        store.lock_user_sessions(user_id)
        store.count_refresh_tokens(user_id)
        store.delete_user_refresh_tokens(user_id)

    assert pool.checkouts == 1
    assert pool.committed == 1
    assert len(conn.statements) == 3
    assert conn.statements[0][0].endswith("FOR UPDATE")


def test_transaction_rolls_back_on_error():
    pool = FakePool(FakeConnection())
    store = _store(pool)

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.delete_user_refresh_tokens(str(uuid.uuid4()))
            raise RuntimeError("boom")

    assert pool.rolled_back == 1
    assert pool.committed == 0
    assert store._tx_conn.get() is None


def test_nested_transaction_joins_outer():
    pool = FakePool(FakeConnection())
    store = _store(pool)

    with store.transaction():
        with store.transaction():
            store.count_refresh_tokens(str(uuid.uuid4()))

    assert pool.checkouts == 1


def test_duplicate_email_maps_to_constraint_violation():
    store = _store(FakePool(FakeConnection(error=errors.UniqueViolation("duplicate key"))))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("a@x.com", "hash", Role.STUDENT)
    assert excinfo.value.detail == {"field": "email"}


def test_create_user_normalizes_email():
    user_id = str(uuid.uuid4())
    conn = FakeConnection([FakeResult([_user_row(user_id)])])
    store = _store(FakePool(conn))

    user = store.create_user("  A@X.com", "hash", Role.STUDENT)

    assert user.id == user_id
    assert conn.statements[0][1][1] == "a@x.com"


def test_delete_refresh_token_requires_exactly_one_row():
    conn = FakeConnection([FakeResult(rowcount=1), FakeResult(rowcount=0)])
    store = _store(FakePool(conn))

    assert store.delete_refresh_token(str(uuid.uuid4())) is True
    assert store.delete_refresh_token(str(uuid.uuid4())) is False


def test_delete_refresh_tokens_skips_empty_batch():
    store = _store(DummyPool())

    assert store.delete_refresh_tokens([]) == 0


def test_create_refresh_token_maps_missing_user():
    store = _store(FakePool(FakeConnection(error=errors.ForeignKeyViolation("fk"))))
    session = Session.new(str(uuid.uuid4()), "tok", timedelta(days=7))

    with pytest.raises(ConstraintViolation):
        store.create_refresh_token(session)


def test_list_refresh_tokens_orders_oldest_first():
    conn = FakeConnection([FakeResult([])])
    store = _store(FakePool(conn))

    store.list_refresh_tokens(str(uuid.uuid4()))

    assert "ORDER BY created_at ASC" in conn.statements[0][0]
