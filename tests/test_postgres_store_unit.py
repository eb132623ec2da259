import json
from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg import errors

from lettera.logging import get_logger
from lettera.storage.errors import ConstraintViolation, StoreUnavailable
from lettera.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class DownPool:
    @contextmanager
    def connection(self):
        raise psycopg.OperationalError("connection refused")
        yield


class RecordingCursor:
    def __init__(self, row):
        self.row = row

    def fetchone(self):
        return self.row


class RecordingConnection:
    def __init__(self, row=None, exc=None):
        self.row = row
        self.exc = exc
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((sql, params))
        if self.exc is not None:
            raise self.exc
        return RecordingCursor(self.row)


class RecordingPool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("test")
    return store


def _row(**overrides):
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    row = {
        "id": "u1",
        "email": "a@x.com",
        "password_hash": "hash",
        "first_name": "Ann",
        "last_name": "Bee",
        "email_verified": False,
        "profile": {"position": "Dev", "company": None, "category": "IT", "skills": ["go"]},
        "status": "offline",
        "last_seen": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


def test_row_to_user_maps_profile():
    user = PostgresStore._row_to_user(_row())
    assert user.email == "a@x.com"
    assert user.profile.category == "IT"
    assert user.profile.skills == ["go"]


def test_row_to_user_accepts_json_text_profile():
    user = PostgresStore._row_to_user(_row(profile=json.dumps({"skills": ["sql"]})))
    assert user.profile.skills == ["sql"]
    assert user.profile.position is None


def test_operational_error_becomes_store_unavailable():
    store = _store(DownPool())
    with pytest.raises(StoreUnavailable):
        store.get_user("u1")


def test_unique_violation_becomes_constraint_violation():
    conn = RecordingConnection(exc=errors.UniqueViolation("duplicate key"))
    store = _store(RecordingPool(conn))
    with pytest.raises(ConstraintViolation):
        store.create_user("A@X.com", "hash", first_name="Ann", last_name="Bee")
    _sql, params = conn.statements[0]
    assert params[1] == "a@x.com"


def test_update_profile_rejects_unknown_fields_without_querying():
    store = _store(DummyPool())
    with pytest.raises(ValueError):
        store.update_profile("u1", {"email_verified": True})


def test_update_profile_sends_jsonb_patch():
    conn = RecordingConnection(row=_row(first_name="Anna"))
    store = _store(RecordingPool(conn))
    user = store.update_profile("u1", {"first_name": "Anna", "skills": ["rust"]})
    assert user.first_name == "Anna"
    _sql, params = conn.statements[0]
    assert params[0] == "Anna"
    assert params[1] is None
    assert json.loads(params[2]) == {"skills": ["rust"]}
