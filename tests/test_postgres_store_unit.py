import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from healthvia.logging import get_logger
from healthvia.storage.errors import ConstraintViolation
from healthvia.storage.models import (
    AdminProfile,
    Identity,
    IdentityStatus,
    Role,
)
from healthvia.storage.postgres import PostgresStore

NOW = datetime(2026, 4, 1, 12, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, row=None, rows=None, rowcount=0):
        self.row = row
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.row

    def fetchall(self):
        return self.rows


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def execute(self, sql, params=None):
        self.calls.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeCursor()
        if isinstance(response, Exception):
            raise response
        return response


class FakePool:
    def __init__(self, *responses):
        self.conn = FakeConnection(list(responses))

    @contextmanager
    def connection(self):
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unused"
    store.logger = get_logger("test")
    return store


def _row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "first_name": "Aylin",
        "last_name": "Kara",
        "email": "aylin@example.com",
        "phone": "5554443333",
        "password_hash": None,
        "status": "active",
        "email_verified": True,
        "phone_verified": False,
        "failed_login_count": 0,
        "lock_until": None,
        "last_login_at": None,
        "consent_given_at": NOW,
        "deleted": False,
        "deleted_at": None,
        "deleted_by": None,
        "created_at": NOW,
        "updated_at": NOW,
        "created_by": None,
        "updated_by": None,
        "profile": {"employee_id": "E-1", "department": "IT", "admin_level": "senior"},
    }
    row.update(overrides)
    return row


class UniqueViolationWithDiag(errors.UniqueViolation):
    def __init__(self, constraint_name):
        super().__init__("duplicate key")
        self._constraint_name = constraint_name

    @property
    def diag(self):
        return type("Diag", (), {"constraint_name": self._constraint_name})()


def test_verify_connection_uses_pool():
    store = _store(DummyPool())
    with pytest.raises(AssertionError):
        store.verify_connection()


def test_row_to_identity_parses_profile():
    store = _store(DummyPool())
    identity = store._row_to_identity(Role.ADMIN, _row(profile=json.dumps({"employee_id": "E-2"})))
    assert isinstance(identity.profile, AdminProfile)
    assert identity.profile.employee_id == "E-2"
    assert identity.status == IdentityStatus.ACTIVE


def test_find_by_email_targets_partition_table_and_skips_deleted():
    pool = FakePool(FakeCursor(row=_row()))
    store = _store(pool)
    identity = store.find_by_email(Role.ADMIN, " Aylin@Example.com ")
    sql, params = pool.conn.calls[0]
    assert "FROM admin_user" in sql
    assert "AND NOT deleted" in sql
    assert params == ("aylin@example.com",)
    assert identity.role == Role.ADMIN
    assert identity.profile.admin_level.value == "senior"


def test_find_by_id_with_malformed_uuid_returns_none():
    pool = FakePool(errors.InvalidTextRepresentation("bad uuid"))
    assert _store(pool).find_by_id(Role.USER, "not-a-uuid") is None


def test_exists_by_profile_key_rejects_unknown_key():
    with pytest.raises(ValueError):
        _store(DummyPool()).exists_by_profile_key(Role.PATIENT, "birth_place", "x")


def test_insert_maps_unique_violation_to_field():
    pool = FakePool(UniqueViolationWithDiag("patient_national_id_live_uniq"))
    identity = Identity.new(
        Role.PATIENT,
        first_name="A",
        last_name="B",
        email="a@example.com",
        phone="5551231234",
    )
    with pytest.raises(ConstraintViolation) as exc_info:
        _store(pool).insert(identity)
    assert exc_info.value.detail == {"field": "national_id"}


def test_record_failed_login_is_a_single_update():
    lock_until = NOW + timedelta(minutes=30)
    pool = FakePool(FakeCursor(row=_row(failed_login_count=5, lock_until=lock_until)))
    store = _store(pool)
    updated = store.record_failed_login(
        Role.DOCTOR, "abc", max_attempts=5, lock_until=lock_until, now=NOW
    )
    assert len(pool.conn.calls) == 1
    sql, params = pool.conn.calls[0]
    assert sql.startswith("UPDATE doctor SET failed_login_count = CASE")
    assert "RETURNING *" in sql
    assert params == {
        "now": NOW,
        "max_attempts": 5,
        "lock_until": lock_until,
        "identity_id": "abc",
    }
    assert updated.lock_until == lock_until


def test_update_on_missing_row_returns_none():
    pool = FakePool(FakeCursor(row=None))
    assert _store(pool).clear_lock(Role.USER, "missing") is None
    assert "UPDATE app_user" in pool.conn.calls[0][0]


def test_clear_expired_locks_returns_rowcount():
    pool = FakePool(FakeCursor(rowcount=3))
    assert _store(pool).clear_expired_locks(Role.PATIENT, NOW) == 3
    sql, params = pool.conn.calls[0]
    assert "lock_until <= %s" in sql
    assert params == (NOW,)


def test_mark_deleted_sets_audit_fields():
    pool = FakePool(FakeCursor(row=_row(deleted=True, status="deleted")))
    assert _store(pool).mark_deleted(Role.ADMIN, "abc", actor_id="root", now=NOW)
    _, params = pool.conn.calls[0]
    assert params["actor_id"] == "root"
    assert params["status"] == "deleted"
