from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import Role
from authkernel.storage.postgres import PostgresStore

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
USER_ID = "6f1c2a9e-3b7d-4e8a-9c51-0d2e4f6a8b13"
MISSING_ID = "0b9e7c15-2d43-4f6a-8e1b-5c7d9a3f2e60"


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class FakeConnection:
    """Records statements and replays scripted results in order."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []
        self.transactions = 0

    def execute(self, query, params=None):
        self.statements.append((" ".join(query.split()), params))
        outcome = self.results.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store._clock = lambda: NOW
    store._new_id = lambda: "generated-id"
    return store


def _identity_row(**overrides):
    row = {
        "id": "user-1",
        "name": "Alice",
        "email": "alice@x.com",
        "password_hash": "hash",
        "role": "student",
        "phone_number": None,
        "blocked": False,
        "deleted_at": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _token_row(**overrides):
    row = {
        "id": "generated-id",
        "identity_id": "user-1",
        "token": "new",
        "expires_at": NOW + timedelta(days=7),
        "created_at": NOW,
        "revoked": False,
        "revoked_at": None,
    }
    row.update(overrides)
    return row


def test_row_mappers_without_database():
    store = _store(DummyPool())

    identity = store._identity_from_row(_identity_row(role="hr", blocked=True))
    record = store._token_from_row(_token_row())

    assert identity.role == Role.HR
    assert identity.blocked is True
    assert record.is_active(NOW)


def test_create_identity_normalizes_email():
    conn = FakeConnection([FakeResult(_identity_row())])
    store = _store(FakePool(conn))

    identity = store.create_identity(name="Alice", email=" Alice@X.com", password_hash="hash")

    _, params = conn.statements[0]
    assert params[2] == "alice@x.com"
    assert params[4] == "student"
    assert identity.id == "user-1"


def test_create_identity_duplicate_maps_to_constraint_violation():
    conn = FakeConnection([errors.UniqueViolation("duplicate key")])
    store = _store(FakePool(conn))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_identity(name="Alice", email="alice@x.com", password_hash="hash")
    assert excinfo.value.detail == {"field": "email"}


def test_issue_for_unknown_identity_maps_to_constraint_violation():
    conn = FakeConnection([errors.ForeignKeyViolation("fk")])
    store = _store(FakePool(conn))

    with pytest.raises(ConstraintViolation):
        store.issue_refresh_token(MISSING_ID, "tok", NOW + timedelta(days=1))


def test_rotate_runs_in_one_transaction():
    conn = FakeConnection([FakeResult({"identity_id": "user-1"}), FakeResult(_token_row())])
    store = _store(FakePool(conn))

    record = store.rotate_refresh_token("old", "new", NOW + timedelta(days=7))

    assert record.token == "new"
    assert conn.transactions == 1
    consume_sql, consume_params = conn.statements[0]
    assert consume_sql.startswith("UPDATE refresh_token SET revoked = TRUE")
    assert "NOT revoked AND expires_at >" in consume_sql
    assert consume_params == (NOW, "old", NOW)
    insert_sql, insert_params = conn.statements[1]
    assert insert_sql.startswith("INSERT INTO refresh_token")
    assert insert_params[1:3] == ("user-1", "new")


def test_rotate_of_consumed_token_inserts_nothing():
    conn = FakeConnection([FakeResult(None)])
    store = _store(FakePool(conn))

    assert store.rotate_refresh_token("old", "new", NOW + timedelta(days=7)) is None
    assert len(conn.statements) == 1


def test_revoke_reports_rowcount():
    conn = FakeConnection([FakeResult(rowcount=1), FakeResult(rowcount=0)])
    store = _store(FakePool(conn))

    assert store.revoke_refresh_token("tok") is True
    assert store.revoke_refresh_token("tok") is False


def test_get_identity_excludes_deleted_by_default():
    conn = FakeConnection([FakeResult(None), FakeResult(_identity_row(deleted_at=NOW))])
    store = _store(FakePool(conn))

    assert store.get_identity(USER_ID) is None
    assert store.get_identity(USER_ID, include_deleted=True).is_deleted

    assert "deleted_at IS NULL" in conn.statements[0][0]
    assert "deleted_at IS NULL" not in conn.statements[1][0]


def test_list_identities_builds_filters():
    conn = FakeConnection([FakeResult(_identity_row(role="admin"))])
    store = _store(FakePool(conn))

    identities = store.list_identities(role=Role.ADMIN, limit=10, offset=20)

    sql, params = conn.statements[0]
    assert "WHERE deleted_at IS NULL AND role = %s" in sql
    assert params == ["admin", 10, 20]
    assert identities[0].role == Role.ADMIN


def test_restore_conflict_maps_to_constraint_violation():
    conn = FakeConnection([errors.UniqueViolation("duplicate key")])
    store = _store(FakePool(conn))

    with pytest.raises(ConstraintViolation):
        store.restore_identity(USER_ID)


@pytest.mark.parametrize("identity_id", ["abc", "user-1", "", "6f1c2a9e-3b7d"])
def test_non_uuid_ids_never_reach_the_database(identity_id):
    store = _store(DummyPool())

    assert store.get_identity(identity_id) is None
    assert store.get_identity(identity_id, include_deleted=True) is None
    assert store.set_identity_blocked(identity_id, True) is None
    assert store.set_identity_role(identity_id, Role.ADMIN) is None
    assert store.update_identity_profile(identity_id, name="Alice", phone_number=None) is None
    assert store.soft_delete_identity(identity_id) is None
    assert store.restore_identity(identity_id) is None
    assert store.revoke_identity_refresh_tokens(identity_id) == 0
    with pytest.raises(ConstraintViolation):
        store.issue_refresh_token(identity_id, "tok", NOW + timedelta(days=1))


def test_uppercase_uuid_is_canonicalized():
    conn = FakeConnection([FakeResult(_identity_row())])
    store = _store(FakePool(conn))

    store.get_identity(USER_ID.upper())

    assert conn.statements[0][1] == (USER_ID,)


def test_update_identity_profile_sets_both_columns():
    conn = FakeConnection([FakeResult(_identity_row(name="Alicia", phone_number="+15551234567"))])
    store = _store(FakePool(conn))

    identity = store.update_identity_profile(USER_ID, name="Alicia", phone_number="+15551234567")

    sql, params = conn.statements[0]
    assert sql.startswith("UPDATE app_identity SET name = %s, phone_number = %s, updated_at = %s")
    assert "deleted_at IS NULL" in sql
    assert params == ("Alicia", "+15551234567", NOW, USER_ID)
    assert identity.name == "Alicia"
