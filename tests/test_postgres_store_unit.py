from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from psycopg import errors

from userservice.service import lockout
from userservice.storage.errors import ConstraintViolation
from userservice.storage.models import Role, UserStatus
from userservice.storage.postgres import PostgresStore, _constraint_field

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _user_row(**overrides):
    row = {
        "id": 7,
        "username": "alice",
        "email": "a@x.com",
        "password_hash": "$argon2id$stub",
        "role": "USER",
        "status": "ACTIVE",
        "email_verified": False,
        "failed_login_attempts": 0,
        "account_locked_until": None,
        "last_login_at": None,
        "first_name": None,
        "last_name": None,
        "phone": None,
        "avatar_url": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


class FakeCursor:
    def __init__(self, rows, rowcount):
        self._rows = rows
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements and answers them from a script of (prefix, rows, rowcount)."""

    def __init__(self, script=None, raises=None):
        self.script = list(script or [])
        self.raises = raises
        self.executed = []
        self.in_transaction = False
        self.transactions = 0

    def execute(self, sql, params=None):
        statement = " ".join(sql.split())
        self.executed.append((statement, params, self.in_transaction))
        if self.raises is not None:
            raise self.raises
        for index, (prefix, rows, rowcount) in enumerate(self.script):
            if statement.startswith(prefix):
                self.script.pop(index)
                return FakeCursor(rows, rowcount)
        return FakeCursor([], 0)

    @contextmanager
    def transaction(self):
        self.in_transaction = True
        self.transactions += 1
        try:
            yield
        finally:
            self.in_transaction = False


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(tmp_path: Path, conn: FakeConnection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://stub"
    store.fs_root = tmp_path
    store.logger = SimpleNamespace(info=lambda *a, **k: None)
    store.pool = FakePool(conn)
    return store


class _UsernameTaken(errors.UniqueViolation):
    @property
    def diag(self):
        return SimpleNamespace(constraint_name="app_user_username_key")


def test_constraint_field_from_constraint_name():
    def exc(name):
        return SimpleNamespace(diag=SimpleNamespace(constraint_name=name))

    assert _constraint_field(exc("app_user_email_key")) == "email"
    assert _constraint_field(exc("app_user_username_key")) == "username"
    assert _constraint_field(exc("refresh_token_token_key")) == "token"
    assert _constraint_field(exc(None)) is None


def test_user_from_row_maps_enums(tmp_path):
    user = PostgresStore._user_from_row(_user_row(role="ADMIN", status="SUSPENDED"))
    assert user.role is Role.ADMIN
    assert user.status is UserStatus.SUSPENDED
    assert not user.is_active


def test_create_user_inserts_and_returns_record(tmp_path):
    conn = FakeConnection([("INSERT INTO app_user", [_user_row()], 1)])
    store = _store(tmp_path, conn)

    user = store.create_user("alice", "a@x.com", "$argon2id$stub", first_name="Alice")

    statement, params, _ = conn.executed[0]
    assert statement.startswith("INSERT INTO app_user")
    assert params[:5] == ("alice", "a@x.com", "$argon2id$stub", "USER", "ACTIVE")
    assert params[6] == "Alice"
    assert user.id == 7


def test_create_user_maps_unique_violation(tmp_path):
    store = _store(tmp_path, FakeConnection(raises=_UsernameTaken()))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("alice", "a@x.com", "hash")
    assert excinfo.value.field == "username"


def test_update_user_locked_runs_in_one_transaction(tmp_path):
    conn = FakeConnection(
        [
            ("SELECT * FROM app_user WHERE id = %s FOR UPDATE", [_user_row(failed_login_attempts=4)], 1),
            ("UPDATE app_user SET", [_user_row(failed_login_attempts=5, account_locked_until=NOW + timedelta(minutes=15))], 1),
        ]
    )
    store = _store(tmp_path, conn)
    policy = lockout.LockoutPolicy(max_attempts=5, lockout_duration=timedelta(minutes=15))

    user = store.update_user_locked(7, lockout.record_failure(policy, NOW))

    assert user.failed_login_attempts == 5
    assert conn.transactions == 1
    select, update = conn.executed
    assert select[2] and update[2]
    assert "FOR UPDATE" in select[0]
    # failed_login_attempts and account_locked_until sit at positions 6 and 7
    assert update[1][6] == 5
    assert update[1][7] == NOW + timedelta(minutes=15)
    assert update[1][-1] == 7


def test_update_user_locked_skips_write_when_unchanged(tmp_path):
    locked_row = _user_row(failed_login_attempts=5, account_locked_until=NOW + timedelta(minutes=5))
    conn = FakeConnection([("SELECT * FROM app_user WHERE id = %s FOR UPDATE", [locked_row], 1)])
    store = _store(tmp_path, conn)

    user = store.update_user_locked(7, lockout.record_failure(lockout.LockoutPolicy(), NOW))

    assert user.failed_login_attempts == 5
    assert len(conn.executed) == 1


def test_update_user_locked_missing_user(tmp_path):
    store = _store(tmp_path, FakeConnection())
    assert store.update_user_locked(99, lambda u: u) is None


def test_rotate_refresh_token_deletes_then_inserts_atomically(tmp_path):
    token_row = {
        "id": 3,
        "user_id": 7,
        "token": "fresh",
        "expires_at": NOW + timedelta(days=7),
        "revoked": False,
        "created_at": NOW,
    }
    conn = FakeConnection([("INSERT INTO refresh_token", [token_row], 1)])
    store = _store(tmp_path, conn)

    record = store.rotate_refresh_token(7, "fresh", NOW + timedelta(days=7))

    assert record.token == "fresh"
    delete, insert = conn.executed
    assert delete[0].startswith("DELETE FROM refresh_token WHERE user_id")
    assert insert[0].startswith("INSERT INTO refresh_token")
    assert delete[2] and insert[2]
    assert conn.transactions == 1


def test_revoke_and_sweep_report_rowcount(tmp_path):
    conn = FakeConnection(
        [
            ("DELETE FROM refresh_token WHERE user_id", [], 2),
            ("DELETE FROM refresh_token WHERE revoked OR expires_at", [], 5),
        ]
    )
    store = _store(tmp_path, conn)

    assert store.revoke_all_refresh_tokens(7) == 2
    assert store.delete_expired_and_revoked_refresh_tokens(NOW) == 5
    assert conn.executed[1][1] == (NOW,)


def test_save_refresh_token_unknown_user(tmp_path):
    store = _store(tmp_path, FakeConnection(raises=errors.ForeignKeyViolation()))
    with pytest.raises(ConstraintViolation):
        store.save_refresh_token(99, "t", NOW)
