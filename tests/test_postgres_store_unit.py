import contextlib
import uuid
from datetime import datetime, timezone

import pytest
from psycopg import OperationalError, errors

from tessera.logging import get_logger
from tessera.storage.errors import ConstraintViolation, StoreUnavailable
from tessera.storage.models import SocialAccount, TwoFactorMethod, TwoFactorState
from tessera.storage.postgres import PostgresStore
from tessera.storage.secrets import FieldCipher

from conftest import APP_A, TEST_SECRET

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows=None, rowcount=None):
        self.rows = list(rows or [])
        self.rowcount = len(self.rows) if rowcount is None else rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return self.rows


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def executemany(self, sql, params_seq):
        for params in params_seq:
            self.conn.execute(sql, params)


class FakeConnection:
    """Records statements and answers them from a queue of results."""

    def __init__(self, results=None, error=None):
        self.statements = []
        self.results = list(results or [])
        self.error = error

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        return self.results.pop(0) if self.results else FakeResult()

    def cursor(self):
        return FakeCursor(self)


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    @contextlib.contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://test"
    store.pool = pool
    store._cipher = FieldCipher(TEST_SECRET)
    store.logger = get_logger("test")
    return store


def _user_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "app_id": uuid.UUID(APP_A),
        "email": "alice@example.com",
        "password_hash": "$argon2id$hash",
        "email_verified": False,
        "is_active": True,
        "name": None,
        "first_name": "Alice",
        "last_name": None,
        "avatar_url": None,
        "locale": None,
        "two_factor_state": "disabled",
        "two_factor_secret": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_row_mapping_decrypts_secret():
    store = _store(DummyPool())
    encrypted = store._cipher.encrypt("JBSWY3DPEHPK3PXP")
    user = store._row_to_user(
        _user_row(two_factor_state="enabled", two_factor_secret=encrypted)
    )
    assert user.app_id == APP_A
    assert user.two_factor_state == TwoFactorState.ENABLED
    assert user.two_factor_secret == "JBSWY3DPEHPK3PXP"


def test_account_mapping_accepts_json_text():
    store = _store(DummyPool())
    account = store._row_to_account(
        {
            "id": uuid.uuid4(),
            "app_id": APP_A,
            "user_id": uuid.uuid4(),
            "provider": "github",
            "provider_user_id": "42",
            "raw_data": '{"login": "octo"}',
            "access_token": None,
            "created_at": NOW,
            "updated_at": NOW,
        }
    )
    assert account.raw_data == {"login": "octo"}
    assert account.access_token is None


def test_get_user_is_scoped_by_application():
    conn = FakeConnection([FakeResult([_user_row()])])
    store = _store(FakePool(conn))
    user = store.get_user(APP_A, "user-1")
    assert user.email == "alice@example.com"
    sql, params = conn.statements[0]
    assert "WHERE app_id = %s AND id = %s" in sql
    assert params == (APP_A, "user-1")


def test_duplicate_email_is_constraint_violation():
    conn = FakeConnection(error=errors.UniqueViolation("duplicate key"))
    store = _store(FakePool(conn))
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user(APP_A, "alice@example.com", password_hash="x")
    assert exc_info.value.detail == {"field": "email"}


def test_unreachable_database_is_store_unavailable():
    store = _store(FakePool(error=OperationalError("connection refused")))
    with pytest.raises(StoreUnavailable):
        store.get_application(APP_A)


def test_update_profile_builds_assignments():
    conn = FakeConnection([FakeResult([_user_row(first_name="Al", email_verified=True)])])
    store = _store(FakePool(conn))
    user = store.update_user_profile(
        APP_A, "user-1", {"first_name": "Al", "password_hash": "ignored"}, email_verified=True
    )
    assert user.first_name == "Al"
    sql, params = conn.statements[0]
    assert "first_name = %s, email_verified = %s, updated_at = now()" in sql
    assert "password_hash" not in sql.split("RETURNING")[0]
    assert params == ("Al", True, APP_A, "user-1")


def test_secret_is_encrypted_before_write():
    conn = FakeConnection([FakeResult(rowcount=1), FakeResult()])
    store = _store(FakePool(conn))
    store.set_two_factor_secret(APP_A, "user-1", "JBSWY3DPEHPK3PXP")
    _, params = conn.statements[0]
    assert params[0] != "JBSWY3DPEHPK3PXP"
    assert store._cipher.decrypt(params[0]) == "JBSWY3DPEHPK3PXP"
    assert params[1] == "pending_setup"
    assert conn.statements[1][0].startswith("DELETE FROM recovery_code")


def test_enable_requires_pending_setup():
    conn = FakeConnection([FakeResult([])])
    store = _store(FakePool(conn))
    assert store.enable_two_factor(APP_A, "user-1", ["h1", "h2"]) is False
    assert len(conn.statements) == 1


def test_enable_writes_recovery_codes():
    conn = FakeConnection([FakeResult([{"id": "user-1"}])])
    store = _store(FakePool(conn))
    assert store.enable_two_factor(APP_A, "user-1", ["h1", "h2"]) is True
    inserts = [params for sql, params in conn.statements if sql.startswith("INSERT INTO recovery_code")]
    assert inserts == [(APP_A, "user-1", "h1"), (APP_A, "user-1", "h2")]


def test_consume_recovery_code_is_single_delete():
    conn = FakeConnection([FakeResult([{"code_hash": "h1"}]), FakeResult([])])
    store = _store(FakePool(conn))
    assert store.consume_recovery_code(APP_A, "user-1", "h1") is True
    assert store.consume_recovery_code(APP_A, "user-1", "h1") is False
    assert all(sql.startswith("DELETE FROM recovery_code") for sql, _ in conn.statements)


def test_enable_email_method_clears_secret():
    conn = FakeConnection([FakeResult([{"id": "user-1"}])])
    store = _store(FakePool(conn))
    assert store.enable_two_factor(APP_A, "user-1", ["h1"], method=TwoFactorMethod.EMAIL)
    sql, params = conn.statements[0]
    assert "two_factor_secret = NULL" in sql
    assert params == ("enabled", "email", APP_A, "user-1", "enabled")


def test_restore_recovery_code_requires_enabled_user():
    conn = FakeConnection([FakeResult(rowcount=1), FakeResult(rowcount=0)])
    store = _store(FakePool(conn))
    assert store.restore_recovery_code(APP_A, "user-1", "h1") is True
    assert store.restore_recovery_code(APP_A, "user-1", "h1") is False
    sql, params = conn.statements[0]
    assert sql.startswith("INSERT INTO recovery_code")
    assert "ON CONFLICT DO NOTHING" in sql
    assert params == (APP_A, "user-1", "h1", APP_A, "user-1", "enabled")


def test_application_methods_round_trip():
    store = _store(DummyPool())
    app = store._row_to_application(
        {
            "id": uuid.UUID(APP_A),
            "name": "Mail",
            "two_factor_methods": "totp, email",
            "email_two_factor_enabled": True,
            "created_at": NOW,
        }
    )
    assert app.two_factor_methods == ["totp", "email"]
    assert app.email_two_factor_enabled


def test_update_missing_social_account():
    conn = FakeConnection([FakeResult([])])
    store = _store(FakePool(conn))
    account = SocialAccount(
        id="acc-1", app_id=APP_A, user_id="user-1", provider="google", provider_user_id="g-1"
    )
    with pytest.raises(ConstraintViolation):
        store.update_social_account(account)
