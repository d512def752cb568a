import contextlib
import json
from datetime import datetime, timezone

import pytest
from psycopg import errors

from chronos.storage.common import SecretCipher, digest
from chronos.storage.errors import ConstraintViolation
from chronos.storage.models import DeviceInfo, FederatedCredential, LocalCredential, Session
from chronos.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records statements and answers them from a queue of prepared results."""

    def __init__(self, results=None, raises=None):
        self.statements = []
        self.results = list(results or [])
        self.raises = raises

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def transaction(self):
        return contextlib.nullcontext()

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.raises is not None:
            raise self.raises
        return self.results.pop(0) if self.results else FakeResult()


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    def connection(self):
        return self.conn

    def close(self):
        self.closed = True


def _store(conn):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store._cipher = SecretCipher("test-mfa-key")
    return store


def _user_row(**overrides):
    row = {
        "id": "u-1",
        "login": "alice",
        "email": "alice@example.com",
        "credential_kind": "local",
        "password_hash": "argon-hash",
        "password_algo": "argon2id",
        "credential_provider": None,
        "credential_provider_uid": None,
        "full_name": None,
        "avatar": None,
        "email_verified": False,
        "created_at": datetime(2024, 1, 1),
        "last_login_at": None,
    }
    row.update(overrides)
    return row


def test_user_row_mapping():
    conn = FakeConnection([FakeResult([_user_row()])])
    user = _store(conn).get_user_by_login("ALICE")

    assert user.credential == LocalCredential("argon-hash")
    assert user.created_at.tzinfo == timezone.utc
    sql, params = conn.statements[0]
    assert "lower(login) = %s" in sql
    assert params == ("alice",)


def test_federated_row_mapping():
    row = _user_row(
        credential_kind="federated",
        password_hash=None,
        password_algo=None,
        credential_provider="google",
        credential_provider_uid="g-1",
    )
    user = _store(FakeConnection([FakeResult([row])])).get_user("u-1")

    assert user.credential == FederatedCredential("google", "g-1")
    assert user.has_password is False


def test_create_federated_user_links_provider():
    conn = FakeConnection()
    user = _store(conn).create_user(
        "bob", "Bob@Example.com", FederatedCredential("google", "g-9"), email_verified=True
    )

    assert user.email == "bob@example.com"
    assert "INSERT INTO app_user" in conn.statements[0][0]
    assert "INSERT INTO user_auth_provider" in conn.statements[1][0]
    assert conn.statements[1][1] == (user.id, "google", "g-9")


def test_create_user_unique_violation_maps_to_conflict():
    store = _store(FakeConnection(raises=errors.UniqueViolation("duplicate key")))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("alice", "alice@example.com", LocalCredential("h"))
    assert excinfo.value.detail == {"field": "email"}


def test_session_round_trip_through_row():
    session = Session.new(
        "u-1",
        digest("access"),
        digest("refresh"),
        ip_addr="203.0.113.5",
        device=DeviceInfo(type="desktop", title="Firefox on Linux"),
    )
    params = PostgresStore._session_params(session)
    row = dict(
        zip(
            (
                "id",
                "user_id",
                "access_token_hash",
                "refresh_token_hash",
                "created_at",
                "expires_at",
                "ip_addr",
                "device",
            ),
            params,
        )
    )

    assert json.loads(row["device"])["title"] == "Firefox on Linux"
    assert PostgresStore._session_from_row(row) == session


def test_swap_session_returns_none_when_already_rotated():
    conn = FakeConnection([FakeResult([])])
    built = []

    result = _store(conn).swap_session(digest("old"), lambda old: built.append(old))

    assert result is None
    assert built == []
    assert conn.statements[0][0].startswith("DELETE FROM auth_session")


def test_swap_session_inserts_replacement():
    old = Session.new("u-1", digest("a1"), digest("r1"))
    old_row = dict(
        zip(
            (
                "id",
                "user_id",
                "access_token_hash",
                "refresh_token_hash",
                "created_at",
                "expires_at",
                "ip_addr",
                "device",
            ),
            PostgresStore._session_params(old),
        )
    )
    conn = FakeConnection([FakeResult([old_row]), FakeResult()])
    replacement = Session.new("u-1", digest("a2"), digest("r2"))

    result = _store(conn).swap_session(digest("r1"), lambda prior: replacement)

    assert result is replacement
    assert "INSERT INTO auth_session" in conn.statements[1][0]
    assert conn.statements[1][1][3] == digest("r2")


def test_two_factor_secret_encrypted_before_insert():
    conn = FakeConnection()
    _store(conn).save_two_factor_secret("u-1", "JBSWY3DPEHPK3PXP")

    _, params = conn.statements[0]
    assert params[1] != "JBSWY3DPEHPK3PXP"
    assert SecretCipher("test-mfa-key").decrypt(params[1]) == "JBSWY3DPEHPK3PXP"


def test_consume_backup_code_is_single_statement():
    conn = FakeConnection([FakeResult([{"user_id": "u-1"}]), FakeResult([])])
    store = _store(conn)

    assert store.consume_backup_code("u-1", digest("CODE")) is True
    assert store.consume_backup_code("u-1", digest("CODE")) is False
    assert "array_remove" in conn.statements[0][0]


def test_mark_auth_code_used_reports_conflict():
    conn = FakeConnection([FakeResult([{"code": "c"}]), FakeResult([])])
    store = _store(conn)
    expires = datetime(2030, 1, 1, tzinfo=timezone.utc)

    assert store.mark_auth_code_used("c", expires) is True
    assert store.mark_auth_code_used("c", expires) is False
    assert "ON CONFLICT (code)" in conn.statements[0][0]


def test_close_closes_pool():
    conn = FakeConnection()
    store = _store(conn)
    store.close()
    assert store.pool.closed is True
