"""Tests for local registration and argon2id password checks."""

import pytest

from chronos.service.credentials import CredentialService
from chronos.service.errors import AccountNotFound, ConflictError, InvalidCredentials
from chronos.storage.memory import MemoryStore
from chronos.storage.models import FederatedCredential, LocalCredential

PASSWORD = "Correct-Horse-9"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="test-mfa-key", persist=False)


@pytest.fixture
def credentials(store):
    return CredentialService(store)


def test_register_hashes_with_argon2id(credentials):
    user = credentials.register("alice", "Alice@Example.com", PASSWORD)

    assert isinstance(user.credential, LocalCredential)
    assert user.credential.password_algo == "argon2id"
    assert user.credential.password_hash.startswith("$argon2id$")
    assert PASSWORD not in user.credential.password_hash
    assert user.email == "alice@example.com"


def test_register_conflicts(credentials):
    credentials.register("alice", "alice@example.com", PASSWORD)

    with pytest.raises(ConflictError) as by_login:
        credentials.register("Alice", "new@example.com", PASSWORD)
    with pytest.raises(ConflictError) as by_email:
        credentials.register("alice2", "ALICE@example.com", PASSWORD)

    assert by_login.value.detail == {"field": "login"}
    assert by_email.value.detail == {"field": "email"}


def test_authenticate_by_login_or_email(credentials):
    user = credentials.register("alice", "alice@example.com", PASSWORD)

    assert credentials.authenticate("alice", PASSWORD).id == user.id
    assert credentials.authenticate("alice@example.com", PASSWORD).id == user.id


def test_authenticate_failures_share_message(credentials):
    credentials.register("alice", "alice@example.com", PASSWORD)

    with pytest.raises(InvalidCredentials) as wrong:
        credentials.authenticate("alice", "not-the-password")
    with pytest.raises(InvalidCredentials) as missing:
        credentials.authenticate("ghost", PASSWORD)
    assert wrong.value.message == missing.value.message


def test_federated_account_cannot_use_password(credentials, store):
    store.create_user("bob", "bob@example.com", FederatedCredential("google", "g-1"))

    with pytest.raises(InvalidCredentials):
        credentials.authenticate("bob", PASSWORD)


def test_unknown_algorithm_rejected(credentials, store):
    user = credentials.register("alice", "alice@example.com", PASSWORD)
    store.save_password(user.id, user.credential.password_hash, "bcrypt")

    with pytest.raises(InvalidCredentials):
        credentials.authenticate("alice", PASSWORD)


def test_confirm_password(credentials):
    user = credentials.register("alice", "alice@example.com", PASSWORD)

    assert credentials.confirm_password(user.id, PASSWORD).id == user.id
    with pytest.raises(InvalidCredentials):
        credentials.confirm_password(user.id, "wrong")
    with pytest.raises(AccountNotFound):
        credentials.confirm_password("missing", PASSWORD)


def test_set_password_gives_federated_user_a_password(credentials, store):
    user = store.create_user("bob", "bob@example.com", FederatedCredential("google", "g-1"))

    credentials.set_password(user.id, PASSWORD)

    assert credentials.authenticate("bob", PASSWORD).id == user.id
    assert store.get_user_by_provider("google", "g-1").id == user.id
