from __future__ import annotations

from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from chronos.logging import get_logger
from chronos.service.errors import AccountNotFound, ConflictError, InvalidCredentials
from chronos.storage.errors import ConstraintViolation
from chronos.storage.models import Credential, LocalCredential, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class UserBackend(Protocol):
    def create_user(
        self,
        login: str,
        email: str,
        credential: Credential,
        *,
        full_name: Optional[str] = None,
        avatar: Optional[str] = None,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_login(self, login: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_login_or_email(self, identifier: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def record_login(self, user_id: str) -> None: ...


class CredentialService:
    """Local account registration and password checks (argon2id)."""

    def __init__(self, store: UserBackend) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # verified against when the account does not exist, so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("chronos-dummy-password")

    def hash_password(self, password: str) -> LocalCredential:
        return LocalCredential(
            password_hash=self._pwd_hasher.hash(password), password_algo=PASSWORD_ALGO
        )

    def verify_password(self, user: User, password: str) -> bool:
        credential = user.credential
        if not isinstance(credential, LocalCredential):
            logger.warning("password_login_for_federated_account", user_id=user.id)
            return False
        if credential.password_algo != PASSWORD_ALGO:
            logger.warning(
                "password_algo_mismatch", user_id=user.id, algo=credential.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(credential.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def find_by_login_or_email(self, identifier: str) -> Optional[User]:
        return self.store.get_user_by_login_or_email(identifier)

    def register(self, login: str, email: str, password: str) -> User:
        if self.store.get_user_by_login(login):
            raise ConflictError("User with this login already exists", detail={"field": "login"})
        if self.store.get_user_by_email(email):
            raise ConflictError("User with this email already exists", detail={"field": "email"})
        try:
            user = self.store.create_user(login, email, self.hash_password(password))
        except ConstraintViolation as exc:
            raise ConflictError(
                "User with this login or email already exists", detail=exc.detail
            ) from exc
        logger.info("user_registered", user_id=user.id)
        return user

    def authenticate(self, identifier: str, password: str) -> User:
        """Resolve by login or email and check the password.

        Unknown accounts and wrong passwords raise the same error.
        """
        user = self.find_by_login_or_email(identifier)
        if user is None:
            try:
                self._pwd_hasher.verify(self._dummy_hash, password)
            except VerifyMismatchError:
                pass
            raise InvalidCredentials()
        if not self.verify_password(user, password):
            logger.warning("password_verification_failed", user_id=user.id)
            raise InvalidCredentials()
        return user

    def confirm_password(self, user_id: str, password: str) -> User:
        """Re-check the password of an already authenticated user."""
        user = self.store.get_user(user_id)
        if user is None:
            raise AccountNotFound()
        if not self.verify_password(user, password):
            logger.warning("password_confirmation_failed", user_id=user_id)
            raise InvalidCredentials("Invalid password")
        return user

    def set_password(self, user_id: str, password: str) -> None:
        credential = self.hash_password(password)
        self.store.save_password(user_id, credential.password_hash, credential.password_algo)
        logger.info("password_changed", user_id=user_id)
