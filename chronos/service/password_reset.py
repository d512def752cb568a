from __future__ import annotations

import secrets
from datetime import timedelta
from typing import Optional, Protocol

from chronos.config import Settings
from chronos.logging import get_logger
from chronos.service.credentials import CredentialService
from chronos.service.email import EmailService
from chronos.service.errors import InvalidResetCode, ServerError
from chronos.service.sessions import SessionStore
from chronos.storage.common import digest
from chronos.storage.models import PasswordResetCode, User, utcnow

logger = get_logger(__name__)

RESET_CODE_DIGITS = 6


class PasswordResetBackend(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_password_reset(self, record: PasswordResetCode) -> PasswordResetCode: ...

    def consume_password_reset(self, code_hash: str) -> Optional[str]: ...


def generate_reset_code() -> str:
    return f"{secrets.randbelow(10**RESET_CODE_DIGITS):0{RESET_CODE_DIGITS}d}"


class PasswordResetService:
    """Emailed six-digit codes that allow one password change each."""

    def __init__(
        self,
        store: PasswordResetBackend,
        credentials: CredentialService,
        sessions: SessionStore,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.sessions = sessions
        self.email = email
        self.settings = settings

    def request_reset(self, email: str) -> None:
        """Email a reset code. Unknown addresses are accepted silently."""
        user = self.store.get_user_by_email(email)
        if user is None:
            logger.info("password_reset_unknown_account")
            return
        reset_code = generate_reset_code()
        self.store.create_password_reset(
            PasswordResetCode(
                code_hash=digest(reset_code),
                user_id=user.id,
                expires_at=utcnow() + timedelta(minutes=self.settings.password_reset_ttl_minutes),
            )
        )
        if not self.email.send_password_reset_code(user.email, reset_code):
            raise ServerError("Failed to send password reset email")
        logger.info("password_reset_requested", user_id=user.id)

    def reset_password(self, reset_code: str, new_password: str) -> str:
        """Consume the code, store the new password and sign the user out everywhere."""
        user_id = self.store.consume_password_reset(digest(reset_code.strip()))
        if user_id is None:
            raise InvalidResetCode()
        self.credentials.set_password(user_id, new_password)
        self.sessions.revoke_all(user_id)
        logger.info("password_reset_completed", user_id=user_id)
        return user_id
