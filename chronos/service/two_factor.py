from __future__ import annotations

import base64
import io
import secrets
import string
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

import qrcode

from chronos.config import Settings
from chronos.logging import get_logger
from chronos.service import totp
from chronos.service.credentials import CredentialService
from chronos.service.errors import InvalidTwoFactorToken, TwoFactorNotConfigured
from chronos.storage.common import digest
from chronos.storage.models import TwoFactorRecord, utcnow

logger = get_logger(__name__)

BACKUP_CODE_LENGTH = 8
_BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits


class TwoFactorBackend(Protocol):
    def get_two_factor(self, user_id: str) -> Optional[TwoFactorRecord]: ...

    def save_two_factor_secret(self, user_id: str, secret: str) -> TwoFactorRecord: ...

    def enable_two_factor(self, user_id: str, backup_code_hashes, enabled_at) -> bool: ...

    def delete_two_factor(self, user_id: str) -> bool: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool: ...


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    otpauth_uri: str
    qr_code: str


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    configured: bool
    remaining_backup_codes: int


def _normalize_backup_code(code: str) -> str:
    return code.strip().replace("-", "").upper()


def generate_backup_codes(count: int) -> List[str]:
    return [
        "".join(secrets.choice(_BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        for _ in range(count)
    ]


def qr_data_url(payload: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buf.getvalue()).decode('ascii')}"


class TwoFactorService:
    """TOTP lifecycle: setup -> enable -> (verify)* -> disable.

    Setup stores a secret without enabling it; only a verified TOTP turns it
    on. Backup codes are handed out once at enable time and stored as digests;
    each one is removed by the store on first use.
    """

    def __init__(
        self,
        store: TwoFactorBackend,
        credentials: CredentialService,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.settings = settings
        self._clock = clock or time.time

    @staticmethod
    def account_label(user_id: str) -> str:
        return f"user_{user_id}"

    def setup(self, user_id: str, password: str) -> TwoFactorSetup:
        self.credentials.confirm_password(user_id, password)
        secret = totp.generate_secret()
        self.store.save_two_factor_secret(user_id, secret)
        uri = totp.provisioning_uri(
            secret, self.account_label(user_id), self.settings.totp_issuer
        )
        logger.info("two_factor_setup_started", user_id=user_id)
        return TwoFactorSetup(secret=secret, otpauth_uri=uri, qr_code=qr_data_url(uri))

    def enable(self, user_id: str, token: str, password: str) -> List[str]:
        """Turn 2FA on after a valid TOTP; returns the plaintext backup codes once."""
        self.credentials.confirm_password(user_id, password)
        record = self.store.get_two_factor(user_id)
        if record is None:
            raise TwoFactorNotConfigured()
        if not totp.verify_totp(record.secret, token, now=self._clock()):
            logger.warning("two_factor_enable_rejected", user_id=user_id)
            raise InvalidTwoFactorToken()
        codes = generate_backup_codes(self.settings.backup_code_count)
        if not self.store.enable_two_factor(user_id, [digest(c) for c in codes], utcnow()):
            # record vanished between read and write (concurrent disable)
            raise TwoFactorNotConfigured()
        logger.info("two_factor_enabled", user_id=user_id)
        return codes

    def disable(self, user_id: str, password: str) -> None:
        self.credentials.confirm_password(user_id, password)
        self.store.delete_two_factor(user_id)
        logger.info("two_factor_disabled", user_id=user_id)

    def verify_token(self, user_id: str, candidate: str) -> bool:
        """TOTP first, then a one-time backup code. False unless 2FA is enabled."""
        record = self.store.get_two_factor(user_id)
        if record is None or not record.enabled or not candidate:
            return False
        candidate = candidate.strip()
        if totp.verify_totp(record.secret, candidate, now=self._clock()):
            return True
        if self.store.consume_backup_code(user_id, digest(_normalize_backup_code(candidate))):
            remaining = max(0, len(record.backup_codes) - 1)
            logger.info("backup_code_consumed", user_id=user_id, remaining=remaining)
            return True
        return False

    def status(self, user_id: str) -> TwoFactorStatus:
        record = self.store.get_two_factor(user_id)
        if record is None:
            return TwoFactorStatus(enabled=False, configured=False, remaining_backup_codes=0)
        return TwoFactorStatus(
            enabled=record.enabled,
            configured=True,
            remaining_backup_codes=len(record.backup_codes) if record.enabled else 0,
        )

    def is_enabled(self, user_id: str) -> bool:
        record = self.store.get_two_factor(user_id)
        return bool(record and record.enabled)
