from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LocalCredential:
    """Password credential; only the argon2id digest is kept."""

    password_hash: str
    password_algo: str = "argon2id"

    kind = "local"


@dataclass(frozen=True)
class FederatedCredential:
    """Account created through an external identity provider; no password."""

    provider: str
    provider_uid: str

    kind = "federated"


Credential = Union[LocalCredential, FederatedCredential]


@dataclass
class User:
    id: str
    login: str
    email: str
    credential: Credential
    full_name: Optional[str] = None
    avatar: Optional[str] = None
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def has_password(self) -> bool:
        return isinstance(self.credential, LocalCredential)


@dataclass
class UserAuthProvider:
    id: int
    user_id: str
    provider: str
    provider_uid: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class DeviceInfo:
    type: str = "unknown"
    title: str = "Unknown device"
    user_agent: Optional[str] = None


@dataclass
class Session:
    """One issued token pair.

    Tokens are never stored; ``access_token_hash`` and ``refresh_token_hash``
    are SHA-256 digests used as lookup keys.
    """

    id: str
    user_id: str
    access_token_hash: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    device: DeviceInfo = field(default_factory=DeviceInfo)

    @classmethod
    def new(
        cls,
        user_id: str,
        access_token_hash: str,
        refresh_token_hash: str,
        *,
        retention_days: int = 30,
        ip_addr: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            access_token_hash=access_token_hash,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            expires_at=now + timedelta(days=retention_days),
            ip_addr=ip_addr,
            device=device or DeviceInfo(),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class TwoFactorRecord:
    """Per-user TOTP state. ``backup_codes`` holds digests, never plaintext."""

    user_id: str
    secret: str
    enabled: bool = False
    backup_codes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    enabled_at: Optional[datetime] = None


@dataclass
class ConsumedAuthCode:
    code: str
    expires_at: datetime


@dataclass
class PasswordResetCode:
    code_hash: str
    user_id: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)
