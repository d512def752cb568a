"""Helpers shared between the memory and postgres stores."""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from chronos.storage.models import (
    Credential,
    DeviceInfo,
    FederatedCredential,
    LocalCredential,
)


def digest(value: str) -> str:
    """SHA-256 hex digest used to index tokens and one-time codes."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_login(login: str) -> str:
    return login.strip().lower()


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class SecretCipher:
    """Fernet wrapper for TOTP secrets at rest.

    Any string works as key material; it is stretched with SHA-256 into the
    32-byte urlsafe key Fernet expects.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        self._fernet = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise RuntimeError("stored TOTP secret cannot be decrypted") from exc


def serialize_credential(credential: Credential) -> Dict[str, Any]:
    if isinstance(credential, LocalCredential):
        return {
            "kind": credential.kind,
            "password_hash": credential.password_hash,
            "password_algo": credential.password_algo,
        }
    return {
        "kind": credential.kind,
        "provider": credential.provider,
        "provider_uid": credential.provider_uid,
    }


def deserialize_credential(data: Dict[str, Any]) -> Credential:
    kind = data.get("kind")
    if kind == LocalCredential.kind:
        return LocalCredential(
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", "argon2id"),
        )
    if kind == FederatedCredential.kind:
        return FederatedCredential(
            provider=data["provider"], provider_uid=data["provider_uid"]
        )
    raise ValueError(f"unknown credential kind: {kind!r}")


def serialize_device(device: DeviceInfo) -> Dict[str, Optional[str]]:
    return {"type": device.type, "title": device.title, "user_agent": device.user_agent}


def deserialize_device(data: Optional[Dict[str, Any]]) -> DeviceInfo:
    if not data:
        return DeviceInfo()
    return DeviceInfo(
        type=data.get("type") or "unknown",
        title=data.get("title") or "Unknown device",
        user_agent=data.get("user_agent"),
    )
