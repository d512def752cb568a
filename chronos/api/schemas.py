from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from chronos.logging import get_correlation_id


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "token_invalid",
    "token_expired",
    "refresh_token_missing",
    "refresh_token_invalid",
    "two_factor_required",
    "invalid_2fa_token",
    "2fa_not_configured",
    "invalid_oauth_state",
    "authorization_code_replayed",
    "email_not_verified",
    "oauth_exchange_failed",
    "invalid_reset_code",
    "rate_limited",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can branch on")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """API envelope: ``{status, data | error, request_id}``."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_LOGIN_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _validate_login(value: str) -> str:
    """3-30 characters: letters, digits, underscores and hyphens."""
    value = value.strip()
    if len(value) < 3:
        raise ValueError("login must be at least 3 characters")
    if len(value) > 30:
        raise ValueError("login must be at most 30 characters")
    if not _LOGIN_PATTERN.match(value):
        raise ValueError("login must contain only letters, numbers, underscores and hyphens")
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
    ):
        raise ValueError("password must contain a lowercase letter, an uppercase letter and a digit")
    return value


class RegisterRequest(BaseModel):
    login: str
    email: str
    password: str

    @field_validator("login")
    @classmethod
    def _validate_register_login(cls, value: str) -> str:
        return _validate_login(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    """``login`` accepts either the login name or the email address."""

    login: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)
    token: Optional[str] = Field(default=None, max_length=16)

    @field_validator("login")
    @classmethod
    def _strip_login(cls, value: str) -> str:
        return _normalize_unicode(value.strip())

    @field_validator("token")
    @classmethod
    def _blank_token_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class MessageResponse(BaseModel):
    message: str


class TwoFactorRequiredResponse(BaseModel):
    requires2FA: bool = True
    message: str = "Two-factor token required"


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class TwoFactorEnableRequest(BaseModel):
    token: str = Field(..., pattern=r"^[0-9]{6}$")
    password: str = Field(..., min_length=1, max_length=128)


class TwoFactorVerifyRequest(BaseModel):
    token: str = Field(..., min_length=6, max_length=16)


class TwoFactorSetupResponse(BaseModel):
    secret: str
    qrCode: str
    manualEntryKey: str


class TwoFactorEnableResponse(BaseModel):
    message: str
    backupCodes: List[str]


class TwoFactorVerifyResponse(BaseModel):
    valid: bool


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    configured: bool
    remainingBackupCodes: int


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserResponse(BaseModel):
    id: str
    login: str
    email: str
    full_name: Optional[str] = None
    avatar: Optional[str] = None
    created: datetime
    google_id: bool = False
    is_email_verified: bool = False
    twoFactorEnabled: bool = False
    lastLoginAt: Optional[datetime] = None


class SessionResponse(BaseModel):
    id: str
    ipAddress: Optional[str] = None
    deviceType: str
    deviceTitle: str
    createdAt: datetime
    expiresAt: datetime
    current: bool = False


class SessionsRevokedResponse(BaseModel):
    message: str
    revoked: int
