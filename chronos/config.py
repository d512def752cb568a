from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chronos.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; cookies are only marked secure in production."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication API."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field("postgresql://localhost:5432/chronos", "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/chronos", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    persist_memory_store: bool = env_field(
        True,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory store to SHARED_FS_ROOT/state after each mutation",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Tokens and cookies
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime in minutes"
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime in minutes",
    )
    session_retention_days: int = env_field(
        30,
        "SESSION_RETENTION_DAYS",
        description="Sessions are purged this many days after creation",
    )
    access_token_cookie: str = env_field("access_token", "ACCESS_TOKEN_NAME")
    refresh_token_cookie: str = env_field("refresh_token", "REFRESH_TOKEN_NAME")
    oauth_state_cookie: str = env_field("oauth_state", "OAUTH_STATE_COOKIE")
    cleanup_interval_seconds: int = env_field(
        600,
        "CLEANUP_INTERVAL_SECONDS",
        description="How often expired sessions and one-time codes are purged",
    )

    # Two-factor
    totp_issuer: str = env_field("Chronos", "TOTP_ISSUER")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    mfa_encryption_key: str | None = env_field(None, "MFA_SECRET_KEY")

    # OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_callback_url: str = env_field(
        "http://localhost:8000/api/auth/google/callback", "GOOGLE_CALLBACK_URL"
    )
    oauth_code_ttl_minutes: int = env_field(
        10,
        "OAUTH_CODE_TTL_MINUTES",
        description="How long a consumed authorization code stays on the replay list",
    )
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES")
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")

    # Password reset and email
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Chronos", "EMAIL_FROM_NAME")

    # Rate limits; a limit of 0 disables the check
    auth_rate_limit: int = env_field(
        10,
        "AUTH_RATE_LIMIT",
        description="Login, registration and 2FA attempts per client or account per window",
    )
    auth_rate_limit_window_seconds: int = env_field(15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    password_reset_rate_limit: int = env_field(
        3,
        "PASSWORD_RESET_RATE_LIMIT",
        description="Reset emails per client or address per window",
    )
    password_reset_rate_limit_window_seconds: int = env_field(
        60 * 60, "PASSWORD_RESET_RATE_LIMIT_WINDOW_SECONDS"
    )
    trusted_proxies: list[str] = env_field(
        [],
        "TRUSTED_PROXIES",
        description="Peer addresses whose X-Forwarded-For header is believed",
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            return Environment(value.strip().lower())
        return Environment(value)

    @field_validator("cors_allow_origins", "trusted_proxies", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_retention_days",
        "oauth_code_ttl_minutes",
        "password_reset_ttl_minutes",
        "backup_code_count",
        "auth_rate_limit_window_seconds",
        "password_reset_rate_limit_window_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/chronos"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
