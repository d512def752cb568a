from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from chronos.logging import get_logger
from chronos.storage.common import (
    SecretCipher,
    deserialize_device,
    ensure_aware,
    normalize_email,
    normalize_login,
    serialize_device,
)
from chronos.storage.errors import ConstraintViolation
from chronos.storage.models import (
    Credential,
    FederatedCredential,
    LocalCredential,
    PasswordResetCode,
    Session,
    TwoFactorRecord,
    User,
    UserAuthProvider,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        login TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        credential_kind TEXT NOT NULL,
        password_hash TEXT,
        password_algo TEXT,
        credential_provider TEXT,
        credential_provider_uid TEXT,
        full_name TEXT,
        avatar TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_login_lower_idx ON app_user (lower(login))",
    """
    CREATE TABLE IF NOT EXISTS user_auth_provider (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_uid TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_uid)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        access_token_hash TEXT NOT NULL UNIQUE,
        refresh_token_hash TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        ip_addr TEXT,
        device JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS user_two_factor (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        backup_codes TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        enabled_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS consumed_oauth_code (
        code TEXT PRIMARY KEY,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_code (
        code_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store.

    Single-use operations are single statements (or one transaction) so that
    row locks, not application locks, serialize concurrent callers.
    """

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _credential_from_row(row: Dict[str, Any]) -> Credential:
        if row.get("credential_kind") == FederatedCredential.kind:
            return FederatedCredential(
                provider=row["credential_provider"],
                provider_uid=row["credential_provider_uid"],
            )
        return LocalCredential(
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
        )

    def _user_from_row(self, row: Dict[str, Any]) -> User:
        last_login = row.get("last_login_at")
        return User(
            id=str(row["id"]),
            login=row["login"],
            email=row["email"],
            credential=self._credential_from_row(row),
            full_name=row.get("full_name"),
            avatar=row.get("avatar"),
            email_verified=bool(row.get("email_verified", False)),
            created_at=ensure_aware(row.get("created_at") or utcnow()),
            last_login_at=ensure_aware(last_login) if last_login else None,
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        device = row.get("device")
        if isinstance(device, str):
            device = json.loads(device)
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            access_token_hash=row["access_token_hash"],
            refresh_token_hash=row["refresh_token_hash"],
            created_at=ensure_aware(row["created_at"]),
            expires_at=ensure_aware(row["expires_at"]),
            ip_addr=row.get("ip_addr"),
            device=deserialize_device(device),
        )

    @staticmethod
    def _session_params(session: Session) -> tuple:
        return (
            session.id,
            session.user_id,
            session.access_token_hash,
            session.refresh_token_hash,
            session.created_at,
            session.expires_at,
            session.ip_addr,
            json.dumps(serialize_device(session.device)),
        )

    # users
    def create_user(
        self,
        login: str,
        email: str,
        credential: Credential,
        *,
        full_name: Optional[str] = None,
        avatar: Optional[str] = None,
        email_verified: bool = False,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            login=login.strip(),
            email=normalize_email(email),
            credential=credential,
            full_name=full_name,
            avatar=avatar,
            email_verified=email_verified,
        )
        local = credential if isinstance(credential, LocalCredential) else None
        federated = credential if isinstance(credential, FederatedCredential) else None
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        INSERT INTO app_user (id, login, email, credential_kind, password_hash, password_algo,
                                              credential_provider, credential_provider_uid, full_name, avatar,
                                              email_verified, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            user.id,
                            user.login,
                            user.email,
                            credential.kind,
                            local.password_hash if local else None,
                            local.password_algo if local else None,
                            federated.provider if federated else None,
                            federated.provider_uid if federated else None,
                            full_name,
                            avatar,
                            email_verified,
                            user.created_at,
                        ),
                    )
                    if federated:
                        conn.execute(
                            """
                            INSERT INTO user_auth_provider (user_id, provider, provider_uid)
                            VALUES (%s, %s, %s)
                            """,
                            (user.id, federated.provider, federated.provider_uid),
                        )
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", "") or ""
            if "login" in constraint:
                raise ConstraintViolation("login already exists", {"field": "login"}) from exc
            if "provider" in constraint:
                raise ConstraintViolation(
                    "external identity already linked", {"field": "provider_uid"}
                ) from exc
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_login(self, login: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(login) = %s", (normalize_login(login),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_login_or_email(self, identifier: str) -> Optional[User]:
        key = identifier.strip().lower()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM app_user WHERE lower(login) = %s OR email = %s
                ORDER BY (lower(login) = %s) DESC LIMIT 1
                """,
                (key, key, key),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def link_user_auth_provider(self, user_id: str, provider: str, provider_uid: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_auth_provider (user_id, provider, provider_uid)
                VALUES (%s, %s, %s)
                ON CONFLICT (provider, provider_uid) DO UPDATE SET provider = EXCLUDED.provider
                RETURNING user_id
                """,
                (user_id, provider, provider_uid),
            ).fetchone()
        if row and str(row["user_id"]) != user_id:
            raise ConstraintViolation(
                "external identity already linked", {"field": "provider_uid"}
            )

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.* FROM user_auth_provider p JOIN app_user u ON u.id = p.user_id
                WHERE p.provider = %s AND p.provider_uid = %s
                """,
                (provider, provider_uid),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_user_auth_providers(self, user_id: str) -> List[UserAuthProvider]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_auth_provider WHERE user_id = %s ORDER BY id", (user_id,)
            ).fetchall()
        return [
            UserAuthProvider(
                id=int(row["id"]),
                user_id=str(row["user_id"]),
                provider=row["provider"],
                provider_uid=row["provider_uid"],
                created_at=ensure_aware(row.get("created_at") or utcnow()),
            )
            for row in rows
        ]

    def update_user_profile(
        self,
        user_id: str,
        *,
        avatar: Optional[str] = None,
        full_name: Optional[str] = None,
        email_verified: Optional[bool] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET avatar = COALESCE(%s, avatar),
                    full_name = COALESCE(%s, full_name),
                    email_verified = COALESCE(%s, email_verified)
                WHERE id = %s
                RETURNING *
                """,
                (avatar, full_name, email_verified, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s",
                (at or utcnow(), user_id),
            )

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user
                SET credential_kind = 'local', password_hash = %s, password_algo = %s
                WHERE id = %s
                """,
                (password_hash, password_algo, user_id),
            )
        if result.rowcount == 0:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, access_token_hash, refresh_token_hash,
                                              created_at, expires_at, ip_addr, device)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    self._session_params(session),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id}) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token already bound", {"field": "refresh_token"}
            ) from exc
        return session

    def get_session_by_access_hash(self, access_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE access_token_hash = %s", (access_hash,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_hash(self, refresh_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token_hash = %s", (refresh_hash,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def swap_session(
        self, old_refresh_hash: str, build: Callable[[Session], Session]
    ) -> Optional[Session]:
        """Delete the session bound to ``old_refresh_hash`` and insert its replacement.

        Both statements share one transaction; a concurrent caller blocks on
        the row lock and then deletes nothing, so it gets None.
        """
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "DELETE FROM auth_session WHERE refresh_token_hash = %s RETURNING *",
                    (old_refresh_hash,),
                ).fetchone()
                if not row:
                    return None
                replacement = build(self._session_from_row(row))
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, access_token_hash, refresh_token_hash,
                                              created_at, expires_at, ip_addr, device)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    self._session_params(replacement),
                )
        return replacement

    def delete_session_by_access_hash(self, access_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE access_token_hash = %s", (access_hash,)
            )
            return result.rowcount > 0

    def delete_session_by_refresh_hash(self, refresh_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE refresh_token_hash = %s", (refresh_hash,)
            )
            return result.rowcount > 0

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s AND id IS DISTINCT FROM %s",
                (user_id, except_session_id),
            )
            return result.rowcount

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

    # two-factor
    def get_two_factor(self, user_id: str) -> Optional[TwoFactorRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_two_factor WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        enabled_at = row.get("enabled_at")
        return TwoFactorRecord(
            user_id=str(row["user_id"]),
            secret=self._cipher.decrypt(row["secret"]),
            enabled=bool(row.get("enabled", False)),
            backup_codes=list(row.get("backup_codes") or []),
            created_at=ensure_aware(row.get("created_at") or utcnow()),
            enabled_at=ensure_aware(enabled_at) if enabled_at else None,
        )

    def save_two_factor_secret(self, user_id: str, secret: str) -> TwoFactorRecord:
        record = TwoFactorRecord(user_id=user_id, secret=secret)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_two_factor (user_id, secret, enabled, backup_codes, created_at)
                    VALUES (%s, %s, FALSE, '{}', %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret, enabled = FALSE, backup_codes = '{}',
                        created_at = EXCLUDED.created_at, enabled_at = NULL
                    """,
                    (user_id, self._cipher.encrypt(secret), record.created_at),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user not found for 2fa", {"user_id": user_id}) from exc
        return record

    def enable_two_factor(
        self, user_id: str, backup_code_hashes: List[str], enabled_at: datetime
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_two_factor
                SET enabled = TRUE, backup_codes = %s, enabled_at = %s
                WHERE user_id = %s
                """,
                (list(backup_code_hashes), enabled_at, user_id),
            )
            return result.rowcount > 0

    def delete_two_factor(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM user_two_factor WHERE user_id = %s", (user_id,))
            return result.rowcount > 0

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_two_factor
                SET backup_codes = array_remove(backup_codes, %s)
                WHERE user_id = %s AND enabled AND %s = ANY(backup_codes)
                RETURNING user_id
                """,
                (code_hash, user_id, code_hash),
            ).fetchone()
        return row is not None

    # consumed oauth codes
    def is_auth_code_used(self, code: str, now: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM consumed_oauth_code WHERE code = %s AND expires_at > %s",
                (code, now or utcnow()),
            ).fetchone()
        return row is not None

    def mark_auth_code_used(self, code: str, expires_at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO consumed_oauth_code (code, expires_at) VALUES (%s, %s)
                ON CONFLICT (code) DO UPDATE SET expires_at = EXCLUDED.expires_at
                WHERE consumed_oauth_code.expires_at <= now()
                RETURNING code
                """,
                (code, expires_at),
            ).fetchone()
        return row is not None

    def release_auth_code(self, code: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM consumed_oauth_code WHERE code = %s", (code,))

    # password reset
    def create_password_reset(self, record: PasswordResetCode) -> PasswordResetCode:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_code (code_hash, user_id, expires_at, used, created_at)
                    VALUES (%s, %s, %s, FALSE, %s)
                    ON CONFLICT (code_hash) DO UPDATE
                    SET user_id = EXCLUDED.user_id, expires_at = EXCLUDED.expires_at,
                        used = FALSE, created_at = EXCLUDED.created_at
                    """,
                    (record.code_hash, record.user_id, record.expires_at, record.created_at),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for reset", {"user_id": record.user_id}
            ) from exc
        return record

    def consume_password_reset(
        self, code_hash: str, now: Optional[datetime] = None
    ) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_code SET used = TRUE
                WHERE code_hash = %s AND NOT used AND expires_at > %s
                RETURNING user_id
                """,
                (code_hash, now or utcnow()),
            ).fetchone()
        return str(row["user_id"]) if row else None

    def purge_expired_codes(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._connect() as conn:
            codes = conn.execute(
                "DELETE FROM consumed_oauth_code WHERE expires_at <= %s", (current,)
            )
            resets = conn.execute(
                "DELETE FROM password_reset_code WHERE used OR expires_at <= %s", (current,)
            )
            return codes.rowcount + resets.rowcount
