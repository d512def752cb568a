from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from chronos.logging import get_logger
from chronos.storage.common import (
    SecretCipher,
    deserialize_credential,
    deserialize_device,
    normalize_email,
    normalize_login,
    serialize_credential,
    serialize_device,
)
from chronos.storage.errors import ConstraintViolation
from chronos.storage.models import (
    ConsumedAuthCode,
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


class MemoryStore:
    """Dict-backed store for tests and single-process deployments.

    Every public method runs under ``_data_lock``, so the compound operations
    (session swap, backup-code consumption, code marking) are atomic with
    respect to each other. When ``persist`` is set the whole state is written
    to ``fs_root/state/auth_store.json`` after each mutation.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/chronos",
        *,
        mfa_encryption_key: str,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.providers: List[UserAuthProvider] = []
        self.sessions: Dict[str, Session] = {}
        # digest -> session id
        self._sessions_by_access: Dict[str, str] = {}
        self._sessions_by_refresh: Dict[str, str] = {}
        self.two_factor: Dict[str, TwoFactorRecord] = {}
        self.consumed_codes: Dict[str, ConsumedAuthCode] = {}
        self.password_resets: Dict[str, PasswordResetCode] = {}
        # RLock so helpers can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        self._cipher = SecretCipher(mfa_encryption_key)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

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
        login_key = normalize_login(login)
        email_key = normalize_email(email)
        with self._data_lock:
            for existing in self.users.values():
                if normalize_login(existing.login) == login_key:
                    raise ConstraintViolation("login already exists", {"field": "login"})
                if existing.email == email_key:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if isinstance(credential, FederatedCredential) and self._find_provider(
                credential.provider, credential.provider_uid
            ):
                raise ConstraintViolation(
                    "external identity already linked", {"field": "provider_uid"}
                )
            user = User(
                id=str(uuid.uuid4()),
                login=login.strip(),
                email=email_key,
                credential=credential,
                full_name=full_name,
                avatar=avatar,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            if isinstance(credential, FederatedCredential):
                self._append_provider(user.id, credential.provider, credential.provider_uid)
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email_key = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email_key), None)

    def get_user_by_login(self, login: str) -> Optional[User]:
        login_key = normalize_login(login)
        with self._data_lock:
            return next(
                (u for u in self.users.values() if normalize_login(u.login) == login_key),
                None,
            )

    def get_user_by_login_or_email(self, identifier: str) -> Optional[User]:
        with self._data_lock:
            return self.get_user_by_login(identifier) or self.get_user_by_email(identifier)

    def _find_provider(self, provider: str, provider_uid: str) -> Optional[UserAuthProvider]:
        for mapping in self.providers:
            if mapping.provider == provider and mapping.provider_uid == provider_uid:
                return mapping
        return None

    def _append_provider(self, user_id: str, provider: str, provider_uid: str) -> None:
        max_id = max((p.id for p in self.providers), default=0)
        self.providers.append(
            UserAuthProvider(
                id=max_id + 1, user_id=user_id, provider=provider, provider_uid=provider_uid
            )
        )

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for provider", {"user_id": user_id})
            existing = self._find_provider(provider, provider_uid)
            if existing:
                if existing.user_id != user_id:
                    raise ConstraintViolation(
                        "external identity already linked", {"field": "provider_uid"}
                    )
                return
            self._append_provider(user_id, provider, provider_uid)
            self._persist_state()

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]:
        with self._data_lock:
            mapping = self._find_provider(provider, provider_uid)
            return self.users.get(mapping.user_id) if mapping else None

    def list_user_auth_providers(self, user_id: str) -> List[UserAuthProvider]:
        with self._data_lock:
            return [p for p in self.providers if p.user_id == user_id]

    def update_user_profile(
        self,
        user_id: str,
        *,
        avatar: Optional[str] = None,
        full_name: Optional[str] = None,
        email_verified: Optional[bool] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if avatar is not None:
                user.avatar = avatar
            if full_name is not None:
                user.full_name = full_name
            if email_verified is not None:
                user.email_verified = email_verified
            self._persist_state()
            return user

    def record_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = at or utcnow()
            self._persist_state()

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            user.credential = LocalCredential(
                password_hash=password_hash, password_algo=password_algo
            )
            self._persist_state()

    # sessions
    def _index_session(self, session: Session) -> None:
        self.sessions[session.id] = session
        self._sessions_by_access[session.access_token_hash] = session.id
        self._sessions_by_refresh[session.refresh_token_hash] = session.id

    def _drop_session(self, session_id: str) -> Optional[Session]:
        session = self.sessions.pop(session_id, None)
        if session:
            self._sessions_by_access.pop(session.access_token_hash, None)
            self._sessions_by_refresh.pop(session.refresh_token_hash, None)
        return session

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            if session.refresh_token_hash in self._sessions_by_refresh:
                raise ConstraintViolation("refresh token already bound", {"field": "refresh_token"})
            self._index_session(session)
            self._persist_state()
            return session

    def get_session_by_access_hash(self, access_hash: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._sessions_by_access.get(access_hash)
            return self.sessions.get(session_id) if session_id else None

    def get_session_by_refresh_hash(self, refresh_hash: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._sessions_by_refresh.get(refresh_hash)
            return self.sessions.get(session_id) if session_id else None

    def swap_session(
        self, old_refresh_hash: str, build: Callable[[Session], Session]
    ) -> Optional[Session]:
        """Atomically replace the session bound to ``old_refresh_hash``.

        Returns the new session, or None when no session carried that refresh
        digest (already rotated, logged out, or never issued).
        """
        with self._data_lock:
            session_id = self._sessions_by_refresh.get(old_refresh_hash)
            if not session_id:
                return None
            old = self._drop_session(session_id)
            replacement = build(old)
            self._index_session(replacement)
            self._persist_state()
            return replacement

    def delete_session_by_access_hash(self, access_hash: str) -> bool:
        with self._data_lock:
            session_id = self._sessions_by_access.get(access_hash)
            if not session_id:
                return False
            self._drop_session(session_id)
            self._persist_state()
            return True

    def delete_session_by_refresh_hash(self, refresh_hash: str) -> bool:
        with self._data_lock:
            session_id = self._sessions_by_refresh.get(refresh_hash)
            if not session_id:
                return False
            self._drop_session(session_id)
            self._persist_state()
            return True

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            results = [s for s in self.sessions.values() if s.user_id == user_id]
            return sorted(results, key=lambda s: s.created_at, reverse=True)

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in stale:
                self._drop_session(sid)
            if stale:
                self._persist_state()
            return len(stale)

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.is_expired(current)]
            for sid in stale:
                self._drop_session(sid)
            if stale:
                self._persist_state()
            return len(stale)

    # two-factor
    def get_two_factor(self, user_id: str) -> Optional[TwoFactorRecord]:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record:
                return None
            return TwoFactorRecord(
                user_id=record.user_id,
                secret=self._cipher.decrypt(record.secret),
                enabled=record.enabled,
                backup_codes=list(record.backup_codes),
                created_at=record.created_at,
                enabled_at=record.enabled_at,
            )

    def save_two_factor_secret(self, user_id: str, secret: str) -> TwoFactorRecord:
        """Store a fresh, not yet enabled secret, replacing any previous record."""
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for 2fa", {"user_id": user_id})
            record = TwoFactorRecord(user_id=user_id, secret=self._cipher.encrypt(secret))
            self.two_factor[user_id] = record
            self._persist_state()
            return TwoFactorRecord(
                user_id=user_id, secret=secret, created_at=record.created_at
            )

    def enable_two_factor(
        self, user_id: str, backup_code_hashes: List[str], enabled_at: datetime
    ) -> bool:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record:
                return False
            record.enabled = True
            record.backup_codes = list(backup_code_hashes)
            record.enabled_at = enabled_at
            self._persist_state()
            return True

    def delete_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.two_factor.pop(user_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record or not record.enabled or code_hash not in record.backup_codes:
                return False
            record.backup_codes.remove(code_hash)
            self._persist_state()
            return True

    # consumed oauth codes
    def is_auth_code_used(self, code: str, now: Optional[datetime] = None) -> bool:
        current = now or utcnow()
        with self._data_lock:
            entry = self.consumed_codes.get(code)
            return bool(entry and entry.expires_at > current)

    def mark_auth_code_used(self, code: str, expires_at: datetime) -> bool:
        with self._data_lock:
            if self.is_auth_code_used(code):
                return False
            self.consumed_codes[code] = ConsumedAuthCode(code=code, expires_at=expires_at)
            self._persist_state()
            return True

    def release_auth_code(self, code: str) -> None:
        with self._data_lock:
            if self.consumed_codes.pop(code, None):
                self._persist_state()

    # password reset
    def create_password_reset(self, record: PasswordResetCode) -> PasswordResetCode:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user not found for reset", {"user_id": record.user_id})
            self.password_resets[record.code_hash] = record
            self._persist_state()
            return record

    def consume_password_reset(
        self, code_hash: str, now: Optional[datetime] = None
    ) -> Optional[str]:
        """Mark an unused, unexpired reset code as used and return its user id."""
        current = now or utcnow()
        with self._data_lock:
            record = self.password_resets.get(code_hash)
            if not record or record.used or record.expires_at <= current:
                return None
            record.used = True
            self._persist_state()
            return record.user_id

    def purge_expired_codes(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._data_lock:
            stale_codes = [c for c, e in self.consumed_codes.items() if e.expires_at <= current]
            for code in stale_codes:
                self.consumed_codes.pop(code, None)
            stale_resets = [
                h for h, r in self.password_resets.items() if r.used or r.expires_at <= current
            ]
            for code_hash in stale_resets:
                self.password_resets.pop(code_hash, None)
            removed = len(stale_codes) + len(stale_resets)
            if removed:
                self._persist_state()
            return removed

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "providers": [self._serialize_provider(p) for p in self.providers],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "two_factor": [self._serialize_two_factor(r) for r in self.two_factor.values()],
            "consumed_codes": [
                {"code": c.code, "expires_at": c.expires_at.isoformat()}
                for c in self.consumed_codes.values()
            ],
            "password_resets": [
                self._serialize_password_reset(r) for r in self.password_resets.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.providers = [self._deserialize_provider(p) for p in data.get("providers", [])]
        self.sessions = {}
        self._sessions_by_access = {}
        self._sessions_by_refresh = {}
        for raw in data.get("sessions", []):
            self._index_session(self._deserialize_session(raw))
        self.two_factor = {
            r["user_id"]: self._deserialize_two_factor(r) for r in data.get("two_factor", [])
        }
        self.consumed_codes = {
            c["code"]: ConsumedAuthCode(
                code=c["code"], expires_at=datetime.fromisoformat(c["expires_at"])
            )
            for c in data.get("consumed_codes", [])
        }
        self.password_resets = {
            r["code_hash"]: self._deserialize_password_reset(r)
            for r in data.get("password_resets", [])
        }
        self.logger.info("memory_store_loaded", users=len(self.users), sessions=len(self.sessions))
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "login": user.login,
            "email": user.email,
            "credential": serialize_credential(user.credential),
            "full_name": user.full_name,
            "avatar": user.avatar,
            "email_verified": user.email_verified,
            "created_at": self._serialize_datetime(user.created_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            login=data["login"],
            email=data["email"],
            credential=deserialize_credential(data["credential"]),
            full_name=data.get("full_name"),
            avatar=data.get("avatar"),
            email_verified=data.get("email_verified", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_provider(self, provider: UserAuthProvider) -> dict:
        return {
            "id": provider.id,
            "user_id": provider.user_id,
            "provider": provider.provider,
            "provider_uid": provider.provider_uid,
            "created_at": self._serialize_datetime(provider.created_at),
        }

    def _deserialize_provider(self, data: dict) -> UserAuthProvider:
        return UserAuthProvider(
            id=int(data["id"]),
            user_id=str(data["user_id"]),
            provider=data["provider"],
            provider_uid=data["provider_uid"],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "access_token_hash": session.access_token_hash,
            "refresh_token_hash": session.refresh_token_hash,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "ip_addr": session.ip_addr,
            "device": serialize_device(session.device),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            access_token_hash=data["access_token_hash"],
            refresh_token_hash=data["refresh_token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            ip_addr=data.get("ip_addr"),
            device=deserialize_device(data.get("device")),
        )

    def _serialize_two_factor(self, record: TwoFactorRecord) -> dict:
        # secret is already encrypted in memory
        return {
            "user_id": record.user_id,
            "secret": record.secret,
            "enabled": record.enabled,
            "backup_codes": list(record.backup_codes),
            "created_at": self._serialize_datetime(record.created_at),
            "enabled_at": self._serialize_datetime(record.enabled_at),
        }

    def _deserialize_two_factor(self, data: dict) -> TwoFactorRecord:
        return TwoFactorRecord(
            user_id=data["user_id"],
            secret=data["secret"],
            enabled=data.get("enabled", False),
            backup_codes=list(data.get("backup_codes", [])),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            enabled_at=self._deserialize_datetime(data.get("enabled_at")),
        )

    def _serialize_password_reset(self, record: PasswordResetCode) -> dict:
        return {
            "code_hash": record.code_hash,
            "user_id": record.user_id,
            "expires_at": self._serialize_datetime(record.expires_at),
            "used": record.used,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_password_reset(self, data: dict) -> PasswordResetCode:
        return PasswordResetCode(
            code_hash=data["code_hash"],
            user_id=data["user_id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=data.get("used", False),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
