from __future__ import annotations

from typing import Callable, List, Optional, Protocol, Tuple

from chronos.config import Settings
from chronos.logging import get_logger
from chronos.service.errors import RefreshTokenInvalid, TokenExpired
from chronos.service.tokens import REFRESH, TokenPair, TokenService
from chronos.storage.common import digest
from chronos.storage.models import DeviceInfo, Session

logger = get_logger(__name__)


class SessionBackend(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session_by_access_hash(self, access_hash: str) -> Optional[Session]: ...

    def get_session_by_refresh_hash(self, refresh_hash: str) -> Optional[Session]: ...

    def swap_session(
        self, old_refresh_hash: str, build: Callable[[Session], Session]
    ) -> Optional[Session]: ...

    def delete_session_by_access_hash(self, access_hash: str) -> bool: ...

    def delete_session_by_refresh_hash(self, refresh_hash: str) -> bool: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    def purge_expired_sessions(self) -> int: ...


class SessionStore:
    """Server-side record of every issued token pair.

    A session is found by the digest of either of its tokens. Refresh tokens
    are single use: ``rotate`` replaces the session in one storage operation,
    so of two concurrent rotations with the same token exactly one wins.
    """

    def __init__(
        self, backend: SessionBackend, tokens: TokenService, settings: Settings
    ) -> None:
        self.backend = backend
        self.tokens = tokens
        self.settings = settings

    def _new_session(
        self,
        user_id: str,
        pair: TokenPair,
        ip_addr: Optional[str],
        device: Optional[DeviceInfo],
    ) -> Session:
        return Session.new(
            user_id,
            digest(pair.access_token),
            digest(pair.refresh_token),
            retention_days=self.settings.session_retention_days,
            ip_addr=ip_addr,
            device=device,
        )

    def create(
        self,
        user_id: str,
        tokens: TokenPair,
        *,
        ip_addr: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> Session:
        session = self.backend.create_session(
            self._new_session(user_id, tokens, ip_addr, device)
        )
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.id,
            device_type=session.device.type,
        )
        return session

    def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        session = self.backend.get_session_by_refresh_hash(digest(refresh_token))
        if session and session.is_expired():
            return None
        return session

    def find_by_access_token(self, access_token: str) -> Optional[Session]:
        session = self.backend.get_session_by_access_hash(digest(access_token))
        if session and session.is_expired():
            return None
        return session

    def rotate(self, old_refresh_token: str) -> Tuple[Session, TokenPair]:
        """Exchange a refresh token for a new pair bound to a new session.

        Raises:
            TokenInvalid: the token does not verify or is not a refresh token.
            TokenExpired: the token (or its session) has expired; the stale
                session is removed.
            RefreshTokenInvalid: no live session carries this token, because
                it was already rotated, logged out, or a concurrent rotation won.
        """
        old_hash = digest(old_refresh_token)
        try:
            claims = self.tokens.verify(old_refresh_token, expected_type=REFRESH)
        except TokenExpired:
            self.backend.delete_session_by_refresh_hash(old_hash)
            raise

        current = self.backend.get_session_by_refresh_hash(old_hash)
        if current is None:
            logger.warning("refresh_token_reuse", user_id=claims.user_id)
            raise RefreshTokenInvalid()
        if current.is_expired():
            self.backend.delete_session_by_refresh_hash(old_hash)
            raise TokenExpired("Session has expired")

        issued: List[TokenPair] = []

        def _replace(old: Session) -> Session:
            pair = self.tokens.issue_pair(old.user_id, claims.username)
            issued.append(pair)
            return self._new_session(old.user_id, pair, old.ip_addr, old.device)

        replacement = self.backend.swap_session(old_hash, _replace)
        if replacement is None:
            logger.warning("refresh_rotation_lost_race", user_id=claims.user_id)
            raise RefreshTokenInvalid()
        logger.info(
            "refresh_rotated",
            user_id=replacement.user_id,
            old_session_id=current.id,
            session_id=replacement.id,
        )
        return replacement, issued[-1]

    def delete_by_access_token(self, access_token: str) -> bool:
        return self.backend.delete_session_by_access_hash(digest(access_token))

    def list_for_user(self, user_id: str) -> List[Session]:
        return [s for s in self.backend.list_user_sessions(user_id) if not s.is_expired()]

    def revoke_all(self, user_id: str, *, except_session_id: Optional[str] = None) -> int:
        revoked = self.backend.revoke_user_sessions(
            user_id, except_session_id=except_session_id
        )
        logger.info("sessions_revoked", user_id=user_id, count=revoked)
        return revoked

    def purge_expired(self) -> int:
        return self.backend.purge_expired_sessions()
