from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Tuple

from chronos.config import Settings
from chronos.logging import get_logger
from chronos.service.credentials import CredentialService
from chronos.service.errors import (
    AccountNotFound,
    InvalidOAuthState,
    InvalidTwoFactorToken,
    OAuthExchangeFailed,
    RefreshTokenMissing,
    ReplayedAuthorizationCode,
    TokenInvalid,
    TwoFactorRequired,
)
from chronos.service.oauth import OAuthLinkingService
from chronos.service.password_reset import PasswordResetService
from chronos.service.replay import ReplayGuard
from chronos.service.sessions import SessionStore
from chronos.service.tokens import ACCESS, TokenPair, TokenService
from chronos.service.two_factor import TwoFactorService, TwoFactorSetup, TwoFactorStatus
from chronos.storage.models import DeviceInfo, Session, User, UserAuthProvider

logger = get_logger(__name__)


class AccountBackend(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def record_login(self, user_id: str) -> None: ...

    def list_user_auth_providers(self, user_id: str) -> List[UserAuthProvider]: ...


@dataclass
class AuthContext:
    user_id: str
    login: str
    session_id: str


@dataclass
class AccountProfile:
    user: User
    two_factor_enabled: bool
    linked_providers: List[str] = field(default_factory=list)


LoginResult = Tuple[User, Session, TokenPair]


class AuthOrchestrator:
    """Authentication use cases composed from the credential, token, session,
    two-factor, OAuth and replay services.

    Every operation that hands out tokens also creates exactly one session
    holding their digests, so a token is only honored while its session lives.
    """

    def __init__(
        self,
        *,
        store: AccountBackend,
        credentials: CredentialService,
        tokens: TokenService,
        sessions: SessionStore,
        two_factor: TwoFactorService,
        oauth: OAuthLinkingService,
        replay: ReplayGuard,
        password_reset: PasswordResetService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.tokens = tokens
        self.sessions = sessions
        self.two_factor = two_factor
        self.oauth = oauth
        self.replay = replay
        self.password_reset = password_reset
        self.settings = settings

    async def register(self, login: str, email: str, password: str) -> User:
        return self.credentials.register(login, email, password)

    async def login(
        self,
        identifier: str,
        password: str,
        totp_token: Optional[str] = None,
        *,
        ip_addr: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> LoginResult:
        """Password login with the two-factor step when the account has it enabled.

        Raises:
            InvalidCredentials: unknown account or wrong password.
            TwoFactorRequired: 2FA is enabled and no token was supplied.
            InvalidTwoFactorToken: the supplied TOTP or backup code was rejected.
        """
        user = self.credentials.authenticate(identifier, password)
        if self.two_factor.is_enabled(user.id):
            if not totp_token:
                logger.info("login_two_factor_required", user_id=user.id)
                raise TwoFactorRequired()
            if not self.two_factor.verify_token(user.id, totp_token):
                logger.warning("login_two_factor_rejected", user_id=user.id)
                raise InvalidTwoFactorToken()
        return self._start_session(user, ip_addr=ip_addr, device=device, method="password")

    async def refresh(self, refresh_token: Optional[str]) -> Tuple[Session, TokenPair]:
        if not refresh_token:
            raise RefreshTokenMissing()
        return self.sessions.rotate(refresh_token)

    async def logout(self, access_token: Optional[str]) -> bool:
        """Delete the one session bound to ``access_token``; other devices stay signed in."""
        if not access_token:
            return False
        removed = self.sessions.delete_by_access_token(access_token)
        logger.info("logout", session_removed=removed)
        return removed

    async def list_sessions(self, user_id: str) -> List[Session]:
        """Live sessions for the account, newest first."""
        sessions = self.sessions.list_for_user(user_id)
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    async def revoke_other_sessions(self, principal: AuthContext) -> int:
        """Sign out every device except the one making the request."""
        return self.sessions.revoke_all(
            principal.user_id, except_session_id=principal.session_id
        )

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise TokenInvalid("Access token is missing")
        claims = self.tokens.verify(access_token, expected_type=ACCESS)
        session = self.sessions.find_by_access_token(access_token)
        if session is None or session.user_id != claims.user_id:
            raise TokenInvalid("Session is no longer active")
        return AuthContext(user_id=claims.user_id, login=claims.username, session_id=session.id)

    async def current_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise AccountNotFound()
        return user

    async def profile(self, user_id: str) -> AccountProfile:
        user = await self.current_user(user_id)
        return AccountProfile(
            user=user,
            two_factor_enabled=self.two_factor.is_enabled(user_id),
            linked_providers=[p.provider for p in self.store.list_user_auth_providers(user_id)],
        )

    # OAuth

    def start_oauth(self) -> Tuple[str, str]:
        """Return the provider consent URL and the CSRF state to remember for the callback."""
        if not self.settings.google_client_id:
            logger.warning("oauth_not_configured", provider="google")
            raise OAuthExchangeFailed("Google authentication is not configured")
        state = secrets.token_urlsafe(32)
        return self.oauth.authorization_url(state), state

    async def oauth_login(
        self,
        code: Optional[str],
        state: Optional[str],
        expected_state: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> LoginResult:
        """Complete the authorization-code flow.

        The code is marked used before the provider exchange, so a replayed or
        concurrently presented code never reaches the provider twice. The
        marker is released when the exchange or account resolution fails.
        """
        if not state or not expected_state or not hmac.compare_digest(
            state.encode(), expected_state.encode()
        ):
            logger.warning("oauth_state_mismatch")
            raise InvalidOAuthState()
        if not code:
            raise OAuthExchangeFailed("Authorization code is missing")
        if await self.replay.is_used(code) or not await self.replay.mark_used(code):
            raise ReplayedAuthorizationCode()

        try:
            profile = await self.oauth.exchange_code(code)
            user = self.oauth.resolve_or_create(profile)
        except Exception:
            await self.replay.release(code)
            raise
        return self._start_session(user, ip_addr=ip_addr, device=device, method="google")

    # two-factor

    async def setup_two_factor(self, user_id: str, password: str) -> TwoFactorSetup:
        return self.two_factor.setup(user_id, password)

    async def enable_two_factor(self, user_id: str, token: str, password: str) -> List[str]:
        return self.two_factor.enable(user_id, token, password)

    async def disable_two_factor(self, principal: AuthContext, password: str) -> None:
        """Turn 2FA off and sign out the account's other devices."""
        self.two_factor.disable(principal.user_id, password)
        await self.revoke_other_sessions(principal)

    async def verify_two_factor(self, user_id: str, token: str) -> bool:
        return self.two_factor.verify_token(user_id, token)

    async def two_factor_status(self, user_id: str) -> TwoFactorStatus:
        return self.two_factor.status(user_id)

    # password reset

    async def request_password_reset(self, email: str) -> None:
        self.password_reset.request_reset(email)

    async def reset_password(self, reset_code: str, new_password: str) -> None:
        self.password_reset.reset_password(reset_code, new_password)

    def _start_session(
        self,
        user: User,
        *,
        ip_addr: Optional[str],
        device: Optional[DeviceInfo],
        method: str,
    ) -> LoginResult:
        pair = self.tokens.issue_pair(user.id, user.login)
        session = self.sessions.create(user.id, pair, ip_addr=ip_addr, device=device)
        self.store.record_login(user.id)
        logger.info("login_succeeded", user_id=user.id, session_id=session.id, method=method)
        return self.store.get_user(user.id) or user, session, pair
