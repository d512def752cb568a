from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import urlencode

import httpx

from chronos.config import Settings
from chronos.logging import get_logger
from chronos.service.errors import OAuthExchangeFailed, UnverifiedEmail
from chronos.storage.errors import ConstraintViolation
from chronos.storage.models import Credential, FederatedCredential, User

logger = get_logger(__name__)

GOOGLE = "google"

OAUTH_PROVIDERS = {
    GOOGLE: {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
}

LOGIN_MIN_LENGTH = 3
LOGIN_MAX_LENGTH = 30
_LOGIN_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")
# attempts at a unique login before giving up on a race-heavy local part
_MAX_LOGIN_ATTEMPTS = 1000


@dataclass(frozen=True)
class ExternalProfile:
    provider: str
    provider_uid: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    picture: Optional[str] = None

    @property
    def full_name(self) -> Optional[str]:
        if self.name:
            return self.name
        combined = f"{self.given_name or ''} {self.family_name or ''}".strip()
        return combined or None


class OAuthUserBackend(Protocol):
    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_login(self, login: str) -> Optional[User]: ...

    def link_user_auth_provider(self, user_id: str, provider: str, provider_uid: str) -> None: ...

    def update_user_profile(self, user_id: str, **fields) -> Optional[User]: ...

    def create_user(self, login: str, email: str, credential: Credential, **fields) -> User: ...


class GoogleOAuthClient:
    """Authorization-code exchange against Google's OAuth 2.0 endpoints."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.settings = settings
        self.config = OAUTH_PROVIDERS[GOOGLE]
        self._transport = transport
        self._timeout = timeout

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.google_client_id or "",
            "redirect_uri": self.settings.google_callback_url,
            "response_type": "code",
            "scope": self.config["scope"],
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{self.config['auth_url']}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> ExternalProfile:
        if not self.settings.google_client_id or not self.settings.google_client_secret:
            logger.error("oauth_credentials_missing", provider=GOOGLE)
            raise OAuthExchangeFailed("Google authentication is not configured")

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    self.config["token_url"],
                    data={
                        "client_id": self.settings.google_client_id,
                        "client_secret": self.settings.google_client_secret,
                        "code": code,
                        "redirect_uri": self.settings.google_callback_url,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=GOOGLE)
                    raise OAuthExchangeFailed()

                userinfo_response = await client.get(
                    self.config["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_http_error",
                provider=GOOGLE,
                status_code=exc.response.status_code,
                url=str(exc.request.url),
            )
            raise OAuthExchangeFailed() from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_request_failed", provider=GOOGLE, error=str(exc))
            raise OAuthExchangeFailed() from exc
        except ValueError as exc:
            logger.error("oauth_response_parse_error", provider=GOOGLE, error=str(exc))
            raise OAuthExchangeFailed() from exc

        if not isinstance(userinfo, dict) or not userinfo.get("id") or not userinfo.get("email"):
            logger.error("oauth_userinfo_invalid_format", provider=GOOGLE)
            raise OAuthExchangeFailed()
        return self.parse_userinfo(userinfo)

    @staticmethod
    def parse_userinfo(userinfo: dict) -> ExternalProfile:
        verified = userinfo.get("verified_email", userinfo.get("email_verified", False))
        return ExternalProfile(
            provider=GOOGLE,
            provider_uid=str(userinfo["id"]),
            email=str(userinfo["email"]).strip().lower(),
            email_verified=verified is True or str(verified).lower() == "true",
            name=userinfo.get("name"),
            given_name=userinfo.get("given_name"),
            family_name=userinfo.get("family_name"),
            picture=userinfo.get("picture"),
        )


def login_base_from_email(email: str) -> str:
    """Login candidate from the email local part, restricted to ``[A-Za-z0-9_-]``."""
    local_part = email.split("@", 1)[0]
    base = _LOGIN_UNSAFE.sub("", local_part)[:LOGIN_MAX_LENGTH]
    if len(base) < LOGIN_MIN_LENGTH:
        base = (base + "user")[:LOGIN_MAX_LENGTH]
    return base


def login_candidate(base: str, attempt: int) -> str:
    """``alice``, ``alice1``, ``alice2``, ... trimmed so the suffix always fits."""
    if attempt == 0:
        return base
    suffix = str(attempt)
    return f"{base[: LOGIN_MAX_LENGTH - len(suffix)]}{suffix}"


class OAuthLinkingService:
    """Maps a verified external identity onto exactly one local account."""

    def __init__(
        self,
        store: OAuthUserBackend,
        client: GoogleOAuthClient,
        settings: Settings,
    ) -> None:
        self.store = store
        self.client = client
        self.settings = settings

    def authorization_url(self, state: str) -> str:
        return self.client.authorization_url(state)

    async def exchange_code(self, code: str) -> ExternalProfile:
        return await self.client.exchange_code(code)

    def resolve_or_create(self, profile: ExternalProfile) -> User:
        """Identity link first, then email match (and link), then a new account."""
        if not profile.email_verified:
            logger.warning("oauth_unverified_email", provider=profile.provider)
            raise UnverifiedEmail()

        user = self.store.get_user_by_provider(profile.provider, profile.provider_uid)
        if user:
            return user

        user = self.store.get_user_by_email(profile.email)
        if user:
            self.store.link_user_auth_provider(user.id, profile.provider, profile.provider_uid)
            updated = self.store.update_user_profile(
                user.id, avatar=profile.picture, email_verified=True
            )
            logger.info("oauth_identity_linked", user_id=user.id, provider=profile.provider)
            return updated or user

        return self._create_federated_user(profile)

    def _create_federated_user(self, profile: ExternalProfile) -> User:
        base = login_base_from_email(profile.email)
        credential = FederatedCredential(
            provider=profile.provider, provider_uid=profile.provider_uid
        )
        for attempt in range(_MAX_LOGIN_ATTEMPTS):
            login = login_candidate(base, attempt)
            if self.store.get_user_by_login(login):
                continue
            try:
                user = self.store.create_user(
                    login,
                    profile.email,
                    credential,
                    full_name=profile.full_name or login,
                    avatar=profile.picture,
                    email_verified=True,
                )
            except ConstraintViolation as exc:
                if exc.detail.get("field") == "login":
                    continue
                # a concurrent callback created the account or link first
                existing = self.store.get_user_by_provider(
                    profile.provider, profile.provider_uid
                ) or self.store.get_user_by_email(profile.email)
                if existing:
                    return self.resolve_or_create(profile)
                raise
            logger.info("oauth_user_created", user_id=user.id, provider=profile.provider)
            return user
        raise ConstraintViolation("unable to allocate a unique login", {"field": "login"})
