"""Tests for the Google code exchange and local account resolution."""

from urllib.parse import parse_qs, urlparse

import pytest

from chronos.config import Settings
from chronos.service.errors import OAuthExchangeFailed, UnverifiedEmail
from chronos.service.oauth import (
    GOOGLE,
    ExternalProfile,
    GoogleOAuthClient,
    OAuthLinkingService,
    login_base_from_email,
    login_candidate,
)
from chronos.storage.memory import MemoryStore
from chronos.storage.models import FederatedCredential, LocalCredential


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        google_client_id="client-id",
        google_client_secret="client-secret",
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="test-mfa-key", persist=False)


def _service(store, settings, transport=None):
    return OAuthLinkingService(store, GoogleOAuthClient(settings, transport=transport), settings)


def _profile(**overrides):
    data = dict(
        provider=GOOGLE,
        provider_uid="g-123",
        email="alice@example.com",
        email_verified=True,
        name="Alice Liddell",
        picture="https://example.com/alice.png",
    )
    data.update(overrides)
    return ExternalProfile(**data)


class TestGoogleClient:
    def test_authorization_url_carries_state(self, settings):
        url = GoogleOAuthClient(settings).authorization_url("state-abc")
        query = parse_qs(urlparse(url).query)

        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert query["state"] == ["state-abc"]
        assert query["client_id"] == ["client-id"]
        assert query["redirect_uri"] == [settings.google_callback_url]
        assert query["scope"] == ["openid email profile"]

    async def test_exchange_returns_profile(self, settings, google_transport):
        calls = []
        client = GoogleOAuthClient(settings, transport=google_transport(calls=calls))

        profile = await client.exchange_code("auth-code")

        assert profile.provider_uid == "g-123"
        assert profile.email == "alice@example.com"
        assert profile.email_verified is True
        assert profile.full_name == "Alice Liddell"
        token_form = parse_qs(calls[0].content.decode())
        assert token_form["code"] == ["auth-code"]
        assert token_form["grant_type"] == ["authorization_code"]

    async def test_token_endpoint_error(self, settings, google_transport):
        client = GoogleOAuthClient(settings, transport=google_transport(token_status=400))
        with pytest.raises(OAuthExchangeFailed):
            await client.exchange_code("bad-code")

    async def test_incomplete_userinfo(self, settings, google_transport):
        client = GoogleOAuthClient(
            settings, transport=google_transport({"id": "g-1", "verified_email": True})
        )
        with pytest.raises(OAuthExchangeFailed):
            await client.exchange_code("code")

    async def test_unconfigured_client(self, google_transport):
        client = GoogleOAuthClient(Settings(jwt_secret="x" * 40), transport=google_transport())
        with pytest.raises(OAuthExchangeFailed):
            await client.exchange_code("code")

    def test_email_verified_string_flag(self):
        profile = GoogleOAuthClient.parse_userinfo(
            {"id": 7, "email": "b@example.com", "email_verified": "true"}
        )
        assert profile.email_verified is True
        assert profile.provider_uid == "7"


class TestResolveOrCreate:
    def test_unverified_email_rejected(self, store, settings):
        with pytest.raises(UnverifiedEmail):
            _service(store, settings).resolve_or_create(_profile(email_verified=False))
        assert store.users == {}

    def test_links_existing_account_by_email(self, store, settings):
        local = store.create_user("alice_local", "alice@example.com", LocalCredential("hash"))

        user = _service(store, settings).resolve_or_create(_profile())

        assert user.id == local.id
        assert user.login == "alice_local"
        assert user.email_verified is True
        assert user.avatar == "https://example.com/alice.png"
        assert isinstance(user.credential, LocalCredential)
        assert store.get_user_by_provider(GOOGLE, "g-123").id == local.id
        assert len(store.users) == 1

    def test_resolution_is_stable(self, store, settings):
        service = _service(store, settings)
        first = service.resolve_or_create(_profile())
        second = service.resolve_or_create(_profile(email="changed@example.com"))

        assert first.id == second.id
        assert len(store.users) == 1

    def test_creates_federated_account(self, store, settings):
        user = _service(store, settings).resolve_or_create(_profile())

        assert user.login == "alice"
        assert user.email_verified is True
        assert user.full_name == "Alice Liddell"
        assert user.credential == FederatedCredential(provider=GOOGLE, provider_uid="g-123")
        assert [p.provider for p in store.list_user_auth_providers(user.id)] == [GOOGLE]

    def test_login_suffix_on_collision(self, store, settings):
        store.create_user("alice", "someone@example.com", LocalCredential("hash"))
        store.create_user("alice1", "other@example.com", LocalCredential("hash"))

        user = _service(store, settings).resolve_or_create(_profile())

        assert user.login == "alice2"


class TestLoginCandidates:
    @pytest.mark.parametrize(
        "email,expected",
        [
            ("alice@example.com", "alice"),
            ("a.b+tag@example.com", "abtag"),
            ("jo@example.com", "jouser"),
            ("x" * 40 + "@example.com", "x" * 30),
        ],
    )
    def test_base_from_email(self, email, expected):
        assert login_base_from_email(email) == expected

    def test_suffix_stays_within_limit(self):
        base = "y" * 30
        assert login_candidate(base, 0) == base
        assert login_candidate(base, 12) == "y" * 28 + "12"
        assert login_candidate("alice", 3) == "alice3"
