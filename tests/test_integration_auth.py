"""Integration tests for the HTTP authentication flow.

Tests the complete auth flow including:
- Registration and password login with cookies
- 2FA setup, login gating and verification
- Token refresh rotation
- Logout of a single device
- Google login with state and replay checks
- Password reset
"""

import time
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from chronos import app as app_module
from chronos.service import totp
from chronos.service.oauth import GoogleOAuthClient
from chronos.service.runtime import get_runtime

PASSWORD = "TestPassword123"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def google(google_transport):
    runtime = get_runtime()
    runtime.oauth.client = GoogleOAuthClient(runtime.settings, transport=google_transport())
    return runtime.oauth.client


def _register(client, login="alice", email="alice@example.com", password=PASSWORD):
    return client.post(
        "/api/auth/registration",
        json={"login": login, "email": email, "password": password},
    )


def _login(client, login="alice", password=PASSWORD, token=None):
    body = {"login": login, "password": password}
    if token is not None:
        body["token"] = token
    return client.post("/api/auth/login", json=body)


def _set_cookie_headers(response, name):
    return [h for h in response.headers.get_list("set-cookie") if h.startswith(f"{name}=")]


def _enable_two_factor(client):
    setup = client.post("/api/auth/2fa/setup", json={"password": PASSWORD})
    secret = setup.json()["data"]["secret"]
    enabled = client.post(
        "/api/auth/2fa/enable",
        json={"token": totp.generate_totp(secret, time.time()), "password": PASSWORD},
    )
    assert enabled.status_code == 200
    return secret, enabled.json()["data"]["backupCodes"]


class TestRegistration:
    def test_registration_returns_user(self, client):
        response = _register(client)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "ok"
        user = data["data"]["user"]
        assert user["login"] == "alice"
        assert user["email"] == "alice@example.com"
        assert user["is_email_verified"] is False
        assert user["twoFactorEnabled"] is False
        assert user["google_id"] is False

    def test_duplicate_registration_conflicts(self, client):
        _register(client)
        response = _register(client, login="alice_two")

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"
        assert body["error"]["details"] == {"field": "email"}

    @pytest.mark.parametrize(
        "login,email,password",
        [
            ("al", "alice@example.com", PASSWORD),
            ("alice smith", "alice@example.com", PASSWORD),
            ("alice", "not-an-email", PASSWORD),
            ("alice", "alice@example.com", "alllowercase1"),
            ("alice", "alice@example.com", "Short1"),
        ],
    )
    def test_registration_validation(self, client, login, email, password):
        response = _register(client, login=login, email=email, password=password)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestPasswordLogin:
    def test_login_sets_cookies(self, client):
        _register(client)
        response = _login(client)

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Login successful"
        assert response.json()["data"]["user"]["lastLoginAt"] is not None

        [access] = _set_cookie_headers(response, "access_token")
        [refresh] = _set_cookie_headers(response, "refresh_token")
        assert "httponly" not in access.lower()
        assert "httponly" in refresh.lower()
        assert "samesite=lax" in refresh.lower()

    def test_login_by_email(self, client):
        _register(client)
        assert _login(client, login="Alice@Example.com").status_code == 200

    def test_wrong_password(self, client):
        _register(client)
        response = _login(client, password="WrongPassword1")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"
        assert _set_cookie_headers(response, "access_token") == []

    def test_me_with_cookie_and_bearer(self, client):
        _register(client)
        login = _login(client)

        assert client.get("/api/auth/me").json()["data"]["login"] == "alice"

        bare = TestClient(app_module.app)
        token = login.cookies["access_token"]
        me = bare.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "alice@example.com"

    def test_me_requires_token(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"


class TestTwoFactorLogin:
    def test_login_requires_second_factor(self, client):
        _register(client)
        _login(client)
        secret, _ = _enable_two_factor(client)

        fresh = TestClient(app_module.app)
        response = _login(fresh)

        assert response.status_code == 200
        assert response.json()["data"]["requires2FA"] is True
        assert _set_cookie_headers(response, "access_token") == []

        response = _login(fresh, token=totp.generate_totp(secret, time.time()))
        assert response.status_code == 200
        assert response.json()["data"]["user"]["twoFactorEnabled"] is True

    def test_invalid_second_factor(self, client):
        _register(client)
        _login(client)
        _enable_two_factor(client)

        response = _login(TestClient(app_module.app), token="ZZZZZZZZ")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_2fa_token"

    def test_non_ascii_digits_are_an_invalid_token(self, client):
        _register(client)
        _login(client)
        secret, _ = _enable_two_factor(client)
        code = totp.generate_totp(secret, time.time())
        arabic = "".join(chr(0x0660 + int(c)) for c in code)

        response = _login(TestClient(app_module.app), token=arabic)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_2fa_token"

        verify = client.post("/api/auth/2fa/verify", json={"token": arabic})
        assert verify.status_code == 401
        assert verify.json()["error"]["code"] == "invalid_2fa_token"

    def test_backup_code_login(self, client):
        _register(client)
        _login(client)
        _, codes = _enable_two_factor(client)

        assert _login(TestClient(app_module.app), token=codes[0]).status_code == 200
        assert _login(TestClient(app_module.app), token=codes[0]).status_code == 401


class TestTwoFactorEndpoints:
    def test_setup_returns_qr_code(self, client):
        _register(client)
        _login(client)

        response = client.post("/api/auth/2fa/setup", json={"password": PASSWORD})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["qrCode"].startswith("data:image/png;base64,")
        assert data["manualEntryKey"] == data["secret"]

    def test_setup_requires_authentication(self, client):
        response = client.post("/api/auth/2fa/setup", json={"password": PASSWORD})
        assert response.status_code == 401

    def test_enable_without_setup(self, client):
        _register(client)
        _login(client)

        response = client.post(
            "/api/auth/2fa/enable", json={"token": "123456", "password": PASSWORD}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "2fa_not_configured"

    def test_status_verify_and_disable(self, client):
        _register(client)
        _login(client)
        secret, codes = _enable_two_factor(client)

        status = client.get("/api/auth/2fa/status").json()["data"]
        assert status == {
            "enabled": True,
            "configured": True,
            "remainingBackupCodes": len(codes),
        }

        ok = client.post(
            "/api/auth/2fa/verify", json={"token": totp.generate_totp(secret, time.time())}
        )
        assert ok.json()["data"] == {"valid": True}

        bad = client.post("/api/auth/2fa/verify", json={"token": "ZZZZZZZZ"})
        assert bad.status_code == 401
        assert bad.json()["error"]["details"] == {"valid": False}

        wrong = client.post("/api/auth/2fa/disable", json={"password": "WrongPassword1"})
        assert wrong.status_code == 401

        client.post("/api/auth/2fa/disable", json={"password": PASSWORD})
        status = client.get("/api/auth/2fa/status").json()["data"]
        assert status["enabled"] is False
        assert status["configured"] is False


class TestRefresh:
    def test_refresh_rotates_tokens(self, client):
        _register(client)
        login = _login(client)
        old_refresh = login.cookies["refresh_token"]

        response = client.post("/api/auth/refresh")

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Tokens refreshed"
        new_refresh = response.cookies["refresh_token"]
        assert new_refresh != old_refresh

        replay = TestClient(app_module.app)
        replay.cookies.set("refresh_token", old_refresh)
        replayed = replay.post("/api/auth/refresh")
        assert replayed.status_code == 401
        assert replayed.json()["error"]["code"] == "refresh_token_invalid"

    def test_missing_refresh_cookie_clears_cookies(self, client):
        response = client.post("/api/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "refresh_token_missing"
        for name in ("access_token", "refresh_token"):
            [header] = _set_cookie_headers(response, name)
            assert "max-age=0" in header.lower()


class TestLogout:
    def test_logout_ends_one_device(self, client):
        _register(client)
        laptop = _login(client).cookies["access_token"]
        phone_client = TestClient(app_module.app)
        _login(phone_client)

        response = client.post("/api/auth/logout")
        assert response.status_code == 200
        [header] = _set_cookie_headers(response, "access_token")
        assert "max-age=0" in header.lower()

        bare = TestClient(app_module.app)
        stale = bare.get("/api/auth/me", headers={"Authorization": f"Bearer {laptop}"})
        assert stale.status_code == 401
        assert phone_client.get("/api/auth/me").status_code == 200

    def test_logout_without_session(self, client):
        assert client.post("/api/auth/logout").status_code == 200


class TestDeviceSessions:
    def test_list_marks_current_session(self, client):
        _register(client)
        _login(client)
        _login(TestClient(app_module.app))

        response = client.get("/api/auth/sessions")

        assert response.status_code == 200
        sessions = response.json()["data"]
        assert len(sessions) == 2
        assert [s["current"] for s in sessions].count(True) == 1
        assert {s["ipAddress"] for s in sessions} == {"testclient"}

    def test_list_requires_authentication(self, client):
        assert client.get("/api/auth/sessions").status_code == 401

    def test_revoke_others_keeps_this_device(self, client):
        _register(client)
        _login(client)
        phone = TestClient(app_module.app)
        _login(phone)

        response = client.post("/api/auth/sessions/revoke-others")

        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 1
        assert client.get("/api/auth/me").status_code == 200
        assert phone.get("/api/auth/me").status_code == 401
        [only] = client.get("/api/auth/sessions").json()["data"]
        assert only["current"] is True

    def test_disabling_two_factor_signs_out_other_devices(self, client):
        _register(client)
        _login(client)
        secret, _ = _enable_two_factor(client)
        phone = TestClient(app_module.app)
        assert _login(phone, token=totp.generate_totp(secret, time.time())).status_code == 200

        client.post("/api/auth/2fa/disable", json={"password": PASSWORD})

        assert client.get("/api/auth/me").status_code == 200
        assert phone.get("/api/auth/me").status_code == 401

    def test_session_records_forwarded_address_from_trusted_proxy(self, client):
        get_runtime().settings.trusted_proxies = ["testclient"]
        _register(client)
        client.post(
            "/api/auth/login",
            json={"login": "alice", "password": PASSWORD},
            headers={"X-Forwarded-For": "198.51.100.7"},
        )

        [session] = client.get("/api/auth/sessions").json()["data"]

        assert session["ipAddress"] == "198.51.100.7"

    def test_forwarded_address_ignored_without_trusted_proxy(self, client):
        _register(client)
        client.post(
            "/api/auth/login",
            json={"login": "alice", "password": PASSWORD},
            headers={"X-Forwarded-For": "198.51.100.7"},
        )

        [session] = client.get("/api/auth/sessions").json()["data"]

        assert session["ipAddress"] == "testclient"


class TestGoogleLogin:
    def _start(self, client):
        response = client.get("/api/auth/google", follow_redirects=False)
        assert response.status_code == 302
        state = parse_qs(urlparse(response.headers["location"]).query)["state"][0]
        assert response.cookies["oauth_state"] == state
        return state

    def test_start_redirects_to_google(self, client, google):
        response = client.get("/api/auth/google", follow_redirects=False)

        assert response.headers["location"].startswith("https://accounts.google.com/")
        [cookie] = _set_cookie_headers(response, "oauth_state")
        assert "httponly" in cookie.lower()

    def test_callback_signs_in(self, client, google):
        state = self._start(client)

        response = client.get(
            "/api/auth/google/callback",
            params={"code": "google-code", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == "http://localhost:5173/profile"
        assert _set_cookie_headers(response, "access_token")

        me = client.get("/api/auth/me").json()["data"]
        assert me["email"] == "alice@example.com"
        assert me["google_id"] is True
        assert me["is_email_verified"] is True

    def test_replayed_code_is_rejected(self, client, google):
        state = self._start(client)
        client.get(
            "/api/auth/google/callback",
            params={"code": "google-code", "state": state},
            follow_redirects=False,
        )

        state = self._start(client)
        response = client.get(
            "/api/auth/google/callback",
            params={"code": "google-code", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "authorization_code_replayed"
        assert len(get_runtime().store.sessions) == 1

    def test_state_mismatch(self, client, google):
        self._start(client)

        response = client.get(
            "/api/auth/google/callback",
            params={"code": "google-code", "state": "forged"},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_oauth_state"
        assert get_runtime().store.users == {}

    def test_non_ascii_state_is_rejected(self, client, google):
        self._start(client)

        response = client.get(
            "/api/auth/google/callback",
            params={"code": "google-code", "state": "\u00e9tat"},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_oauth_state"
        assert _set_cookie_headers(response, "oauth_state")
        assert get_runtime().store.users == {}

    def test_provider_error(self, client, google):
        state = self._start(client)

        response = client.get(
            "/api/auth/google/callback",
            params={"error": "access_denied", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "oauth_exchange_failed"


class TestPasswordReset:
    def test_reset_flow(self, client, monkeypatch):
        runtime = get_runtime()
        sent = []
        monkeypatch.setattr(
            runtime.email,
            "send_password_reset_code",
            lambda to, code: sent.append((to, code)) or True,
        )
        _register(client)
        old_access = _login(client).cookies["access_token"]

        response = client.post("/api/auth/password-reset", json={"email": "alice@example.com"})
        assert response.status_code == 200
        [(to, code)] = sent
        assert to == "alice@example.com"

        reset = client.post(f"/api/auth/password-reset/{code}", json={"password": "NewPassword456"})
        assert reset.status_code == 200

        assert _login(TestClient(app_module.app)).status_code == 401
        assert _login(TestClient(app_module.app), password="NewPassword456").status_code == 200
        bare = TestClient(app_module.app)
        stale = bare.get("/api/auth/me", headers={"Authorization": f"Bearer {old_access}"})
        assert stale.status_code == 401

        again = client.post(
            f"/api/auth/password-reset/{code}", json={"password": "OtherPassword789"}
        )
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "invalid_reset_code"

    def test_unknown_email_gets_same_answer(self, client):
        _register(client)
        known = client.post("/api/auth/password-reset", json={"email": "alice@example.com"})
        unknown = client.post("/api/auth/password-reset", json={"email": "bob@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_malformed_code(self, client):
        response = client.post("/api/auth/password-reset/abc", json={"password": PASSWORD})
        assert response.status_code == 400


class TestAppSurface:
    def test_health(self, client):
        body = client.get("/healthz").json()

        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}

    def test_request_id_echoed(self, client):
        response = client.get("/api/auth/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
