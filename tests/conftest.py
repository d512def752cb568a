import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="chronos_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("PERSIST_MEMORY_STORE", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-google-client")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-google-secret")
os.environ.setdefault("FRONTEND_URL", "http://localhost:5173")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from chronos.service.runtime import reset_runtime_for_tests  # noqa: E402


def make_google_transport(userinfo=None, *, token_status=200, calls=None):
    """MockTransport answering Google's token and userinfo endpoints."""
    userinfo = userinfo or {
        "id": "g-123",
        "email": "Alice@Example.com",
        "verified_email": True,
        "name": "Alice Liddell",
        "picture": "https://example.com/alice.png",
    }

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        if request.url.host == "oauth2.googleapis.com":
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            return httpx.Response(
                200, json={"access_token": "google-access", "token_type": "Bearer"}
            )
        if request.url.path == "/oauth2/v2/userinfo":
            if request.headers.get("Authorization") != "Bearer google-access":
                return httpx.Response(401)
            return httpx.Response(200, json=userinfo)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.fixture
def google_transport():
    return make_google_transport


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
