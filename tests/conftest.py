import asyncio
import inspect
import os
import tempfile
import uuid

# Environment must be in place before anything imports descgate.config
_test_tmp_dir = tempfile.mkdtemp(prefix="descgate_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("IDP_MODE", "shared_secret")
os.environ.setdefault("IDP_PROJECT_ID", "descgate-test")
os.environ.setdefault(
    "IDP_SHARED_SECRET", "test-idp-secret-for-automation-only-0123456789abcdefghijklmnop"
)
os.environ.setdefault(
    "SESSION_SIGNING_KEY", "test-session-signing-key-for-automation-only-0123456789abcdef"
)
os.environ.setdefault("ALLOWED_ORIGINS", "http://localhost:3000")

import jwt  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from descgate.service.clock import FrozenClock  # noqa: E402
from descgate.service.runtime import reset_runtime_for_tests  # noqa: E402

# 2025-10-09T09:06:40Z
FROZEN_NOW = 1_760_000_800
ORIGIN = "http://localhost:3000"
SUBJECT_ID = "user_abcdef1234"
OTHER_SUBJECT_ID = "user_zyxwvu9876"
ADMIN_SUBJECT_ID = "admin_0123456789"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock(FROZEN_NOW)


@pytest.fixture
def runtime(clock):
    """Runtime wired to the frozen clock and a fresh in-memory store."""
    return reset_runtime_for_tests(clock=clock)


def mint_credential(
    clock,
    *,
    subject_id=SUBJECT_ID,
    email="buyer@example.com",
    email_verified=True,
    issued_at=None,
    expires_in=3600,
    auth_time=None,
    jti=None,
    audience=None,
    issuer=None,
    secret=None,
    **claims,
):
    """Sign an identity-provider style ID token with the shared test secret."""
    iat = int(clock.now()) if issued_at is None else issued_at
    project = os.environ["IDP_PROJECT_ID"]
    payload = {
        "iss": issuer or f"https://securetoken.google.com/{project}",
        "aud": audience or project,
        "sub": subject_id,
        "email": email,
        "email_verified": email_verified,
        "iat": iat,
        "exp": iat + expires_in,
        "auth_time": iat if auth_time is None else auth_time,
    }
    if jti is not False:
        payload["jti"] = jti or uuid.uuid4().hex
    payload.update(claims)
    return jwt.encode(payload, secret or os.environ["IDP_SHARED_SECRET"], algorithm="HS256")


@pytest.fixture
def mint(clock):
    def _mint(**kwargs):
        return mint_credential(clock, **kwargs)

    return _mint


@pytest.fixture
def client(runtime):
    from descgate.app import app

    return TestClient(app, base_url="https://testserver", headers={"Origin": ORIGIN})


def login(client, credential):
    """Authenticate through the broker and return the CSRF nonce."""
    response = client.post("/v1/auth", json={"action": "authenticate", "idToken": credential})
    assert response.status_code == 200, response.text
    return response.json()["csrfToken"]


def run(coro):
    """Drive a coroutine from a synchronous HTTP test."""
    return asyncio.run(coro)


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
