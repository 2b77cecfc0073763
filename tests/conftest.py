import asyncio
import inspect
import os

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-process rate limiting keeps tests independent of a local Redis
os.environ.setdefault("REDIS_URL", "")
# Lockout scenarios make more attempts than the login rate limit allows
os.environ.setdefault("LOGIN_RATE_LIMIT_PER_MINUTE", "100")
os.environ.setdefault("REGISTER_RATE_LIMIT_PER_MINUTE", "50")
os.environ.setdefault("PASSWORD_RESET_MIN_DELAY_MS", "0")
os.environ.setdefault("PASSWORD_RESET_MAX_DELAY_MS", "5")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from tenantcrm.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

STRONG_PASSWORD = "Str0ng!Pass"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def client():
    from tenantcrm.app import app

    with TestClient(app) as test_client:
        yield test_client


def register_tenant(
    client: TestClient,
    slug: str = "acme",
    email: str = "a@acme.com",
    password: str = STRONG_PASSWORD,
    company_name: str = "Acme Inc",
):
    return client.post(
        "/api/v1/auth/register",
        json={
            "email": email,
            "password": password,
            "firstName": "Alice",
            "lastName": "Owner",
            "companyName": company_name,
            "companySlug": slug,
        },
    )


def login(client: TestClient, email: str, password: str = STRONG_PASSWORD, slug: str = "acme"):
    return client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": password, "tenantSlug": slug},
    )


def replace_cookie(client: TestClient, name: str, value: str) -> None:
    """Swap a cookie in place; the jar keys server cookies by effective host."""
    client.cookies.delete(name)
    client.cookies.set(name, value, domain="testserver.local")


def csrf_headers(client: TestClient) -> dict:
    token = client.cookies.get("csrf_token")
    return {"X-CSRF-Token": token} if token else {}


def drain_background(client: TestClient) -> None:
    """Wait for fire-and-forget work scheduled on the client's event loop."""
    client.portal.call(get_runtime().background.drain)


def add_member(runtime, tenant_id: str, email: str, role: str = "manager", password: str = STRONG_PASSWORD):
    return runtime.store.create_user(
        email=email,
        password_hash=runtime.hasher.hash(password),
        first_name="Member",
        role=role,
        tenant_id=tenant_id,
    )


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
