import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-do-not-use-in-production")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-do-not-use-in-production")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from murmur.app import create_app  # noqa: E402
from murmur.config import Settings  # noqa: E402
from murmur.service.email import EmailService  # noqa: E402
from murmur.service.passwords import PasswordHasher  # noqa: E402
from murmur.service.runtime import Runtime  # noqa: E402
from murmur.storage.memory import MemoryStore  # noqa: E402
from murmur.storage.memory_cache import MemoryCache  # noqa: E402


class RecordingEmail(EmailService):
    """Email sender that keeps every message in memory instead of sending it."""

    def __init__(self) -> None:
        super().__init__(from_email="noreply@murmur.test")
        self.outbox = []
        self.fail = False

    def _record(self, kind: str, to_email: str, secret=None) -> bool:
        if self.fail:
            return False
        self.outbox.append({"kind": kind, "to": to_email, "secret": secret})
        return True

    def send_email_verification(self, to_email, token, *, ttl_minutes=15):
        return self._record("verify_email", to_email, token)

    def send_two_factor_code(self, to_email, code, *, ttl_minutes=10):
        return self._record("two_factor_code", to_email, code)

    def send_two_factor_enabled(self, to_email):
        return self._record("two_factor_enabled", to_email)

    def last(self, kind: str):
        for message in reversed(self.outbox):
            if message["kind"] == kind:
                return message
        raise AssertionError(f"no {kind} email was sent")


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        use_memory_store=True,
        use_memory_cache=True,
        access_token_secret="test-access-secret",
        refresh_token_secret="test-refresh-secret",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache(key_prefix="murmur")


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def hasher():
    # Minimal argon2 cost keeps the suite fast
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def runtime(settings, store, cache, email, hasher):
    return Runtime(settings, store=store, cache=cache, email=email, hasher=hasher)


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


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


DEFAULT_PASSWORD = "CorrectHorse42!"


class Accounts:
    """Creates verified accounts through the HTTP API and hands out bearer headers.

    Login cookies are dropped from the shared client so several users can act
    through one ``TestClient`` using ``Authorization`` headers.
    """

    def __init__(self, client, email):
        self.client = client
        self.email = email

    def signup(self, username: str, *, password: str = DEFAULT_PASSWORD, verify: bool = True):
        resp = self.client.post(
            "/v1/auth/signup",
            json={
                "name": username.title(),
                "username": username,
                "email": f"{username}@example.com",
                "password": password,
                "password_confirm": password,
            },
        )
        assert resp.status_code == 201, resp.text
        user = resp.json()["data"]["user"]
        if verify:
            token = self.email.last("verify_email")["secret"]
            assert self.client.get(f"/v1/auth/verify-email/{token}").status_code == 200
        return user

    def login(self, username: str, *, password: str = DEFAULT_PASSWORD) -> dict:
        resp = self.client.post(
            "/v1/auth/login",
            json={"email": f"{username}@example.com", "password": password},
        )
        assert resp.status_code == 200, resp.text
        access_token = resp.cookies["accessToken"]
        self.client.cookies.clear()
        return {"Authorization": f"Bearer {access_token}"}

    def create(self, username: str) -> tuple:
        user = self.signup(username)
        return user, self.login(username)


@pytest.fixture
def accounts(client, email):
    return Accounts(client, email)
