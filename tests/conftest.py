import asyncio
import inspect
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="propauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-process rate limits so buckets never leak between tests
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

from propauth.config import Settings  # noqa: E402
from propauth.service.auth import AuthService  # noqa: E402
from propauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from propauth.storage.memory import MemoryStore  # noqa: E402
from propauth.storage.models import Role, User, UserStatus  # noqa: E402

TEST_PASSWORD = "Correct#Horse9"


class FakeClock:
    """Controllable stand-in for utcnow."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notifier that keeps every code and link it is asked to deliver."""

    def __init__(self):
        self.otps = []
        self.verification_emails = []
        self.reset_emails = []
        self.fail = False
        self.delay_seconds = 0.0

    async def _deliver(self) -> bool:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        return not self.fail

    async def send_otp(self, phone, code, *, purpose, expires_at):
        self.otps.append({"phone": phone, "code": code, "purpose": purpose})
        return await self._deliver()

    async def send_email_verification(self, email, token):
        self.verification_emails.append({"email": email, "token": token})
        return await self._deliver()

    async def send_password_reset(self, email, token):
        self.reset_emails.append({"email": email, "token": token})
        return await self._deliver()

    def last_otp(self, phone=None):
        matching = [o for o in self.otps if phone is None or o["phone"] == phone]
        return matching[-1]["code"]


def _clear_memory_state():
    shutil.rmtree(Path(os.environ["SHARED_FS_ROOT"]) / "state", ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _clear_memory_state()
    reset_runtime_for_tests()
    yield
    _clear_memory_state()
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Settings built directly so unit tests do not depend on the environment."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24 * 7,
        session_ttl_minutes=60 * 24,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
        directory_timeout_seconds=2.0,
        notification_timeout_seconds=0.5,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store():
    return MemoryStore(persist=False)


@pytest.fixture
def auth(settings, store, notifier, clock):
    return AuthService(settings, store, notifier, clock=clock)


@pytest.fixture
def make_user(auth, store, clock):
    """Factory for accounts that skip the signup flow."""

    def _make(
        email="tenant@example.com",
        *,
        password=TEST_PASSWORD,
        role=Role.TENANT,
        phone=None,
        status=UserStatus.ACTIVE,
        email_verified=True,
        phone_verified=False,
        agency_id=None,
    ) -> User:
        user = User.new(
            email=email,
            password_hash=auth.hasher.hash(password) if password else None,
            role=role,
            phone=phone,
            status=status,
            agency_id=agency_id,
            now=clock(),
        )
        user.email_verified = email_verified
        user.phone_verified = phone_verified
        return store.create_user(user)

    return _make


@pytest.fixture
def runtime_notifier():
    """Swap the live runtime's notifier for a recording one."""
    from propauth.service import runtime as runtime_module

    recorder = RecordingNotifier()
    runtime = runtime_module.get_runtime()
    runtime.auth.notifier = recorder
    runtime.auth.otp.notifier = recorder
    return recorder


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
