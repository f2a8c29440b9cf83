import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set test configuration before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="kgotla_test_")
os.environ.setdefault("AUTH_STATE_ROOT", _test_tmp_dir)
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210")
os.environ.setdefault("PASSWORD_TIME_COST", "1")
os.environ.setdefault("PASSWORD_MEMORY_COST", "8")
os.environ.setdefault("PASSWORD_PARALLELISM", "1")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from kgotla.config import Settings  # noqa: E402
from kgotla.service.auth import AuthService  # noqa: E402
from kgotla.storage.memory import MemoryStore  # noqa: E402

ACCESS_SECRET = "unit-access-secret-abcdefghijklmnopqrstuvwxyz-0001"
REFRESH_SECRET = "unit-refresh-secret-abcdefghijklmnopqrstuvwxyz-0002"
STRONG_PASSWORD = "Abcd1234!"


class FakeClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmailSender:
    """Email collaborator that keeps every message instead of sending it."""

    def __init__(self) -> None:
        self.verifications: list[tuple[str, str, object]] = []
        self.resets: list[tuple[str, str]] = []
        self.welcomes: list[tuple[str, str | None]] = []
        self.fail_verification = False
        self.fail_welcome = False

    def send_email_verification(self, to_email, secret, kind=None) -> bool:
        if self.fail_verification:
            return False
        self.verifications.append((to_email, secret, kind))
        return True

    def send_password_reset(self, to_email, reset_url) -> bool:
        self.resets.append((to_email, reset_url))
        return True

    def send_welcome(self, to_email, first_name=None) -> bool:
        if self.fail_welcome:
            raise ConnectionError("smtp unavailable")
        self.welcomes.append((to_email, first_name))
        return True

    def last_secret(self) -> str:
        return self.verifications[-1][1]

    def last_reset_token(self) -> str:
        return self.resets[-1][1].split("token=", 1)[1]


def make_settings(**overrides) -> Settings:
    values = dict(
        jwt_access_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        password_time_cost=1,
        password_memory_cost=8,
        password_parallelism=1,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    """Test settings with cheap argon2 parameters."""
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(tmp_path):
    """Memory store persisting under a per-test directory."""
    return MemoryStore(fs_root=str(tmp_path), token_encryption_key=REFRESH_SECRET)


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def auth_service(memory_store, settings, email_sender, clock):
    return AuthService(memory_store, settings, email_sender, clock=clock)


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
