import asyncio
import inspect
import os
import tempfile
from datetime import datetime, timedelta, timezone

# Environment must be in place before anything imports userservice settings
_test_tmp_dir = tempfile.mkdtemp(prefix="userservice_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps single-use tokens in process
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

from userservice.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock for lockout and expiry scenarios."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Captures outgoing notifications instead of sending email."""

    def __init__(self):
        self.sent: list[tuple] = []

    def notify_verification(self, email: str, username: str, token: str) -> bool:
        self.sent.append(("verification", email, token))
        return True

    def notify_password_reset(self, email: str, username: str, token: str) -> bool:
        self.sent.append(("password_reset", email, token))
        return True

    def notify_password_changed(self, email: str, username: str) -> bool:
        self.sent.append(("password_changed", email, None))
        return True

    def last(self, kind: str):
        for entry in reversed(self.sent):
            if entry[0] == kind:
                return entry
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh file-backed memory store per test
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
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
