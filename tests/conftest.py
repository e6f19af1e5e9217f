import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment defaults must be in place before accountcore modules are imported
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault(
    "ACCESS_TOKEN_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production"
)
os.environ.setdefault("PASSWORD_HASH_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "8")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from accountcore.config import Settings  # noqa: E402
from accountcore.service.hashing import SecretHasher  # noqa: E402
from accountcore.service.lifecycle import LifecycleEngine  # noqa: E402
from accountcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from accountcore.service.tokens import AccessTokenSigner  # noqa: E402
from accountcore.storage.memory import MemoryDirectory  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"
START = datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock; every call returns the same instant until moved."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDispatcher:
    """Email dispatcher that keeps every message instead of sending it."""

    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.sent = []

    def _record(self, kind, account, token):
        self.sent.append({"kind": kind, "to": account.email, "token": token})
        return self.deliver

    def send_verification(self, account, token):
        return self._record("verification", account, token)

    def send_password_reset(self, account, token):
        return self._record("password_reset", account, token)

    def send_email_change_verification(self, account, token):
        return self._record("email_change", account, token)

    def last(self, kind):
        matches = [m for m in self.sent if m["kind"] == kind]
        return matches[-1] if matches else None


def make_settings(**overrides) -> Settings:
    values = {
        "access_token_secret": TEST_SECRET,
        "environment": "test",
        "password_hash_cost": 1,
        "password_hash_memory_kib": 8,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def directory():
    return MemoryDirectory()


@pytest.fixture
def hasher(settings):
    return SecretHasher.from_settings(settings)


@pytest.fixture
def signer(settings):
    return AccessTokenSigner.from_settings(settings)


@pytest.fixture
def engine(directory, hasher, signer, dispatcher, settings, clock):
    return LifecycleEngine(directory, hasher, signer, dispatcher, settings, clock=clock)
