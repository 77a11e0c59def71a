import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("TWO_FACTOR_KEY", "test-two-factor-key-for-testing-only")
os.environ.setdefault("EMAIL_VERIFICATION_KEY", "test-email-verification-key")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatehouse.service.hashing import BcryptHasher  # noqa: E402
from gatehouse.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatehouse.storage.memory import (  # noqa: E402
    MemoryCache,
    MemoryCookieJar,
    MemorySession,
    MemoryUserStore,
)


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hasher():
    return BcryptHasher(rounds=4)


@pytest.fixture
def users(hasher):
    return MemoryUserStore(hasher)


@pytest.fixture
def alice(users):
    return users.create_user(
        "alice@example.com", "correct horse", user_id=1, attributes={"role": "editor"}
    )


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def session():
    return MemorySession()


@pytest.fixture
def cookies():
    return MemoryCookieJar()
