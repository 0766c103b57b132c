import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from accountlink.config import Settings  # noqa: E402
from accountlink.service.auth import AuthService  # noqa: E402
from accountlink.service.exchange import ExchangeCodeStore  # noqa: E402
from accountlink.service.passwords import Argon2PasswordHasher  # noqa: E402
from accountlink.service.runtime import reset_runtime_for_tests  # noqa: E402
from accountlink.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Monotonic seconds that only move when a test says so."""

    def __init__(self, start: float = 1_000.0):
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
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def hasher():
    # Cheapest valid argon2id parameters; production uses library defaults
    return Argon2PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def exchange_clock():
    return FakeClock()


@pytest.fixture
def exchange_store(exchange_clock):
    return ExchangeCodeStore(clock=exchange_clock)


@pytest.fixture
def auth_service(memory_store, settings, hasher, exchange_store):
    return AuthService(
        memory_store, settings, hasher=hasher, exchange=exchange_store
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
