import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-process cache; tests never need a live Redis
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tessera.service.runtime import reset_runtime_for_tests  # noqa: E402

STRONG_PASSWORD = "Correct-Horse-42"


class FakeClock:
    """Manually advanced epoch-seconds clock shared by the cache and services."""

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
def runtime(clock):
    """Runtime whose cache, tokens and MFA challenges all follow ``clock``."""
    return reset_runtime_for_tests(clock)


@pytest.fixture
def domain(runtime):
    return runtime.domains.create_domain("Acme Corp", "acme")


@pytest.fixture
def other_domain(runtime):
    return runtime.domains.create_domain("Globex", "globex")


@pytest.fixture
def user(runtime, domain):
    return runtime.store.create_user(
        domain.id,
        "alice@example.com",
        runtime.hashing.hash(STRONG_PASSWORD),
        full_name="Alice",
        phone="+15551234567",
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
