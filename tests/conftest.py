import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before any pmoguard import builds settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")
# limiter tests count real attempts
os.environ.pop("RELAXED_RATE_LIMITS", None)
os.environ.pop("REDIS_URL", None)
os.environ.pop("STATE_PATH", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from pmoguard.config import Settings  # noqa: E402
from pmoguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from pmoguard.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-signing-key-0123456789-abcdef"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(token_secret=TEST_SECRET, test_mode=True)


@pytest.fixture
def store():
    return MemoryStore()


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
