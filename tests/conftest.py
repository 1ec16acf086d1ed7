import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure before any imports that might read settings
os.environ.setdefault("PASSWORD_PEPPER", "test-pepper-for-testing-only")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_BACKEND", "memory")
os.environ.setdefault("ARGON2_MEMORY_MIB", "15")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from credstore.config import reset_settings_cache  # noqa: E402
from credstore.service.passwords import Argon2idStrategy  # noqa: E402
from credstore.usernames import AsciiUsername  # noqa: E402
from fakes import FakeClock  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def strategy():
    """Argon2id at the lowest accepted cost so hashing stays fast."""
    return Argon2idStrategy(b"pepper-for-tests", 15, 2, 1)


@pytest.fixture
def username_type():
    return AsciiUsername


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


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
