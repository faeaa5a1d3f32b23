import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-9876543210")
# Cheap argon2 parameters keep the suite fast; allowed only in TEST_MODE
os.environ.setdefault("ARGON2_MEMORY_COST", "8")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from schoolgate.config import Settings  # noqa: E402
from schoolgate.service.auth import AuthService, ProfileInput  # noqa: E402
from schoolgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from schoolgate.storage.memory import MemoryStore  # noqa: E402

TEST_ACCESS_SECRET = "unit-access-secret-0123456789-abcdefghijklmnop"
TEST_REFRESH_SECRET = "unit-refresh-secret-0123456789-abcdefghijklmnop"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Settings with cheap hashing for unit tests."""
    return Settings(
        test_mode=True,
        use_memory_store=True,
        jwt_access_secret=TEST_ACCESS_SECRET,
        jwt_refresh_secret=TEST_REFRESH_SECRET,
        argon2_memory_cost=8,
        argon2_time_cost=1,
        argon2_parallelism=1,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(memory_store, settings)


@pytest.fixture
def profile():
    return ProfileInput(first_name="Ada", last_name="Lovelace")


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
