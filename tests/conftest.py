import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import that might build settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "access-secret-for-tests-only-do-not-use-in-production")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "refresh-secret-for-tests-only-do-not-use-in-production")
# Keep rate-limit buckets in process memory so they reset with the runtime
os.environ["REDIS_URL"] = ""
os.environ.pop("MEMORY_STORE_ROOT", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionauth.config import Settings  # noqa: E402
from sessionauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionauth.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        access_token_secret="a" * 40,
        refresh_token_secret="r" * 40,
        store_timeout_seconds=2.0,
    )


@pytest.fixture
def memory_store():
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
