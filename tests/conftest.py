import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="gamcauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_KV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gamcauth.config import Settings  # noqa: E402
from gamcauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from gamcauth.storage.memory import MemoryStore  # noqa: E402
from gamcauth.storage.memory_kv import MemoryKeyValueStore  # noqa: E402

ACCESS_SECRET = "unit-access-secret-0123456789-abcdefghijklmnop"
REFRESH_SECRET = "unit-refresh-secret-0123456789-abcdefghijklmnop"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    """Settings built directly, independent of the process environment."""
    return Settings(
        test_mode=True,
        shared_fs_root=str(tmp_path),
        jwt_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


class YieldingKeyValueStore(MemoryKeyValueStore):
    """Memory backend that gives up the event loop before every call.

    Redis I/O suspends the caller on each round trip; this lets
    ``asyncio.gather`` interleave concurrent requests the same way.
    """

    def __getattribute__(self, name):
        attr = super().__getattribute__(name)
        if name.startswith("_") or not inspect.iscoroutinefunction(attr):
            return attr

        async def suspended(*args, **kwargs):
            await asyncio.sleep(0)
            return await attr(*args, **kwargs)

        return suspended


@pytest.fixture
def yielding_kv():
    return YieldingKeyValueStore()


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
