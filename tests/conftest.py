import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Denylist disabled by default; revocation tests inject their own cache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOCK_CLEANUP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from healthvia.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeDenylist:
    """In-process stand-in for the Redis denylist with the same async surface."""

    def __init__(self, *, fail: bool = False):
        self.entries: dict[str, int] = {}
        self.fail = fail

    def verify_connection(self) -> None:
        return None

    async def denylist_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.entries[jti] = ttl_seconds

    async def is_token_denylisted(self, jti: str) -> bool:
        if self.fail:
            raise ConnectionError("denylist unreachable")
        return jti in self.entries

    async def close(self) -> None:
        return None


@pytest.fixture
def fake_denylist():
    return FakeDenylist()


@pytest.fixture(autouse=True)
def reset_runtime_state():
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
