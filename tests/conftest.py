import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authkernel_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")
os.environ.setdefault("TOKEN_PURGE_INTERVAL_SECONDS", "0")
# The runtime always uses the in-process fallbacks under test
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authkernel.service.auth import AuthService  # noqa: E402
from authkernel.service.identity_cache import IdentityCache  # noqa: E402
from authkernel.service.passwords import PasswordHasher  # noqa: E402
from authkernel.service.runtime import reset_runtime_for_tests  # noqa: E402
from authkernel.service.throttle import LoginThrottle  # noqa: E402
from authkernel.service.tokens import TokenIssuer  # noqa: E402
from authkernel.storage.memory import MemoryStore  # noqa: E402

ACCESS_SECRET = "unit-access-secret-0123456789-abcdefghijklmnop"
REFRESH_SECRET = "unit-refresh-secret-0123456789-abcdefghijklmno"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


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
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def make_issuer(clock):
    def _make(**overrides):
        options = dict(
            access_secret=ACCESS_SECRET,
            refresh_secret=REFRESH_SECRET,
            issuer="authkernel",
            audience="authkernel-clients",
            access_ttl=timedelta(minutes=60),
            refresh_ttl=timedelta(days=7),
            leeway=timedelta(seconds=0),
            clock=clock,
        )
        options.update(overrides)
        return TokenIssuer(**options)

    return _make


@pytest.fixture
def issuer(make_issuer):
    return make_issuer()


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def throttle(clock):
    return LoginThrottle(None, max_attempts=5, window=timedelta(minutes=15), clock=clock)


@pytest.fixture
def identity_cache(clock):
    return IdentityCache(None, ttl_seconds=60, clock=clock)


@pytest.fixture
def auth_service(memory_store, hasher, issuer, throttle, identity_cache, clock):
    return AuthService(
        memory_store,
        hasher=hasher,
        issuer=issuer,
        throttle=throttle,
        identity_cache=identity_cache,
        clock=clock,
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
