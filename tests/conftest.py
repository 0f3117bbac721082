import asyncio
import inspect
import os
import sys
from pathlib import Path

# Set before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JOB_PROCESSOR_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from warden.config import Settings  # noqa: E402
from warden.service import crypto  # noqa: E402
from warden.service.auth import AuthService  # noqa: E402
from warden.service.jobs import JobScheduler  # noqa: E402
from warden.service.permissions import PermissionResolver  # noqa: E402
from warden.service.runtime import reset_runtime_for_tests  # noqa: E402
from warden.service.tokens import TokenIssuer  # noqa: E402
from warden.service.verification import VerificationCodes  # noqa: E402
from warden.storage.memory import MemoryStore  # noqa: E402
from warden.storage.memory_cache import InMemoryCache  # noqa: E402

# 2024-01-15T12:00:00Z
BASE_TIME = 1705320000.0


class FakeClock:
    """Settable time source in seconds, shared by cache, scheduler and services."""

    def __init__(self, start: float = BASE_TIME) -> None:
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
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        use_memory_store=True,
        redis_url="",
    )


@pytest.fixture
def store(settings):
    return MemoryStore(mfa_encryption_key=settings.mfa_key_material)


@pytest.fixture
def cache(clock):
    return InMemoryCache(clock=clock)


@pytest.fixture
def scheduler(cache, clock):
    return JobScheduler(cache, clock=clock, lease_ms=60_000, max_attempts=3, retry_delay_ms=30_000)


@pytest.fixture
def codes(cache, settings):
    return VerificationCodes(cache, settings)


@pytest.fixture
def tokens(settings, clock):
    return TokenIssuer(settings, clock=clock)


@pytest.fixture
def auth_service(store, cache, settings, tokens, scheduler, codes, clock):
    return AuthService(
        store, cache, settings, tokens=tokens, scheduler=scheduler, codes=codes, clock=clock
    )


@pytest.fixture
def resolver(store, cache, settings):
    return PermissionResolver(store, cache, settings)


@pytest.fixture
def solve_challenge():
    """What a client does with an initLogin response and the user's password."""

    def _solve(password: str, login: dict) -> str:
        password_hash = crypto.hash_password(password, login["salt"])
        return crypto.encrypt_challenge(login["challenge"], password_hash, login["iv"])

    return _solve


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
