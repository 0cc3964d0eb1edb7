import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import that might build settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in unit tests: rate limits use the in-process bucket
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters keep hashing fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantauth.service.audit import AuditRecorder  # noqa: E402
from tenantauth.service.auth import AccountManager  # noqa: E402
from tenantauth.service.otp import OtpEngine  # noqa: E402
from tenantauth.service.passwords import CredentialHasher, PasswordPolicy  # noqa: E402
from tenantauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantauth.service.staff import StaffService  # noqa: E402
from tenantauth.service.tokens import SigningKeys, TokenConfig, TokenIssuer  # noqa: E402
from tenantauth.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-with-enough-length-0123456789"
OWNER_PHONE = "9876543210"
OWNER_PASSWORD = "Owner@Pass1"


class RecordingNotifier:
    """Captures OTP deliveries so tests can read the plaintext code."""

    def __init__(self, *, delivered: bool = True, error: Exception | None = None):
        self.sent: list[tuple[str, str, str]] = []
        self.delivered = delivered
        self.error = error

    async def deliver_otp(self, phone: str, code: str, purpose: str) -> bool:
        self.sent.append((phone, code, purpose))
        if self.error:
            raise self.error
        return self.delivered

    def last_code(self) -> str:
        return self.sent[-1][1]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def hasher():
    return CredentialHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def policy(hasher):
    return PasswordPolicy(hasher, history_limit=5)


@pytest.fixture
def token_issuer():
    return TokenIssuer(TokenConfig(keys=SigningKeys(current=TEST_SECRET)))


@pytest.fixture
def otp_engine():
    return OtpEngine(TEST_SECRET, expiry_minutes=10, max_attempts=3)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def manager(memory_store, hasher, policy, otp_engine, token_issuer, notifier):
    return AccountManager(
        memory_store,
        hasher=hasher,
        policy=policy,
        otp=otp_engine,
        tokens=token_issuer,
        notifier=notifier,
        audit=AuditRecorder(memory_store),
    )


@pytest.fixture
def staff(memory_store, hasher, policy):
    return StaffService(
        memory_store, hasher=hasher, policy=policy, audit=AuditRecorder(memory_store)
    )


@pytest.fixture
def registered(manager):
    """A freshly registered tenant; returns the registration result."""
    return asyncio.run(
        manager.register("City Clinic", "Asha Rao", OWNER_PHONE, OWNER_PASSWORD)
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
