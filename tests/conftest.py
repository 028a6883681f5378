import asyncio
import inspect
import os
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# Configure the environment before anything loads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="trustgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

from trustgate.config import Settings  # noqa: E402
from trustgate.service.auth import AuthService  # noqa: E402
from trustgate.service.lockout import LockoutStateMachine  # noqa: E402
from trustgate.service.mfa import SecondFactorVerifier  # noqa: E402
from trustgate.service.password_reset import PasswordResetFlow  # noqa: E402
from trustgate.service.passwords import PasswordManager  # noqa: E402
from trustgate.service.rate_limit import SlidingWindowRateLimiter  # noqa: E402
from trustgate.service.revocation import RevocationLedger  # noqa: E402
from trustgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from trustgate.service.sessions import SessionRegistry  # noqa: E402
from trustgate.service.signer import TokenSigner  # noqa: E402
from trustgate.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=TEST_SECRET)


@pytest.fixture
def settings():
    return Settings(jwt_secret=TEST_SECRET, shared_fs_root="/tmp/trustgate-unit", test_mode=True)


@pytest.fixture
def stack(store, clock, settings):
    """The full service graph on one store and a fake clock, without the runtime."""
    signer = TokenSigner(TEST_SECRET, issuer=settings.jwt_issuer, clock=clock)
    ledger = RevocationLedger(store, clock=clock)
    sessions = SessionRegistry(store, ledger, clock=clock)
    limiter = SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_max_requests,
        public_max_requests=settings.rate_limit_public_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
        clock=clock,
    )
    lockout = LockoutStateMachine(
        store,
        sessions,
        max_failed_attempts=settings.max_failed_attempts,
        account_extension=timedelta(days=settings.account_extension_days),
        clock=clock,
    )
    mfa = SecondFactorVerifier(store, issuer=settings.mfa_issuer, clock=clock)
    passwords = PasswordManager(store)
    reset_flow = PasswordResetFlow(
        store,
        signer,
        ledger,
        sessions,
        mfa,
        passwords,
        ttl=timedelta(minutes=settings.reset_token_ttl_minutes),
        require_mfa=settings.reset_requires_mfa,
        clock=clock,
    )
    auth = AuthService(
        store,
        signer,
        ledger,
        sessions,
        limiter,
        lockout,
        mfa,
        passwords,
        reset_flow,
        settings,
        clock=clock,
    )
    return SimpleNamespace(
        store=store,
        clock=clock,
        settings=settings,
        signer=signer,
        ledger=ledger,
        sessions=sessions,
        limiter=limiter,
        lockout=lockout,
        mfa=mfa,
        passwords=passwords,
        reset_flow=reset_flow,
        auth=auth,
    )


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
