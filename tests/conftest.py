import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pyotp  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.config import Settings  # noqa: E402
from authcore.service.brute_force import BruteForceGuard  # noqa: E402
from authcore.service.email_verification import EmailVerificationService  # noqa: E402
from authcore.service.login import LoginOrchestrator  # noqa: E402
from authcore.service.mfa import MfaService, generate_backup_codes, hash_backup_code  # noqa: E402
from authcore.service.mfa_challenge import MfaChallengeService  # noqa: E402
from authcore.service.password_reset import PasswordResetService  # noqa: E402
from authcore.service.passwords import PasswordService  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.service.security_log import SecurityLogger  # noqa: E402
from authcore.service.sessions import SessionManager  # noqa: E402
from authcore.service.tokens import TokenService  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402

from tests.support import TEST_PASSWORD, TEST_SECRET, RecordingNotifier  # noqa: E402


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


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        test_mode=True,
        use_memory_store=True,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key=TEST_SECRET)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def security_log(store):
    return SecurityLogger(store)


@pytest.fixture
def tokens(settings):
    return TokenService(settings)


@pytest.fixture
def passwords(store):
    return PasswordService(store)


@pytest.fixture
def guard(store, security_log, settings):
    return BruteForceGuard(
        store, security_log, max_failed_attempts=settings.max_failed_attempts
    )


@pytest.fixture
def sessions(store, tokens, settings):
    return SessionManager(store, tokens, settings)


@pytest.fixture
def mfa(store, passwords, security_log, settings):
    return MfaService(store, passwords, security_log, settings)


@pytest.fixture
def challenges(store, tokens, mfa, sessions, guard, security_log, settings):
    return MfaChallengeService(store, tokens, mfa, sessions, guard, security_log, settings)


@pytest.fixture
def login_service(store, passwords, guard, sessions, challenges, notifier, security_log, settings):
    return LoginOrchestrator(
        store, passwords, guard, sessions, challenges, notifier, security_log, settings
    )


@pytest.fixture
def password_reset(store, passwords, notifier, security_log, settings):
    return PasswordResetService(store, passwords, notifier, security_log, settings)


@pytest.fixture
def email_verification(store, notifier, security_log, settings):
    return EmailVerificationService(store, notifier, security_log, settings)


@pytest.fixture
def make_user(store, passwords):
    """Factory for users with a stored password."""

    def _make(email="user@example.com", password=TEST_PASSWORD, *, verified=True, **fields):
        user = store.create_user(email, email_verified=verified)
        passwords.set_password(user.id, password)
        for name, value in fields.items():
            setattr(store.users[user.id], name, value)
        return store.get_user(user.id)

    return _make


@pytest.fixture
def enable_mfa(store):
    """Turn MFA on for a user directly through the store; returns (secret, backup codes)."""

    def _enable(user):
        secret = pyotp.random_base32()
        codes = generate_backup_codes(8)
        store.replace_mfa_setup(user.id, secret, [hash_backup_code(c) for c in codes])
        store.confirm_mfa_setup(user.id)
        return secret, codes

    return _enable
