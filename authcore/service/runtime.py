from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.brute_force import BruteForceGuard
from authcore.service.email import EmailService
from authcore.service.email_verification import EmailVerificationService
from authcore.service.errors import ConfigError
from authcore.service.login import LoginOrchestrator
from authcore.service.mfa import MfaService
from authcore.service.mfa_challenge import MfaChallengeService
from authcore.service.password_reset import PasswordResetService
from authcore.service.passwords import PasswordService
from authcore.service.security_log import SecurityLogger
from authcore.service.sessions import SessionManager
from authcore.service.tokens import TokenService
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _encryption_key(settings: Settings) -> str:
    key = settings.mfa_encryption_key or settings.jwt_secret
    if not key:
        raise ConfigError("MFA_ENCRYPTION_KEY or JWT_SECRET must be set")
    return key


class Runtime:
    """Holds the store and every service for the FastAPI app and the operator CLI."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        use_memory = self.settings.use_memory_store or self.settings.test_mode
        store_type = "memory" if use_memory else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        key = _encryption_key(self.settings)
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(mfa_encryption_key=key)
                if use_memory
                else PostgresStore(self.settings.database_url, mfa_encryption_key=key)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService(
            smtp_host=None if self.settings.test_mode else self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            password_reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
            email_verification_ttl_hours=self.settings.email_verification_ttl_hours,
        )
        self.security_log = SecurityLogger(self.store)
        self.tokens = TokenService(self.settings)
        self.passwords = PasswordService(self.store)
        self.guard = BruteForceGuard(
            self.store,
            self.security_log,
            max_failed_attempts=self.settings.max_failed_attempts,
        )
        self.sessions = SessionManager(self.store, self.tokens, self.settings)
        self.mfa = MfaService(self.store, self.passwords, self.security_log, self.settings)
        self.challenges = MfaChallengeService(
            self.store,
            self.tokens,
            self.mfa,
            self.sessions,
            self.guard,
            self.security_log,
            self.settings,
        )
        self.login = LoginOrchestrator(
            self.store,
            self.passwords,
            self.guard,
            self.sessions,
            self.challenges,
            self.email,
            self.security_log,
            self.settings,
        )
        self.password_reset = PasswordResetService(
            self.store, self.passwords, self.email, self.security_log, self.settings
        )
        self.email_verification = EmailVerificationService(
            self.store, self.email, self.security_log, self.settings
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            email_configured=self.email.is_configured,
            max_failed_attempts=self.settings.max_failed_attempts,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
