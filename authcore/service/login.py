from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.accounts import Known, UserLookup, lookup_or_unknown
from authcore.service.brute_force import BruteForceGuard
from authcore.service.devices import parse_device_info
from authcore.service.email import Notifier, send_best_effort
from authcore.service.mfa_challenge import MfaChallengeService
from authcore.service.passwords import PasswordService
from authcore.service.security_log import SecurityLogger, Severity
from authcore.service.sessions import SessionManager
from authcore.storage.models import AuthAttempt, new_id

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
ACCOUNT_LOCKED = "Account is temporarily locked due to too many failed login attempts."
LOCKED_BY_THIS_ATTEMPT = (
    "Account locked due to too many failed login attempts. Please try again later."
)
EMAIL_NOT_VERIFIED = "Please verify your email address before logging in."
LOGIN_FAILED = "An error occurred during login. Please try again."


class LoginStore(UserLookup, Protocol):
    def record_auth_attempt(self, attempt: AuthAttempt) -> AuthAttempt: ...

    def mark_auth_attempt_success(
        self, attempt_id: str, user_id: Optional[str] = None
    ) -> None: ...

    def update_auth_attempt_failure(
        self, attempt_id: str, reason: str, user_id: Optional[str] = None
    ) -> None: ...

    def record_login(self, user_id: str, at: datetime) -> None: ...


@dataclass(frozen=True)
class LoginResult:
    success: bool
    requires_mfa: bool = False
    mfa_token: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    user: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    locked_until: Optional[datetime] = None

    @classmethod
    def fail(
        cls, error: str, code: str, *, locked_until: Optional[datetime] = None
    ) -> "LoginResult":
        return cls(success=False, error=error, error_code=code, locked_until=locked_until)


class LoginOrchestrator:
    """Password login: audit row, enumeration-safe lookup, lock check, password,
    email verification, second factor and finally the session.

    The steps run strictly in that order; later steps read what earlier ones
    wrote.
    """

    def __init__(
        self,
        store: LoginStore,
        passwords: PasswordService,
        guard: BruteForceGuard,
        sessions: SessionManager,
        challenges: MfaChallengeService,
        notifier: Notifier,
        security_log: SecurityLogger,
        settings: Settings,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.guard = guard
        self.sessions = sessions
        self.challenges = challenges
        self.notifier = notifier
        self.security_log = security_log
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        device_info: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        attempt = self.store.record_auth_attempt(
            AuthAttempt(
                id=new_id(),
                email=email,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=self._now(),
            )
        )
        try:
            return await self._login(
                attempt,
                email,
                password,
                remember_me=remember_me,
                device_info=device_info,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        except Exception as exc:
            logger.error("login_error", error=str(exc), error_type=type(exc).__name__)
            self.store.update_auth_attempt_failure(attempt.id, "server_error")
            return LoginResult.fail(LOGIN_FAILED, "server_error")

    async def _login(
        self,
        attempt: AuthAttempt,
        email: str,
        password: str,
        *,
        remember_me: bool,
        device_info: Optional[Dict[str, Any]],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> LoginResult:
        account = lookup_or_unknown(self.store, email)
        if not isinstance(account, Known):
            # Burn one hash so an unknown address costs what a wrong password does
            self.passwords.verify(None, password)
            self.store.update_auth_attempt_failure(attempt.id, "invalid_credentials")
            self.security_log.log(
                "login_failed",
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.WARNING,
                details={"reason": "invalid_credentials"},
            )
            return LoginResult.fail(INVALID_CREDENTIALS, "invalid_credentials")
        user = account.user

        decision = await self.guard.check_and_lock(
            user.email, ip_address=ip_address, user_agent=user_agent
        )
        if decision.is_locked:
            self.store.update_auth_attempt_failure(attempt.id, "account_locked", user.id)
            return LoginResult.fail(
                ACCOUNT_LOCKED, "account_locked", locked_until=decision.locked_until
            )

        if not self.passwords.verify(user, password):
            attempts = self.guard.increment_for_user(user.id)
            self.store.update_auth_attempt_failure(attempt.id, "invalid_credentials", user.id)
            if attempts >= self.guard.max_failed_attempts:
                locked_until = self.guard.lock_account(
                    user, attempts, ip_address=ip_address, user_agent=user_agent
                )
                return LoginResult.fail(
                    LOCKED_BY_THIS_ATTEMPT, "account_locked", locked_until=locked_until
                )
            self.security_log.log(
                "login_failed",
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.WARNING,
                details={"reason": "invalid_password", "failed_attempts": attempts},
            )
            return LoginResult.fail(INVALID_CREDENTIALS, "invalid_credentials")

        # Checked after the password so a wrong guess learns nothing about verification state
        if not user.email_verified:
            self.store.update_auth_attempt_failure(attempt.id, "email_not_verified", user.id)
            return LoginResult.fail(EMAIL_NOT_VERIFIED, "email_not_verified")

        if user.mfa_enabled:
            trusted = await self.challenges.is_device_trusted(user.id, device_info, user_agent)
            if not trusted:
                challenge = await self.challenges.issue_challenge(
                    user,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    auth_attempt_id=attempt.id,
                )
                self.store.update_auth_attempt_failure(attempt.id, "mfa_required", user.id)
                logger.info("login_mfa_required", user_id=user.id)
                # The password was right; success here means "go on to the second factor"
                return LoginResult(
                    success=True,
                    requires_mfa=True,
                    mfa_token=challenge.token,
                    user={"id": user.id, "email": user.email},
                )
            logger.info("login_mfa_bypassed_trusted_device", user_id=user.id)

        self.guard.reset_for_user(user.id)
        known_device = await self.sessions.has_matching_session(user.id, ip_address, user_agent)
        issued = await self.sessions.create(
            user.id,
            email=user.email,
            business_id=user.business_id,
            ip_address=ip_address,
            user_agent=user_agent,
            remember_me=remember_me,
        )
        now = self._now()
        if not known_device:
            await self._alert_new_device(user.id, user.email, ip_address, user_agent, now)

        self.store.mark_auth_attempt_success(attempt.id, user.id)
        self.store.record_login(user.id, now)
        self.security_log.log(
            "login_success",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity.INFO,
            details={"remember_me": remember_me},
        )
        return LoginResult(
            success=True,
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            user=user.summary(),
        )

    async def _alert_new_device(
        self,
        user_id: str,
        email: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> None:
        device = parse_device_info(user_agent).as_dict()
        self.security_log.log(
            "new_device_login",
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity.INFO,
            details={"device": device},
        )
        await send_best_effort(
            "new_device_alert",
            self.notifier.send_new_device_alert,
            email,
            device_info=device,
            ip_address=ip_address,
            timestamp=now,
        )


__all__ = ["LoginResult", "LoginOrchestrator"]
