from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.brute_force import BruteForceGuard
from authcore.service.devices import device_fingerprint, parse_device_info
from authcore.service.errors import (
    MFA_ERROR_MESSAGES,
    MalformedTokenError,
    MfaErrorCode,
    WrongTokenTypeError,
)
from authcore.service.mfa import MfaService
from authcore.service.security_log import SecurityLogger, Severity
from authcore.service.sessions import IssuedSession, SessionManager
from authcore.service.tokens import TokenKind, TokenService
from authcore.storage.models import MfaTempToken, TrustedDevice, User, new_id

logger = get_logger(__name__)


class ChallengeStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_mfa_temp_token(self, token: MfaTempToken) -> MfaTempToken: ...

    def get_mfa_temp_token(self, token: str) -> Optional[MfaTempToken]: ...

    def mark_mfa_temp_token_used(self, token_id: str, at: datetime) -> bool: ...

    def replace_mfa_temp_token(
        self, old_token_id: str, new_token: MfaTempToken, at: datetime
    ) -> bool: ...

    def upsert_trusted_device(self, device: TrustedDevice) -> TrustedDevice: ...

    def find_trusted_device(
        self, user_id: str, fingerprint: str, now: datetime
    ) -> Optional[TrustedDevice]: ...

    def touch_trusted_device(self, device_id: str, at: datetime) -> None: ...

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]: ...

    def delete_trusted_device(self, device_id: str, user_id: str) -> bool: ...

    def record_login(self, user_id: str, at: datetime) -> None: ...

    def mark_auth_attempt_success(
        self, attempt_id: str, user_id: Optional[str] = None
    ) -> None: ...

    def update_auth_attempt_failure(
        self, attempt_id: str, reason: str, user_id: Optional[str] = None
    ) -> None: ...


@dataclass(frozen=True)
class ChallengeResult:
    success: bool
    issued: Optional[IssuedSession] = None
    user: Optional[User] = None
    error: Optional[MfaErrorCode] = None
    locked_until: Optional[datetime] = None

    @property
    def message(self) -> Optional[str]:
        return MFA_ERROR_MESSAGES[self.error] if self.error else None

    @classmethod
    def fail(cls, code: MfaErrorCode) -> "ChallengeResult":
        return cls(success=False, error=code)

    @classmethod
    def locked(cls, locked_until: Optional[datetime]) -> "ChallengeResult":
        return cls(success=False, error=MfaErrorCode.ACCOUNT_LOCKED, locked_until=locked_until)


@dataclass(frozen=True)
class ResendResult:
    success: bool
    temp_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[MfaErrorCode] = None

    @property
    def message(self) -> Optional[str]:
        return MFA_ERROR_MESSAGES[self.error] if self.error else None


class MfaChallengeService:
    """The "password accepted, second factor pending" step of a login.

    A temp token is active until it is used or reaches ``expires_at``; both
    end states are terminal and every later attempt against them fails.
    """

    def __init__(
        self,
        store: ChallengeStore,
        tokens: TokenService,
        mfa: MfaService,
        sessions: SessionManager,
        guard: BruteForceGuard,
        security_log: SecurityLogger,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.mfa = mfa
        self.sessions = sessions
        self.guard = guard
        self.security_log = security_log
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _new_temp_token(
        self, user: User, now: datetime, auth_attempt_id: Optional[str] = None
    ) -> MfaTempToken:
        ttl = timedelta(minutes=self.settings.mfa_challenge_ttl_minutes)
        value = self.tokens.issue(
            user.id, TokenKind.MFA_CHALLENGE, email=user.email, ttl=ttl
        )
        return MfaTempToken(
            id=new_id(),
            user_id=user.id,
            token=value,
            expires_at=now + ttl,
            created_at=now,
            auth_attempt_id=auth_attempt_id,
        )

    async def issue_challenge(
        self,
        user: User,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        auth_attempt_id: Optional[str] = None,
    ) -> MfaTempToken:
        """Start a challenge; ``auth_attempt_id`` is the login attempt it will complete."""
        temp = self.store.create_mfa_temp_token(
            self._new_temp_token(user, self._now(), auth_attempt_id)
        )
        self.security_log.log(
            "mfa_challenge_initiated",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity.INFO,
        )
        return temp

    def _lookup(self, temp_token: str, now: datetime) -> MfaTempToken | MfaErrorCode:
        try:
            self.tokens.verify(temp_token, TokenKind.MFA_CHALLENGE)
        except (MalformedTokenError, WrongTokenTypeError):
            return MfaErrorCode.INVALID_TEMP_TOKEN
        record = self.store.get_mfa_temp_token(temp_token)
        if record is None:
            return MfaErrorCode.INVALID_TEMP_TOKEN
        # Used wins over expired: reuse of a spent token is the harder failure
        if record.used_at is not None:
            return MfaErrorCode.TOKEN_ALREADY_USED
        if record.is_expired(now):
            return MfaErrorCode.TOKEN_EXPIRED
        return record

    async def verify_challenge(
        self,
        temp_token: str,
        code: str,
        *,
        is_backup_code: bool = False,
        trust_device: bool = False,
        device_info: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ChallengeResult:
        now = self._now()
        found = self._lookup(temp_token, now)
        if isinstance(found, MfaErrorCode):
            logger.info("mfa_challenge_rejected", reason=found.value)
            return ChallengeResult.fail(found)
        record = found
        user = self.store.get_user(record.user_id)
        if user is None:
            return ChallengeResult.fail(MfaErrorCode.INVALID_TEMP_TOKEN)

        if self.guard.lock_active(user, now):
            self._close_locked(record, user, now)
            logger.warning("mfa_challenge_account_locked", user_id=user.id)
            return ChallengeResult.locked(user.locked_until)

        if is_backup_code:
            outcome = await self.mfa.verify_backup_code(user.id, code)
        else:
            outcome = await self.mfa.verify_token(user.id, code)

        if not outcome.success:
            # The temp token stays active so the user can retry inside its window
            attempts = self.guard.increment_for_user(user.id)
            self.security_log.log(
                "mfa_login_failed",
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.WARNING,
                details={
                    "method": "backup_code" if is_backup_code else "totp",
                    "failed_attempts": attempts,
                },
            )
            if attempts >= self.guard.max_failed_attempts:
                locked_until = self.guard.lock_account(
                    user, attempts, ip_address=ip_address, user_agent=user_agent
                )
                self._close_locked(record, user, now)
                return ChallengeResult.locked(locked_until)
            return ChallengeResult.fail(outcome.error or MfaErrorCode.INVALID_TOKEN)

        if not self.store.mark_mfa_temp_token_used(record.id, now):
            # A concurrent request spent it first
            return ChallengeResult.fail(MfaErrorCode.TOKEN_ALREADY_USED)

        if trust_device:
            await self._trust_device(user, device_info, ip_address, user_agent, now)

        self.guard.reset_for_user(user.id)
        issued = await self.sessions.create(
            user.id,
            email=user.email,
            business_id=user.business_id,
            ip_address=ip_address,
            user_agent=user_agent,
            remember_me=trust_device,
        )
        if record.auth_attempt_id:
            self.store.mark_auth_attempt_success(record.auth_attempt_id, user.id)
        self.store.record_login(user.id, now)
        self.security_log.log(
            "mfa_login_success",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity.INFO,
            details={
                "method": "backup_code" if is_backup_code else "totp",
                "trusted_device": trust_device,
            },
        )
        return ChallengeResult(success=True, issued=issued, user=user)

    def _close_locked(self, record: MfaTempToken, user: User, now: datetime) -> None:
        # A locked account cannot finish this challenge, so spend the token
        self.store.mark_mfa_temp_token_used(record.id, now)
        if record.auth_attempt_id:
            self.store.update_auth_attempt_failure(
                record.auth_attempt_id, "account_locked", user.id
            )

    async def _trust_device(
        self,
        user: User,
        device_info: Optional[Dict[str, Any]],
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> TrustedDevice:
        device = self.store.upsert_trusted_device(
            TrustedDevice(
                id=new_id(),
                user_id=user.id,
                fingerprint=device_fingerprint(user_agent, device_info),
                name=parse_device_info(user_agent).name,
                ip_address=ip_address,
                user_agent=user_agent,
                expires_at=now + timedelta(days=self.settings.trusted_device_ttl_days),
                last_seen_at=now,
                created_at=now,
            )
        )
        self.security_log.log(
            "trusted_device_added",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity.INFO,
            details={"device": device.name},
        )
        return device

    async def is_device_trusted(
        self,
        user_id: str,
        device_info: Optional[Dict[str, Any]],
        user_agent: Optional[str],
    ) -> bool:
        """True for an unexpired trusted-device match; a match also bumps ``last_seen_at``."""
        now = self._now()
        device = self.store.find_trusted_device(
            user_id, device_fingerprint(user_agent, device_info), now
        )
        if device is None:
            return False
        self.store.touch_trusted_device(device.id, now)
        return True

    async def resend_challenge(
        self,
        temp_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ResendResult:
        now = self._now()
        found = self._lookup(temp_token, now)
        if isinstance(found, MfaErrorCode):
            return ResendResult(success=False, error=found)
        user = self.store.get_user(found.user_id)
        if user is None:
            return ResendResult(success=False, error=MfaErrorCode.INVALID_TEMP_TOKEN)

        replacement = self._new_temp_token(user, now, found.auth_attempt_id)
        if not self.store.replace_mfa_temp_token(found.id, replacement, now):
            return ResendResult(success=False, error=MfaErrorCode.TOKEN_ALREADY_USED)
        self.security_log.log(
            "mfa_challenge_resent",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity.INFO,
        )
        return ResendResult(
            success=True, temp_token=replacement.token, expires_at=replacement.expires_at
        )

    async def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        return self.store.list_trusted_devices(user_id)

    async def revoke_trusted_device(self, device_id: str, user_id: str) -> bool:
        removed = self.store.delete_trusted_device(device_id, user_id)
        if removed:
            self.security_log.log(
                "trusted_device_removed",
                user_id=user_id,
                severity=Severity.INFO,
                details={"device_id": device_id},
            )
        return removed


__all__ = ["ChallengeResult", "ResendResult", "MfaChallengeService"]
