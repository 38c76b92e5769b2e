from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.accounts import Known, UserLookup, lookup_or_unknown
from authcore.service.email import Notifier, send_best_effort
from authcore.service.errors import ValidationError
from authcore.service.passwords import PasswordService, password_problems
from authcore.service.security_log import SecurityLogger, Severity
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import PasswordResetToken, User, new_id

logger = get_logger(__name__)

RESET_REQUESTED = "If an account exists with this email, a password reset link has been sent."


class ResetStore(UserLookup, Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_password_reset_token(self, token: PasswordResetToken) -> PasswordResetToken: ...

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]: ...

    def complete_password_reset(
        self, user_id: str, password_hash: str, token_id: str, at: datetime
    ) -> int: ...


class PasswordResetService:
    def __init__(
        self,
        store: ResetStore,
        passwords: PasswordService,
        notifier: Notifier,
        security_log: SecurityLogger,
        settings: Settings,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.notifier = notifier
        self.security_log = security_log
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def request_reset(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Issue a reset link when ``email`` is registered; the reply never says whether it is."""
        account = lookup_or_unknown(self.store, email)
        if not isinstance(account, Known):
            logger.info("password_reset_unknown_email")
            return RESET_REQUESTED
        user = account.user
        now = self._now()
        record = self.store.create_password_reset_token(
            PasswordResetToken(
                id=new_id(),
                user_id=user.id,
                token=secrets.token_urlsafe(32),
                expires_at=now + timedelta(minutes=self.settings.password_reset_ttl_minutes),
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=now,
            )
        )
        self.security_log.log(
            "password_reset_requested",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity.INFO,
        )
        await send_best_effort(
            "password_reset",
            self.notifier.send_password_reset_email,
            user.email,
            record.token,
        )
        return RESET_REQUESTED

    async def complete_reset(
        self,
        token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Set a new password, clear any lock and revoke every session of the user.

        Returns the number of sessions revoked.
        """
        record = self.store.get_password_reset_token(token) if token else None
        if record is None:
            raise ValidationError("Invalid or expired reset token", error_code="invalid_token")
        if record.used_at is not None:
            raise ValidationError(
                "This reset link has already been used", error_code="token_already_used"
            )
        now = self._now()
        if now >= record.expires_at:
            raise ValidationError(
                "This reset link has expired. Please request a new one.",
                error_code="token_expired",
            )
        problems = password_problems(new_password)
        if problems:
            raise ValidationError(
                problems[0], error_code="weak_password", detail={"problems": problems}
            )
        user = self.store.get_user(record.user_id)
        if user is None:
            raise ValidationError("Invalid or expired reset token", error_code="invalid_token")

        try:
            revoked = self.store.complete_password_reset(
                user.id, self.passwords.hash(new_password), record.id, now
            )
        except ConstraintViolation as exc:
            # Lost a race with another completion of the same token
            raise ValidationError(
                "This reset link has already been used", error_code="token_already_used"
            ) from exc

        self.security_log.log(
            "password_reset_completed",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity.WARNING,
            details={"sessions_revoked": revoked},
        )
        await send_best_effort(
            "password_changed", self.notifier.send_password_changed_email, user.email
        )
        return revoked


__all__ = ["RESET_REQUESTED", "PasswordResetService"]
