from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.accounts import Known, UserLookup, lookup_or_unknown
from authcore.service.email import Notifier, send_best_effort
from authcore.service.errors import NotFoundError, ValidationError
from authcore.service.security_log import SecurityLogger, Severity
from authcore.storage.models import EmailVerificationToken, User, new_id

logger = get_logger(__name__)

VERIFICATION_RESENT = (
    "If an account exists with this email and is not yet verified, "
    "a verification link has been sent."
)


class VerificationStore(UserLookup, Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_email_verification_token(
        self, token: EmailVerificationToken
    ) -> EmailVerificationToken: ...

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]: ...

    def complete_email_verification(
        self, user_id: str, token_id: str, at: datetime
    ) -> bool: ...


class EmailVerificationService:
    def __init__(
        self,
        store: VerificationStore,
        notifier: Notifier,
        security_log: SecurityLogger,
        settings: Settings,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.security_log = security_log
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def send_verification(self, user_id: str) -> EmailVerificationToken:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.email_verified:
            raise ValidationError("Email is already verified", error_code="already_verified")
        now = self._now()
        record = self.store.create_email_verification_token(
            EmailVerificationToken(
                id=new_id(),
                user_id=user.id,
                token=secrets.token_urlsafe(32),
                expires_at=now + timedelta(hours=self.settings.email_verification_ttl_hours),
                created_at=now,
            )
        )
        await send_best_effort(
            "email_verification",
            self.notifier.send_verification_email,
            user.email,
            record.token,
        )
        logger.info("email_verification_sent", user_id=user.id)
        return record

    async def verify(self, token: str) -> User:
        record = self.store.get_email_verification_token(token) if token else None
        if record is None:
            raise ValidationError("Invalid verification token", error_code="invalid_token")
        if record.verified_at is not None:
            raise ValidationError(
                "Email has already been verified", error_code="token_already_used"
            )
        now = self._now()
        if now >= record.expires_at:
            raise ValidationError(
                "Verification link has expired. Please request a new one.",
                error_code="token_expired",
            )
        if not self.store.complete_email_verification(record.user_id, record.id, now):
            raise ValidationError(
                "Email has already been verified", error_code="token_already_used"
            )
        self.security_log.log(
            "email_verified", user_id=record.user_id, severity=Severity.INFO
        )
        user = self.store.get_user(record.user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def resend(self, email: str) -> str:
        account = lookup_or_unknown(self.store, email)
        if isinstance(account, Known) and not account.user.email_verified:
            await self.send_verification(account.user.id)
        return VERIFICATION_RESENT


__all__ = ["VERIFICATION_RESENT", "EmailVerificationService"]
