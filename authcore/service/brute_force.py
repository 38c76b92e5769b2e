from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from authcore.logging import get_logger
from authcore.service.accounts import Known, UserLookup, lookup_or_unknown
from authcore.service.security_log import SecurityLogger, Severity
from authcore.storage.models import User

logger = get_logger(__name__)

MAX_FAILED_ATTEMPTS = 5

# (attempts ceiling, lock duration); counts above the last ceiling get the cap
_LOCK_STEPS = (
    (7, timedelta(minutes=30)),
    (10, timedelta(hours=1)),
    (15, timedelta(hours=2)),
)
MAX_LOCK_DURATION = timedelta(hours=24)

# (attempts floor, delay ms), checked from the top
_DELAY_STEPS = ((5, 10_000), (4, 5_000), (3, 2_000))


class GuardStore(UserLookup, Protocol):
    def increment_failed_login(self, user_id: str, at: datetime) -> int: ...

    def reset_failed_login(self, user_id: str) -> None: ...

    def lock_user(self, user_id: str, until: Optional[datetime]) -> None: ...

    def unlock_user(self, user_id: str) -> None: ...

    def count_failed_auth_attempts(self, email: str, since: datetime) -> int: ...


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    is_locked: bool
    locked_until: Optional[datetime]
    remaining_attempts: Optional[int]


@dataclass(frozen=True)
class LockStatus:
    is_locked: bool
    locked_until: Optional[datetime]
    failed_attempts: int
    remaining_attempts: int


def lock_duration_for(failed_attempts: int) -> timedelta:
    """Lock window for an account at ``failed_attempts``; never shrinks as the count grows."""
    for ceiling, duration in _LOCK_STEPS:
        if failed_attempts <= ceiling:
            return duration
    return MAX_LOCK_DURATION


def calculate_progressive_delay(failed_attempts: int) -> int:
    """Milliseconds to stall a login at ``failed_attempts`` prior failures."""
    for floor, delay_ms in _DELAY_STEPS:
        if failed_attempts >= floor:
            return delay_ms
    return 0


class BruteForceGuard:
    """Per-account failure counting, progressive delay and lockout."""

    def __init__(
        self,
        store: GuardStore,
        security_log: SecurityLogger,
        *,
        max_failed_attempts: int = MAX_FAILED_ATTEMPTS,
    ) -> None:
        self.store = store
        self.security_log = security_log
        self.max_failed_attempts = max_failed_attempts

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _remaining(self, failed_attempts: int) -> int:
        return max(0, self.max_failed_attempts - failed_attempts)

    def lock_active(self, user: User, now: Optional[datetime] = None) -> bool:
        """Unexpired lock on ``user``; no ``locked_until`` means manual unlock only."""
        if not user.account_locked:
            return False
        return user.locked_until is None or user.locked_until > (now or self._now())

    async def check_and_lock(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> GuardDecision:
        account = lookup_or_unknown(self.store, email)
        if not isinstance(account, Known):
            # Same shape as a clean real account so the caller cannot tell them apart
            return GuardDecision(
                allowed=False,
                is_locked=False,
                locked_until=None,
                remaining_attempts=self.max_failed_attempts,
            )
        user = account.user
        now = self._now()

        if user.account_locked:
            if self.lock_active(user, now):
                return GuardDecision(
                    allowed=False,
                    is_locked=True,
                    locked_until=user.locked_until,
                    remaining_attempts=None,
                )
            self.store.unlock_user(user.id)
            logger.info("account_auto_unlocked", user_id=user.id)
            self.security_log.log(
                "account_auto_unlocked",
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.INFO,
                details={"expired_lock": user.locked_until.isoformat()},
            )
            return GuardDecision(
                allowed=True,
                is_locked=False,
                locked_until=None,
                remaining_attempts=self.max_failed_attempts,
            )

        if user.failed_login_attempts >= self.max_failed_attempts:
            locked_until = self.lock_account(
                user,
                user.failed_login_attempts,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return GuardDecision(
                allowed=False,
                is_locked=True,
                locked_until=locked_until,
                remaining_attempts=None,
            )

        return GuardDecision(
            allowed=True,
            is_locked=False,
            locked_until=None,
            remaining_attempts=self._remaining(user.failed_login_attempts),
        )

    def lock_account(
        self,
        user: User,
        failed_attempts: int,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> datetime:
        """Lock ``user`` for the progressive window; safe to race with another locker."""
        duration = lock_duration_for(failed_attempts)
        locked_until = self._now() + duration
        self.store.lock_user(user.id, locked_until)
        logger.warning(
            "account_locked",
            user_id=user.id,
            failed_attempts=failed_attempts,
            locked_until=locked_until.isoformat(),
        )
        self.security_log.log(
            "account_locked",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity.CRITICAL,
            details={
                "reason": "too_many_failed_attempts",
                "failed_attempts": failed_attempts,
                "lock_duration_minutes": int(duration.total_seconds() // 60),
            },
        )
        return locked_until

    async def increment_failed_attempts(self, email: str) -> Optional[int]:
        """Bump the counter for ``email``; None when no such account exists."""
        account = lookup_or_unknown(self.store, email)
        if not isinstance(account, Known):
            return None
        return self.increment_for_user(account.user.id)

    def increment_for_user(self, user_id: str) -> int:
        return self.store.increment_failed_login(user_id, self._now())

    async def reset_failed_attempts(self, email: str) -> None:
        account = lookup_or_unknown(self.store, email)
        if isinstance(account, Known):
            self.reset_for_user(account.user.id)

    def reset_for_user(self, user_id: str) -> None:
        self.store.reset_failed_login(user_id)

    async def should_delay_login(self, email: str) -> int:
        account = lookup_or_unknown(self.store, email)
        if not isinstance(account, Known):
            return 0
        return calculate_progressive_delay(account.user.failed_login_attempts)

    async def get_account_lock_status(self, email: str) -> LockStatus:
        """Read-only view; an elapsed lock reads as unlocked but is not cleared here."""
        account = lookup_or_unknown(self.store, email)
        if not isinstance(account, Known):
            return LockStatus(
                is_locked=False,
                locked_until=None,
                failed_attempts=0,
                remaining_attempts=self.max_failed_attempts,
            )
        user = account.user
        lock_active = self.lock_active(user)
        if user.account_locked and not lock_active:
            return LockStatus(
                is_locked=False,
                locked_until=None,
                failed_attempts=0,
                remaining_attempts=self.max_failed_attempts,
            )
        return LockStatus(
            is_locked=lock_active,
            locked_until=user.locked_until if lock_active else None,
            failed_attempts=user.failed_login_attempts,
            remaining_attempts=self._remaining(user.failed_login_attempts),
        )

    async def unlock_account(self, email: str) -> bool:
        account = lookup_or_unknown(self.store, email)
        if not isinstance(account, Known):
            return False
        self.store.unlock_user(account.user.id)
        logger.info("account_unlocked", user_id=account.user.id)
        self.security_log.log(
            "account_unlocked",
            user_id=account.user.id,
            ip_address="system",
            severity=Severity.INFO,
            details={"reason": "manual_unlock"},
        )
        return True

    async def recent_failed_attempts(
        self, email: str, window: timedelta = timedelta(hours=1)
    ) -> int:
        return self.store.count_failed_auth_attempts(email, self._now() - window)


__all__ = [
    "MAX_FAILED_ATTEMPTS",
    "MAX_LOCK_DURATION",
    "GuardDecision",
    "LockStatus",
    "BruteForceGuard",
    "calculate_progressive_delay",
    "lock_duration_for",
]
