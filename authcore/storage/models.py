from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    email_verified: bool = False
    mfa_enabled: bool = False
    failed_login_attempts: int = 0
    account_locked: bool = False
    locked_until: Optional[datetime] = None
    last_failed_login: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    business_id: Optional[str] = None
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def summary(self) -> Dict[str, Any]:
        """Fields safe to return to the account owner after login."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "business_id": self.business_id,
            "email_verified": self.email_verified,
            "mfa_enabled": self.mfa_enabled,
        }


@dataclass
class Session:
    id: str
    user_id: str
    token: str
    refresh_token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    # Structured dict for new rows; older rows may hold a serialized JSON string
    device_info: Dict[str, Any] | str | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        refresh_token: str,
        ttl: timedelta,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_info: Dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            token=token,
            refresh_token=refresh_token,
            expires_at=now + ttl,
            created_at=now,
            last_activity_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class AuthAttempt:
    id: str
    email: str
    success: bool = False
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    attempt_type: str = "login"
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MfaSecret:
    user_id: str
    secret: str
    verified: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MfaBackupCode:
    id: str
    user_id: str
    code_hash: str
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MfaTempToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    auth_attempt_id: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class TrustedDevice:
    id: str
    user_id: str
    fingerprint: str
    expires_at: datetime
    name: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_seen_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class EmailVerificationToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SecurityEvent:
    id: str
    action: str
    severity: str = "info"
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
