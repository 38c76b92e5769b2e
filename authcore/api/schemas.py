from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authcore.logging import get_correlation_id


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is stable and clients branch on it."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _EmailBody(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(_EmailBody):
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False
    device_info: Optional[Dict[str, Any]] = None


class LoginResponse(BaseModel):
    requires_mfa: bool = False
    mfa_token: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    user: Optional[Dict[str, Any]] = None


class MfaChallengeRequest(BaseModel):
    temp_token: str = Field(..., max_length=2048)
    code: str = Field(..., min_length=1, max_length=20)
    is_backup_code: bool = False
    trust_device: bool = False
    device_info: Optional[Dict[str, Any]] = None


class MfaResendRequest(BaseModel):
    temp_token: str = Field(..., max_length=2048)


class MfaResendResponse(BaseModel):
    temp_token: str
    expires_at: datetime


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    session_expires_at: datetime


class MfaSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    qr_code: str
    backup_codes: List[str]


class MfaCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=10)


class MfaDisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class MfaStatusResponse(BaseModel):
    mfa_enabled: bool
    has_backup_codes: bool
    backup_codes_count: int


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class PasswordResetRequest(_EmailBody):
    pass


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=128)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., max_length=256)


class EmailVerificationResend(_EmailBody):
    pass


class MessageResponse(BaseModel):
    message: str


class SessionResponse(BaseModel):
    id: str
    device: Dict[str, Any]
    ip_address: Optional[str] = None
    last_activity_at: datetime
    created_at: datetime
    expires_at: datetime
    is_current: bool = False


class TrustedDeviceResponse(BaseModel):
    id: str
    name: Optional[str] = None
    ip_address: Optional[str] = None
    last_seen_at: datetime
    expires_at: datetime
    created_at: datetime


class LockStatusResponse(BaseModel):
    is_locked: bool
    locked_until: Optional[datetime] = None
    failed_attempts: int
    remaining_attempts: int
