from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    clients branch on. ``message`` is safe to show to the caller; anything
    internal belongs in the chained ``__cause__`` and in the logs.
    """

    status_code: int = 500
    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConfigError(ServiceError):
    """Required configuration is absent or unusable (500)."""
    status_code = 500
    error_code = "config_error"


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenError(AuthenticationError):
    """Base for bearer/refresh token failures (401)."""


class MalformedTokenError(TokenError):
    """Signature or structure invalid; never retried."""
    error_code = "invalid_token"


class ExpiredTokenError(TokenError):
    """Token is authentic but past its ``exp`` claim."""
    error_code = "token_expired"


class WrongTokenTypeError(TokenError):
    """An access token was presented where a refresh token was required, or vice versa."""
    error_code = "wrong_token_type"


class AccountLockedError(ServiceError):
    """Account is locked; ``locked_until`` is None for a manual-unlock lock (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(
        self,
        message: str = "Account is temporarily locked. Please try again later.",
        *,
        locked_until: Optional[datetime] = None,
    ) -> None:
        detail = {"locked_until": locked_until.isoformat()} if locked_until else {}
        super().__init__(message, detail=detail)
        self.locked_until = locked_until


class SessionError(AuthenticationError):
    """Session or temp-token lookup failed; ``reason`` is one of the constants below."""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"

    _MESSAGES = {
        NOT_FOUND: "Session not found",
        EXPIRED: "Session expired",
        ALREADY_USED: "Session token already used",
    }

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or self._MESSAGES.get(reason, "Session error"),
            error_code=f"session_{reason}",
        )
        self.reason = reason

    @property
    def recoverable(self) -> bool:
        """True when signing in again resolves the failure."""
        return self.reason != self.ALREADY_USED


class SessionCreationError(ServiceError):
    """Persisting a new session failed (500)."""
    status_code = 500
    error_code = "session_creation_failed"


class MfaErrorCode(str, Enum):
    INVALID_TEMP_TOKEN = "INVALID_TEMP_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_ALREADY_USED = "TOKEN_ALREADY_USED"
    INVALID_TOKEN = "INVALID_TOKEN"
    INVALID_BACKUP_CODE = "INVALID_BACKUP_CODE"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    MFA_ALREADY_ENABLED = "MFA_ALREADY_ENABLED"
    MFA_NOT_ENABLED = "MFA_NOT_ENABLED"
    MFA_NOT_SETUP = "MFA_NOT_SETUP"
    INVALID_PASSWORD = "INVALID_PASSWORD"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"


MFA_ERROR_MESSAGES = {
    MfaErrorCode.INVALID_TEMP_TOKEN: "Invalid or expired verification session",
    MfaErrorCode.TOKEN_EXPIRED: "Verification session has expired. Please sign in again.",
    MfaErrorCode.TOKEN_ALREADY_USED: "Verification session has already been used",
    MfaErrorCode.INVALID_TOKEN: "Invalid verification code",
    MfaErrorCode.INVALID_BACKUP_CODE: "Invalid backup code",
    MfaErrorCode.USER_NOT_FOUND: "User not found",
    MfaErrorCode.MFA_ALREADY_ENABLED: "Two-factor authentication is already enabled",
    MfaErrorCode.MFA_NOT_ENABLED: "Two-factor authentication is not enabled",
    MfaErrorCode.MFA_NOT_SETUP: "Two-factor authentication has not been set up",
    MfaErrorCode.INVALID_PASSWORD: "Invalid password",
    MfaErrorCode.ACCOUNT_LOCKED: "Account is temporarily locked. Please try again later.",
}

_MFA_STATUS = {
    MfaErrorCode.INVALID_TEMP_TOKEN: 401,
    MfaErrorCode.TOKEN_EXPIRED: 401,
    MfaErrorCode.TOKEN_ALREADY_USED: 401,
    MfaErrorCode.USER_NOT_FOUND: 404,
    MfaErrorCode.MFA_ALREADY_ENABLED: 409,
    MfaErrorCode.INVALID_PASSWORD: 401,
    MfaErrorCode.ACCOUNT_LOCKED: 423,
}


class MfaError(ServiceError):
    """MFA failure carrying a stable ``MfaErrorCode``."""
    status_code = 400

    def __init__(self, code: MfaErrorCode, message: Optional[str] = None) -> None:
        super().__init__(
            message or MFA_ERROR_MESSAGES[code],
            status_code=_MFA_STATUS.get(code, 400),
            error_code=code.value,
        )
        self.code = code


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


__all__ = [
    "ServiceError",
    "ConfigError",
    "ValidationError",
    "AuthenticationError",
    "TokenError",
    "MalformedTokenError",
    "ExpiredTokenError",
    "WrongTokenTypeError",
    "AccountLockedError",
    "SessionError",
    "SessionCreationError",
    "MfaErrorCode",
    "MFA_ERROR_MESSAGES",
    "MfaError",
    "NotFoundError",
]
