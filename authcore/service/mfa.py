from __future__ import annotations

import base64
import hashlib
import hmac
import io
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Sequence

import pyotp
import qrcode

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import MFA_ERROR_MESSAGES, MfaError, MfaErrorCode
from authcore.service.passwords import PasswordService
from authcore.service.security_log import SecurityLogger, Severity
from authcore.storage.models import MfaBackupCode, MfaSecret, User

logger = get_logger(__name__)

# One 30s step either side of "now" to absorb phone clock drift
TOTP_VALID_WINDOW = 1


class MfaStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def replace_mfa_setup(
        self, user_id: str, secret: str, code_hashes: Sequence[str]
    ) -> MfaSecret: ...

    def get_mfa_secret(self, user_id: str) -> Optional[MfaSecret]: ...

    def confirm_mfa_setup(self, user_id: str) -> bool: ...

    def list_backup_codes(
        self, user_id: str, *, unused_only: bool = True
    ) -> List[MfaBackupCode]: ...

    def consume_backup_code(self, code_id: str, at: datetime) -> bool: ...

    def replace_backup_codes(self, user_id: str, code_hashes: Sequence[str]) -> None: ...

    def disable_mfa(self, user_id: str) -> None: ...


@dataclass(frozen=True)
class MfaSetupResult:
    secret: str
    otpauth_uri: str
    qr_code: str
    backup_codes: List[str]


@dataclass(frozen=True)
class MfaResult:
    success: bool
    error: Optional[MfaErrorCode] = None

    @property
    def message(self) -> Optional[str]:
        return MFA_ERROR_MESSAGES[self.error] if self.error else None

    @classmethod
    def ok(cls) -> "MfaResult":
        return cls(success=True)

    @classmethod
    def fail(cls, code: MfaErrorCode) -> "MfaResult":
        return cls(success=False, error=code)


@dataclass(frozen=True)
class MfaStatus:
    mfa_enabled: bool
    has_backup_codes: bool
    backup_codes_count: int


def generate_backup_codes(count: int) -> List[str]:
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def hash_backup_code(code: str) -> str:
    normalized = code.strip().upper().replace("-", "").replace(" ", "")
    return hashlib.sha256(normalized.encode()).hexdigest()


def qr_code_data_url(uri: str) -> str:
    """Render ``uri`` as a PNG data URL the UI can drop into an <img>."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("utf-8")


def _normalize_otp(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    code = code.strip().replace(" ", "")
    if len(code) != 6 or not code.isdigit():
        return None
    return code


class MfaService:
    """TOTP enrolment, second-factor verification and backup codes."""

    def __init__(
        self,
        store: MfaStore,
        passwords: PasswordService,
        security_log: SecurityLogger,
        settings: Settings,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.security_log = security_log
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _check_totp(self, secret: str, code: Optional[str]) -> bool:
        normalized = _normalize_otp(code)
        if normalized is None:
            return False
        return pyotp.TOTP(secret).verify(normalized, valid_window=TOTP_VALID_WINDOW)

    async def setup(self, user_id: str, email: Optional[str] = None) -> MfaSetupResult:
        """Start enrolment: fresh unverified secret plus a fresh batch of backup codes.

        Any earlier unconfirmed secret and every earlier backup code are replaced
        in one store operation.
        """
        user = self.store.get_user(user_id)
        if not user:
            raise MfaError(MfaErrorCode.USER_NOT_FOUND)
        if user.mfa_enabled:
            raise MfaError(MfaErrorCode.MFA_ALREADY_ENABLED)

        secret = pyotp.random_base32()
        backup_codes = generate_backup_codes(self.settings.backup_code_count)
        self.store.replace_mfa_setup(
            user_id, secret, [hash_backup_code(code) for code in backup_codes]
        )
        uri = pyotp.TOTP(secret).provisioning_uri(
            name=email or user.email, issuer_name=self.settings.mfa_issuer_name
        )
        self.security_log.log(
            "mfa_setup_initiated", user_id=user_id, severity=Severity.INFO
        )
        return MfaSetupResult(
            secret=secret,
            otpauth_uri=uri,
            qr_code=qr_code_data_url(uri),
            backup_codes=backup_codes,
        )

    async def verify_setup(self, user_id: str, code: str) -> MfaResult:
        record = self.store.get_mfa_secret(user_id)
        if not record:
            return MfaResult.fail(MfaErrorCode.MFA_NOT_SETUP)
        if not self._check_totp(record.secret, code):
            self.security_log.log(
                "mfa_verification_failed",
                user_id=user_id,
                severity=Severity.WARNING,
                details={"stage": "setup"},
            )
            return MfaResult.fail(MfaErrorCode.INVALID_TOKEN)
        if not self.store.confirm_mfa_setup(user_id):
            return MfaResult.fail(MfaErrorCode.MFA_NOT_SETUP)
        logger.info("mfa_enabled", user_id=user_id)
        self.security_log.log("mfa_enabled", user_id=user_id, severity=Severity.INFO)
        return MfaResult.ok()

    async def verify_token(self, user_id: str, code: str) -> MfaResult:
        user = self.store.get_user(user_id)
        record = self.store.get_mfa_secret(user_id)
        if not user or not user.mfa_enabled or not record or not record.verified:
            return MfaResult.fail(MfaErrorCode.INVALID_TOKEN)
        if not self._check_totp(record.secret, code):
            logger.warning("mfa_token_rejected", user_id=user_id)
            return MfaResult.fail(MfaErrorCode.INVALID_TOKEN)
        return MfaResult.ok()

    async def verify_backup_code(self, user_id: str, code: str) -> MfaResult:
        if not code:
            return MfaResult.fail(MfaErrorCode.INVALID_BACKUP_CODE)
        candidate = hash_backup_code(code)
        for stored in self.store.list_backup_codes(user_id, unused_only=True):
            if hmac.compare_digest(stored.code_hash, candidate):
                # Conditional write: a concurrent use of the same code loses here
                if self.store.consume_backup_code(stored.id, self._now()):
                    remaining = len(self.store.list_backup_codes(user_id))
                    self.security_log.log(
                        "mfa_backup_code_used",
                        user_id=user_id,
                        severity=Severity.WARNING,
                        details={"remaining_codes": remaining},
                    )
                    return MfaResult.ok()
                break
        self.security_log.log(
            "mfa_backup_code_failed", user_id=user_id, severity=Severity.WARNING
        )
        return MfaResult.fail(MfaErrorCode.INVALID_BACKUP_CODE)

    async def get_status(self, user_id: str) -> MfaStatus:
        user = self.store.get_user(user_id)
        count = len(self.store.list_backup_codes(user_id)) if user else 0
        return MfaStatus(
            mfa_enabled=bool(user and user.mfa_enabled),
            has_backup_codes=count > 0,
            backup_codes_count=count,
        )

    async def regenerate_backup_codes(self, user_id: str) -> List[str]:
        user = self.store.get_user(user_id)
        if not user or not user.mfa_enabled:
            raise MfaError(MfaErrorCode.MFA_NOT_ENABLED)
        codes = generate_backup_codes(self.settings.backup_code_count)
        self.store.replace_backup_codes(user_id, [hash_backup_code(c) for c in codes])
        self.security_log.log(
            "mfa_backup_codes_regenerated", user_id=user_id, severity=Severity.WARNING
        )
        return codes

    async def disable(
        self,
        user_id: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Turn MFA off after re-checking the password; trusted devices go with it."""
        user = self.store.get_user(user_id)
        if not user or not user.mfa_enabled:
            raise MfaError(MfaErrorCode.MFA_NOT_ENABLED)
        if not self.passwords.verify(user, password):
            raise MfaError(MfaErrorCode.INVALID_PASSWORD)
        self.store.disable_mfa(user_id)
        self.security_log.log(
            "mfa_disabled",
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity.WARNING,
        )


__all__ = [
    "TOTP_VALID_WINDOW",
    "MfaSetupResult",
    "MfaResult",
    "MfaStatus",
    "MfaService",
    "generate_backup_codes",
    "hash_backup_code",
    "qr_code_data_url",
]
