from __future__ import annotations

import copy
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from authcore.logging import get_logger
from authcore.storage.common import SecretCipher, normalize_email
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    AuthAttempt,
    EmailVerificationToken,
    MfaBackupCode,
    MfaSecret,
    MfaTempToken,
    PasswordResetToken,
    SecurityEvent,
    Session,
    TrustedDevice,
    User,
    new_id,
)


def _copies(rows: Iterable) -> list:
    return [copy.deepcopy(row) for row in rows]


class MemoryStore:
    """In-process backing store used by tests and local development.

    Every public method takes ``_data_lock`` so single-row writes and the
    multi-row operations (MFA setup, password reset) are atomic with respect
    to each other. Rows are handed out as copies; callers must write back
    through the store.
    """

    def __init__(self, *, mfa_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.auth_attempts: List[AuthAttempt] = []
        self.mfa_secrets: Dict[str, MfaSecret] = {}
        self.backup_codes: Dict[str, MfaBackupCode] = {}
        self.mfa_temp_tokens: Dict[str, MfaTempToken] = {}
        self.trusted_devices: Dict[str, TrustedDevice] = {}
        self.password_reset_tokens: Dict[str, PasswordResetToken] = {}
        self.email_verification_tokens: Dict[str, EmailVerificationToken] = {}
        self.security_events: List[SecurityEvent] = []
        # RLock so compound operations can call the single-row helpers
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key)

    # users / credentials
    def create_user(
        self,
        email: str,
        *,
        email_verified: bool = False,
        name: Optional[str] = None,
        business_id: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint="app_user_email_key"
                )
            user = User(
                id=new_id(),
                email=normalized,
                email_verified=email_verified,
                name=name,
                business_id=business_id,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def set_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            self.credentials[user_id] = password_hash

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def increment_failed_login(self, user_id: str, at: datetime) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0
            user.failed_login_attempts += 1
            user.last_failed_login = at
            return user.failed_login_attempts

    def reset_failed_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.failed_login_attempts = 0
                user.last_failed_login = None

    def lock_user(self, user_id: str, until: Optional[datetime]) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.account_locked = True
                user.locked_until = until

    def unlock_user(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.account_locked = False
                user.locked_until = None
                user.failed_login_attempts = 0
                user.last_failed_login = None

    def record_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = at

    # auth attempts
    def record_auth_attempt(self, attempt: AuthAttempt) -> AuthAttempt:
        with self._data_lock:
            stored = replace(attempt, email=normalize_email(attempt.email))
            self.auth_attempts.append(stored)
            return replace(stored)

    def mark_auth_attempt_success(
        self, attempt_id: str, user_id: Optional[str] = None
    ) -> None:
        with self._data_lock:
            for attempt in self.auth_attempts:
                if attempt.id == attempt_id:
                    attempt.success = True
                    attempt.failure_reason = None
                    if user_id:
                        attempt.user_id = user_id
                    return

    def update_auth_attempt_failure(
        self, attempt_id: str, reason: str, user_id: Optional[str] = None
    ) -> None:
        with self._data_lock:
            for attempt in self.auth_attempts:
                if attempt.id == attempt_id:
                    attempt.failure_reason = reason
                    if user_id:
                        attempt.user_id = user_id
                    return

    def count_failed_auth_attempts(self, email: str, since: datetime) -> int:
        normalized = normalize_email(email)
        with self._data_lock:
            return sum(
                1
                for attempt in self.auth_attempts
                if attempt.email == normalized
                and not attempt.success
                and attempt.attempt_type == "login"
                and attempt.created_at >= since
            )

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": session.user_id})
            if any(s.token == session.token for s in self.sessions.values()):
                raise ConstraintViolation("duplicate session token", {"field": "token"})
            stored = replace(session, device_info=copy.deepcopy(session.device_info))
            self.sessions[stored.id] = stored
            return copy.deepcopy(stored)

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            found = next((s for s in self.sessions.values() if s.token == token), None)
            return copy.deepcopy(found) if found else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            found = next(
                (s for s in self.sessions.values() if s.refresh_token == refresh_token),
                None,
            )
            return copy.deepcopy(found) if found else None

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session:
                session.last_activity_at = at

    def rotate_session_tokens(
        self, session_id: str, token: str, refresh_token: str, at: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return None
            session.token = token
            session.refresh_token = refresh_token
            session.last_activity_at = at
            return copy.deepcopy(session)

    def delete_session_by_token(self, token: str) -> bool:
        with self._data_lock:
            for session_id, session in list(self.sessions.items()):
                if session.token == token:
                    del self.sessions[session_id]
                    return True
            return False

    def delete_session(self, session_id: str, user_id: Optional[str] = None) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or (user_id is not None and session.user_id != user_id):
                return False
            del self.sessions[session_id]
            return True

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            return self._delete_user_sessions_locked(user_id)

    def _delete_user_sessions_locked(self, user_id: str) -> int:
        doomed = [sid for sid, s in self.sessions.items() if s.user_id == user_id]
        for session_id in doomed:
            del self.sessions[session_id]
        return len(doomed)

    def list_user_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            rows = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.expires_at > now
            ]
            rows.sort(key=lambda s: s.last_activity_at, reverse=True)
            return _copies(rows)

    def find_active_session(
        self,
        user_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> Optional[Session]:
        with self._data_lock:
            found = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.user_id == user_id
                    and s.ip_address == ip_address
                    and s.user_agent == user_agent
                    and s.expires_at > now
                ),
                None,
            )
            return copy.deepcopy(found) if found else None

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [sid for sid, s in self.sessions.items() if s.expires_at <= now]
            for session_id in doomed:
                del self.sessions[session_id]
            return len(doomed)

    # mfa secrets / backup codes
    def replace_mfa_setup(
        self, user_id: str, secret: str, code_hashes: Sequence[str]
    ) -> MfaSecret:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            record = MfaSecret(
                user_id=user_id, secret=self._cipher.encrypt(secret), verified=False
            )
            self.mfa_secrets[user_id] = record
            self._replace_backup_codes_locked(user_id, code_hashes)
            return replace(record, secret=secret)

    def get_mfa_secret(self, user_id: str) -> Optional[MfaSecret]:
        with self._data_lock:
            record = self.mfa_secrets.get(user_id)
            if not record:
                return None
            plaintext = self._cipher.decrypt(record.secret)
            if plaintext is None:
                return None
            return replace(record, secret=plaintext)

    def confirm_mfa_setup(self, user_id: str) -> bool:
        with self._data_lock:
            record = self.mfa_secrets.get(user_id)
            user = self.users.get(user_id)
            if not record or not user:
                return False
            record.verified = True
            user.mfa_enabled = True
            return True

    def list_backup_codes(self, user_id: str, *, unused_only: bool = True) -> List[MfaBackupCode]:
        with self._data_lock:
            return _copies(
                code
                for code in self.backup_codes.values()
                if code.user_id == user_id and (not unused_only or code.used_at is None)
            )

    def consume_backup_code(self, code_id: str, at: datetime) -> bool:
        with self._data_lock:
            code = self.backup_codes.get(code_id)
            if not code or code.used_at is not None:
                return False
            code.used_at = at
            return True

    def replace_backup_codes(self, user_id: str, code_hashes: Sequence[str]) -> None:
        with self._data_lock:
            self._replace_backup_codes_locked(user_id, code_hashes)

    def _replace_backup_codes_locked(self, user_id: str, code_hashes: Sequence[str]) -> None:
        for code_id in [cid for cid, c in self.backup_codes.items() if c.user_id == user_id]:
            del self.backup_codes[code_id]
        for code_hash in code_hashes:
            code = MfaBackupCode(id=new_id(), user_id=user_id, code_hash=code_hash)
            self.backup_codes[code.id] = code

    def disable_mfa(self, user_id: str) -> None:
        with self._data_lock:
            self.mfa_secrets.pop(user_id, None)
            self._replace_backup_codes_locked(user_id, [])
            for device_id in [
                did for did, d in self.trusted_devices.items() if d.user_id == user_id
            ]:
                del self.trusted_devices[device_id]
            user = self.users.get(user_id)
            if user:
                user.mfa_enabled = False

    # mfa temp tokens
    def create_mfa_temp_token(self, token: MfaTempToken) -> MfaTempToken:
        with self._data_lock:
            self.mfa_temp_tokens[token.token] = replace(token)
            return replace(token)

    def get_mfa_temp_token(self, token: str) -> Optional[MfaTempToken]:
        with self._data_lock:
            found = self.mfa_temp_tokens.get(token)
            return replace(found) if found else None

    def mark_mfa_temp_token_used(self, token_id: str, at: datetime) -> bool:
        with self._data_lock:
            for record in self.mfa_temp_tokens.values():
                if record.id == token_id:
                    if record.used_at is not None:
                        return False
                    record.used_at = at
                    return True
            return False

    def replace_mfa_temp_token(
        self, old_token_id: str, new_token: MfaTempToken, at: datetime
    ) -> bool:
        with self._data_lock:
            if not self.mark_mfa_temp_token_used(old_token_id, at):
                return False
            self.mfa_temp_tokens[new_token.token] = replace(new_token)
            return True

    # trusted devices
    def upsert_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._data_lock:
            for existing in self.trusted_devices.values():
                if (
                    existing.user_id == device.user_id
                    and existing.fingerprint == device.fingerprint
                ):
                    existing.expires_at = device.expires_at
                    existing.last_seen_at = device.last_seen_at
                    existing.ip_address = device.ip_address
                    existing.user_agent = device.user_agent
                    existing.name = device.name
                    return replace(existing)
            self.trusted_devices[device.id] = replace(device)
            return replace(device)

    def find_trusted_device(
        self, user_id: str, fingerprint: str, now: datetime
    ) -> Optional[TrustedDevice]:
        with self._data_lock:
            found = next(
                (
                    d
                    for d in self.trusted_devices.values()
                    if d.user_id == user_id
                    and d.fingerprint == fingerprint
                    and d.expires_at > now
                ),
                None,
            )
            return replace(found) if found else None

    def touch_trusted_device(self, device_id: str, at: datetime) -> None:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if device:
                device.last_seen_at = at

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._data_lock:
            rows = [d for d in self.trusted_devices.values() if d.user_id == user_id]
            rows.sort(key=lambda d: d.last_seen_at, reverse=True)
            return _copies(rows)

    def delete_trusted_device(self, device_id: str, user_id: str) -> bool:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if not device or device.user_id != user_id:
                return False
            del self.trusted_devices[device_id]
            return True

    # password reset
    def create_password_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            for key in [
                k
                for k, t in self.password_reset_tokens.items()
                if t.user_id == token.user_id and t.used_at is None
            ]:
                del self.password_reset_tokens[key]
            self.password_reset_tokens[token.token] = replace(token)
            return replace(token)

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            found = self.password_reset_tokens.get(token)
            return replace(found) if found else None

    def complete_password_reset(
        self, user_id: str, password_hash: str, token_id: str, at: datetime
    ) -> int:
        with self._data_lock:
            record = next(
                (t for t in self.password_reset_tokens.values() if t.id == token_id), None
            )
            if not record or record.used_at is not None or user_id not in self.users:
                raise ConstraintViolation(
                    "password reset token not available", {"token_id": token_id}
                )
            self.credentials[user_id] = password_hash
            self.unlock_user(user_id)
            record.used_at = at
            return self._delete_user_sessions_locked(user_id)

    # email verification
    def create_email_verification_token(
        self, token: EmailVerificationToken
    ) -> EmailVerificationToken:
        with self._data_lock:
            for key in [
                k
                for k, t in self.email_verification_tokens.items()
                if t.user_id == token.user_id and t.verified_at is None
            ]:
                del self.email_verification_tokens[key]
            self.email_verification_tokens[token.token] = replace(token)
            return replace(token)

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]:
        with self._data_lock:
            found = self.email_verification_tokens.get(token)
            return replace(found) if found else None

    def complete_email_verification(
        self, user_id: str, token_id: str, at: datetime
    ) -> bool:
        with self._data_lock:
            record = next(
                (t for t in self.email_verification_tokens.values() if t.id == token_id),
                None,
            )
            user = self.users.get(user_id)
            if not record or record.verified_at is not None or not user:
                return False
            record.verified_at = at
            user.email_verified = True
            return True

    # security events
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._data_lock:
            stored = replace(event, details=copy.deepcopy(event.details))
            self.security_events.append(stored)
            return copy.deepcopy(stored)

    def list_security_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        severity: Optional[str] = None,
        limit: int = 50,
    ) -> List[SecurityEvent]:
        with self._data_lock:
            rows = [
                e
                for e in self.security_events
                if (user_id is None or e.user_id == user_id)
                and (action is None or e.action == action)
                and (severity is None or e.severity == severity)
            ]
            rows.sort(key=lambda e: e.created_at, reverse=True)
            return _copies(rows[:limit])

    def delete_security_events_before(
        self, cutoff: datetime, *, keep_critical: bool = True
    ) -> int:
        with self._data_lock:
            kept = [
                e
                for e in self.security_events
                if e.created_at >= cutoff or (keep_critical and e.severity == "critical")
            ]
            removed = len(self.security_events) - len(kept)
            self.security_events = kept
            return removed

    def ping(self) -> bool:
        return True


__all__ = ["MemoryStore"]
