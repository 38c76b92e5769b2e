from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

SCHEMA_PATH = Path(__file__).resolve().parents[2] / "sql" / "001_auth_core.sql"

_REQUIRED_TABLES = [
    "app_user",
    "user_auth_credential",
    "auth_session",
    "auth_attempt",
    "user_mfa_secret",
    "mfa_backup_code",
    "mfa_temp_token",
    "trusted_device",
    "password_reset_token",
    "email_verification_token",
    "security_event",
]


def _str_id(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        email_verified=bool(row.get("email_verified", False)),
        mfa_enabled=bool(row.get("mfa_enabled", False)),
        failed_login_attempts=int(row.get("failed_login_attempts") or 0),
        account_locked=bool(row.get("account_locked", False)),
        locked_until=row.get("locked_until"),
        last_failed_login=row.get("last_failed_login"),
        last_login_at=row.get("last_login_at"),
        business_id=row.get("business_id"),
        name=row.get("name"),
        created_at=row["created_at"],
    )


def _session_from_row(row: Dict[str, Any]) -> Session:
    # device_info is JSONB today; rows written by older releases stored text
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token=row["token"],
        refresh_token=row["refresh_token"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        last_activity_at=row["last_activity_at"],
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        device_info=row.get("device_info"),
    )


def _temp_token_from_row(row: Dict[str, Any]) -> MfaTempToken:
    return MfaTempToken(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token=row["token"],
        expires_at=row["expires_at"],
        used_at=row.get("used_at"),
        created_at=row["created_at"],
        auth_attempt_id=str(row["auth_attempt_id"]) if row.get("auth_attempt_id") else None,
    )


def _trusted_device_from_row(row: Dict[str, Any]) -> TrustedDevice:
    return TrustedDevice(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        fingerprint=row["fingerprint"],
        expires_at=row["expires_at"],
        name=row.get("name"),
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        last_seen_at=row["last_seen_at"],
        created_at=row["created_at"],
    )


def _security_event_from_row(row: Dict[str, Any]) -> SecurityEvent:
    details = row.get("details") or {}
    if isinstance(details, str):
        details = json.loads(details)
    return SecurityEvent(
        id=str(row["id"]),
        action=row["action"],
        severity=row.get("severity") or "info",
        user_id=_str_id(row.get("user_id")),
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        details=details,
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed credential, session and audit store.

    Counters are incremented in SQL, never read-modify-written here, and every
    multi-row change runs inside ``conn.transaction()``.
    """

    def __init__(self, dsn: str, *, mfa_encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth_core.sql "
                "(scripts/manage_accounts.py init-db) before serving requests.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @classmethod
    def apply_schema(cls, dsn: str, schema_path: Path = SCHEMA_PATH) -> None:
        """Install the schema without going through the pool (used by the CLI)."""
        import psycopg

        with psycopg.connect(dsn, autocommit=True) as conn:
            conn.execute(schema_path.read_text())

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, email_verified, name, business_id)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), normalized, email_verified, name, business_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint="app_user_email_key"
            )
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return _user_from_row(row) if row else None

    def set_password(self, user_id: str, password_hash: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, last_updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        return row["password_hash"] if row else None

    def increment_failed_login(self, user_id: str, at: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = failed_login_attempts + 1,
                    last_failed_login = %s
                WHERE id = %s
                RETURNING failed_login_attempts
                """,
                (at, user_id),
            ).fetchone()
        return int(row["failed_login_attempts"]) if row else 0

    def reset_failed_login(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = 0, last_failed_login = NULL
                WHERE id = %s
                """,
                (user_id,),
            )

    def lock_user(self, user_id: str, until: Optional[datetime]) -> None:
        # Concurrent lockers may both land here; last write wins with a similar window
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET account_locked = TRUE, locked_until = %s WHERE id = %s",
                (until, user_id),
            )

    def unlock_user(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET account_locked = FALSE,
                    locked_until = NULL,
                    failed_login_attempts = 0,
                    last_failed_login = NULL
                WHERE id = %s
                """,
                (user_id,),
            )

    def record_login(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s", (at, user_id)
            )

    # auth attempts
    def record_auth_attempt(self, attempt: AuthAttempt) -> AuthAttempt:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_attempt (id, email, user_id, success, ip_address, user_agent,
                                          attempt_type, failure_reason, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    normalize_email(attempt.email),
                    attempt.user_id,
                    attempt.success,
                    attempt.ip_address,
                    attempt.user_agent,
                    attempt.attempt_type,
                    attempt.failure_reason,
                    attempt.created_at,
                ),
            )
        return attempt

    def mark_auth_attempt_success(
        self, attempt_id: str, user_id: Optional[str] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_attempt
                SET success = TRUE, failure_reason = NULL, user_id = COALESCE(%s, user_id)
                WHERE id = %s
                """,
                (user_id, attempt_id),
            )

    def update_auth_attempt_failure(
        self, attempt_id: str, reason: str, user_id: Optional[str] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_attempt
                SET failure_reason = %s, user_id = COALESCE(%s, user_id)
                WHERE id = %s
                """,
                (reason, user_id, attempt_id),
            )

    def count_failed_auth_attempts(self, email: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS n FROM auth_attempt
                WHERE email = %s AND success = FALSE AND attempt_type = 'login'
                  AND created_at >= %s
                """,
                (normalize_email(email), since),
            ).fetchone()
        return int(row["n"]) if row else 0

    # sessions
    def create_session(self, session: Session) -> Session:
        device_info = session.device_info
        if isinstance(device_info, dict):
            device_info = json.dumps(device_info)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, token, refresh_token, ip_address,
                                              user_agent, device_info, created_at,
                                              last_activity_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token,
                        session.refresh_token,
                        session.ip_address,
                        session.user_agent,
                        device_info,
                        session.created_at,
                        session.last_activity_at,
                        session.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("duplicate session token", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": session.user_id})
        return session

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token = %s", (token,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token = %s", (refresh_token,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_activity_at = %s WHERE id = %s",
                (at, session_id),
            )

    def rotate_session_tokens(
        self, session_id: str, token: str, refresh_token: str, at: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET token = %s, refresh_token = %s, last_activity_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (token, refresh_token, at, session_id),
            ).fetchone()
        return _session_from_row(row) if row else None

    def delete_session_by_token(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE token = %s", (token,))
            return cur.rowcount > 0

    def delete_session(self, session_id: str, user_id: Optional[str] = None) -> bool:
        with self._connect() as conn:
            if user_id is None:
                cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            else:
                cur = conn.execute(
                    "DELETE FROM auth_session WHERE id = %s AND user_id = %s",
                    (session_id, user_id),
                )
            return cur.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def list_user_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND expires_at > %s
                ORDER BY last_activity_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [_session_from_row(row) for row in rows]

    def find_active_session(
        self,
        user_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s
                  AND ip_address IS NOT DISTINCT FROM %s
                  AND user_agent IS NOT DISTINCT FROM %s
                  AND expires_at > %s
                LIMIT 1
                """,
                (user_id, ip_address, user_agent, now),
            ).fetchone()
        return _session_from_row(row) if row else None

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
            return cur.rowcount

    # mfa secrets / backup codes
    def replace_mfa_setup(
        self, user_id: str, secret: str, code_hashes: Sequence[str]
    ) -> MfaSecret:
        encrypted = self._cipher.encrypt(secret)
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO user_mfa_secret (user_id, secret, verified, created_at)
                    VALUES (%s, %s, FALSE, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret, verified = FALSE, created_at = now()
                    RETURNING created_at
                    """,
                    (user_id, encrypted),
                ).fetchone()
                self._replace_backup_codes(conn, user_id, code_hashes)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        return MfaSecret(
            user_id=user_id, secret=secret, verified=False, created_at=row["created_at"]
        )

    def get_mfa_secret(self, user_id: str) -> Optional[MfaSecret]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_mfa_secret WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        plaintext = self._cipher.decrypt(row["secret"])
        if plaintext is None:
            return None
        return MfaSecret(
            user_id=str(row["user_id"]),
            secret=plaintext,
            verified=bool(row["verified"]),
            created_at=row["created_at"],
        )

    def confirm_mfa_setup(self, user_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "UPDATE user_mfa_secret SET verified = TRUE WHERE user_id = %s", (user_id,)
            )
            if cur.rowcount == 0:
                return False
            conn.execute(
                "UPDATE app_user SET mfa_enabled = TRUE WHERE id = %s", (user_id,)
            )
        return True

    def list_backup_codes(
        self, user_id: str, *, unused_only: bool = True
    ) -> List[MfaBackupCode]:
        query = "SELECT * FROM mfa_backup_code WHERE user_id = %s"
        if unused_only:
            query += " AND used_at IS NULL"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [
            MfaBackupCode(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                code_hash=row["code_hash"],
                used_at=row.get("used_at"),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def consume_backup_code(self, code_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE mfa_backup_code SET used_at = %s WHERE id = %s AND used_at IS NULL",
                (at, code_id),
            )
            return cur.rowcount > 0

    def replace_backup_codes(self, user_id: str, code_hashes: Sequence[str]) -> None:
        with self._connect() as conn, conn.transaction():
            self._replace_backup_codes(conn, user_id, code_hashes)

    @staticmethod
    def _replace_backup_codes(conn, user_id: str, code_hashes: Sequence[str]) -> None:
        conn.execute("DELETE FROM mfa_backup_code WHERE user_id = %s", (user_id,))
        for code_hash in code_hashes:
            conn.execute(
                "INSERT INTO mfa_backup_code (id, user_id, code_hash) VALUES (%s, %s, %s)",
                (new_id(), user_id, code_hash),
            )

    def disable_mfa(self, user_id: str) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute("DELETE FROM user_mfa_secret WHERE user_id = %s", (user_id,))
            conn.execute("DELETE FROM mfa_backup_code WHERE user_id = %s", (user_id,))
            conn.execute("DELETE FROM trusted_device WHERE user_id = %s", (user_id,))
            conn.execute(
                "UPDATE app_user SET mfa_enabled = FALSE WHERE id = %s", (user_id,)
            )

    # mfa temp tokens
    def create_mfa_temp_token(self, token: MfaTempToken) -> MfaTempToken:
        with self._connect() as conn:
            self._insert_temp_token(conn, token)
        return token

    @staticmethod
    def _insert_temp_token(conn, token: MfaTempToken) -> None:
        conn.execute(
            """
            INSERT INTO mfa_temp_token
                (id, user_id, token, expires_at, used_at, created_at, auth_attempt_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.user_id,
                token.token,
                token.expires_at,
                token.used_at,
                token.created_at,
                token.auth_attempt_id,
            ),
        )

    def get_mfa_temp_token(self, token: str) -> Optional[MfaTempToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_temp_token WHERE token = %s", (token,)
            ).fetchone()
        return _temp_token_from_row(row) if row else None

    def mark_mfa_temp_token_used(self, token_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE mfa_temp_token SET used_at = %s WHERE id = %s AND used_at IS NULL",
                (at, token_id),
            )
            return cur.rowcount > 0

    def replace_mfa_temp_token(
        self, old_token_id: str, new_token: MfaTempToken, at: datetime
    ) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "UPDATE mfa_temp_token SET used_at = %s WHERE id = %s AND used_at IS NULL",
                (at, old_token_id),
            )
            if cur.rowcount == 0:
                return False
            self._insert_temp_token(conn, new_token)
        return True

    # trusted devices
    def upsert_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO trusted_device (id, user_id, fingerprint, name, ip_address,
                                            user_agent, expires_at, last_seen_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, fingerprint) DO UPDATE
                SET name = EXCLUDED.name,
                    ip_address = EXCLUDED.ip_address,
                    user_agent = EXCLUDED.user_agent,
                    expires_at = EXCLUDED.expires_at,
                    last_seen_at = EXCLUDED.last_seen_at
                RETURNING *
                """,
                (
                    device.id,
                    device.user_id,
                    device.fingerprint,
                    device.name,
                    device.ip_address,
                    device.user_agent,
                    device.expires_at,
                    device.last_seen_at,
                    device.created_at,
                ),
            ).fetchone()
        return _trusted_device_from_row(row)

    def find_trusted_device(
        self, user_id: str, fingerprint: str, now: datetime
    ) -> Optional[TrustedDevice]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM trusted_device
                WHERE user_id = %s AND fingerprint = %s AND expires_at > %s
                """,
                (user_id, fingerprint, now),
            ).fetchone()
        return _trusted_device_from_row(row) if row else None

    def touch_trusted_device(self, device_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE trusted_device SET last_seen_at = %s WHERE id = %s", (at, device_id)
            )

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM trusted_device WHERE user_id = %s ORDER BY last_seen_at DESC",
                (user_id,),
            ).fetchall()
        return [_trusted_device_from_row(row) for row in rows]

    def delete_trusted_device(self, device_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM trusted_device WHERE id = %s AND user_id = %s",
                (device_id, user_id),
            )
            return cur.rowcount > 0

    # password reset
    def create_password_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "DELETE FROM password_reset_token WHERE user_id = %s AND used_at IS NULL",
                (token.user_id,),
            )
            conn.execute(
                """
                INSERT INTO password_reset_token (id, user_id, token, expires_at,
                                                  ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.user_id,
                    token.token,
                    token.expires_at,
                    token.ip_address,
                    token.user_agent,
                    token.created_at,
                ),
            )
        return token

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return PasswordResetToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

    def complete_password_reset(
        self, user_id: str, password_hash: str, token_id: str, at: datetime
    ) -> int:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                """
                UPDATE password_reset_token SET used_at = %s
                WHERE id = %s AND user_id = %s AND used_at IS NULL
                """,
                (at, token_id, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "password reset token not available", {"token_id": token_id}
                )
            conn.execute(
                """
                INSERT INTO user_auth_credential (user_id, password_hash, last_updated_at)
                VALUES (%s, %s, now())
                ON CONFLICT (user_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash, last_updated_at = now()
                """,
                (user_id, password_hash),
            )
            conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = 0, last_failed_login = NULL,
                    account_locked = FALSE, locked_until = NULL
                WHERE id = %s
                """,
                (user_id,),
            )
            revoked = conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
            ).rowcount
        return revoked

    # email verification
    def create_email_verification_token(
        self, token: EmailVerificationToken
    ) -> EmailVerificationToken:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                DELETE FROM email_verification_token
                WHERE user_id = %s AND verified_at IS NULL
                """,
                (token.user_id,),
            )
            conn.execute(
                """
                INSERT INTO email_verification_token (id, user_id, token, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (token.id, token.user_id, token.token, token.expires_at, token.created_at),
            )
        return token

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_verification_token WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return EmailVerificationToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            verified_at=row.get("verified_at"),
            created_at=row["created_at"],
        )

    def complete_email_verification(
        self, user_id: str, token_id: str, at: datetime
    ) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                """
                UPDATE email_verification_token SET verified_at = %s
                WHERE id = %s AND user_id = %s AND verified_at IS NULL
                """,
                (at, token_id, user_id),
            )
            if cur.rowcount == 0:
                return False
            conn.execute(
                "UPDATE app_user SET email_verified = TRUE WHERE id = %s", (user_id,)
            )
        return True

    # security events
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_event (id, user_id, action, severity, ip_address,
                                            user_agent, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.user_id,
                    event.action,
                    event.severity,
                    event.ip_address,
                    event.user_agent,
                    json.dumps(event.details, default=str),
                    event.created_at,
                ),
            )
        return event

    def list_security_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        severity: Optional[str] = None,
        limit: int = 50,
    ) -> List[SecurityEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        if severity is not None:
            clauses.append("severity = %s")
            params.append(severity)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM security_event {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [_security_event_from_row(row) for row in rows]

    def delete_security_events_before(
        self, cutoff: datetime, *, keep_critical: bool = True
    ) -> int:
        query = "DELETE FROM security_event WHERE created_at < %s"
        if keep_critical:
            query += " AND severity <> 'critical'"
        with self._connect() as conn:
            return conn.execute(query, (cutoff,)).rowcount


__all__ = ["PostgresStore", "SCHEMA_PATH"]
