"""MemoryStore behaviour the services rely on."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import (
    AuthAttempt,
    MfaTempToken,
    PasswordResetToken,
    Session,
    new_id,
)

from tests.support import TEST_SECRET

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def _session(user_id, token="tok", ttl=timedelta(hours=1), **kwargs):
    return Session.new(user_id, token, f"refresh-{token}", ttl, now=NOW, **kwargs)


class TestUsers:
    def test_email_is_normalized_and_unique(self, store):
        user = store.create_user("  Alice@Example.com ")
        assert user.email == "alice@example.com"
        assert store.get_user_by_email("ALICE@example.com").id == user.id
        with pytest.raises(ConstraintViolation):
            store.create_user("alice@example.com")

    def test_rows_are_copies(self, store):
        user = store.create_user("alice@example.com")
        user.failed_login_attempts = 99
        assert store.get_user(user.id).failed_login_attempts == 0

    def test_password_for_missing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.set_password("missing", "hash")

    def test_concurrent_create_same_email(self):
        store = MemoryStore(mfa_encryption_key=TEST_SECRET)
        outcomes = []

        def create():
            try:
                store.create_user("race@example.com")
                outcomes.append("created")
            except ConstraintViolation:
                outcomes.append("conflict")

        threads = [threading.Thread(target=create) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outcomes.count("created") == 1


class TestAuthAttempts:
    def test_outcome_update_keeps_original_columns(self, store):
        attempt = store.record_auth_attempt(
            AuthAttempt(id=new_id(), email="A@example.com", ip_address="1.1.1.1", created_at=NOW)
        )
        store.update_auth_attempt_failure(attempt.id, "invalid_credentials", "u1")

        stored = store.auth_attempts[0]
        assert stored.email == "a@example.com"
        assert stored.ip_address == "1.1.1.1"
        assert stored.created_at == NOW
        assert stored.failure_reason == "invalid_credentials"
        assert stored.user_id == "u1"

        store.mark_auth_attempt_success(attempt.id)
        assert stored.success is True
        assert stored.failure_reason is None


class TestSessions:
    def test_session_requires_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_session(_session("missing"))

    def test_rotation_swaps_tokens(self, store):
        user = store.create_user("a@example.com")
        session = store.create_session(_session(user.id))

        rotated = store.rotate_session_tokens(session.id, "tok2", "refresh-tok2", NOW)

        assert rotated.token == "tok2"
        assert store.get_session_by_token("tok") is None
        assert store.get_session_by_refresh_token("refresh-tok2").id == session.id

    def test_reads_do_not_share_device_info(self, store):
        user = store.create_user("a@example.com")
        store.create_session(_session(user.id, device_info={"browser": "Chrome"}))

        store.get_session_by_token("tok").device_info["browser"] = "tampered"
        store.list_user_sessions(user.id, NOW)[0].device_info["os"] = "tampered"
        store.get_session_by_refresh_token("refresh-tok").device_info.clear()

        assert store.get_session_by_token("tok").device_info == {"browser": "Chrome"}

    def test_rotation_of_deleted_session(self, store):
        assert store.rotate_session_tokens("gone", "a", "b", NOW) is None

    def test_list_excludes_expired_and_orders_by_activity(self, store):
        user = store.create_user("a@example.com")
        store.create_session(_session(user.id, "old", ttl=timedelta(minutes=5)))
        live = store.create_session(_session(user.id, "live"))
        store.touch_session(live.id, NOW + timedelta(minutes=30))

        rows = store.list_user_sessions(user.id, NOW + timedelta(minutes=10))
        assert [r.token for r in rows] == ["live"]

    def test_find_active_session_matches_ip_and_agent(self, store):
        user = store.create_user("a@example.com")
        store.create_session(_session(user.id, ip_address="1.1.1.1", user_agent="ua"))

        assert store.find_active_session(user.id, "1.1.1.1", "ua", NOW) is not None
        assert store.find_active_session(user.id, "1.1.1.1", "other", NOW) is None
        assert store.find_active_session(user.id, "1.1.1.1", "ua", NOW + timedelta(hours=2)) is None


class TestMfa:
    def test_secret_encrypted_and_decrypted(self, store):
        user = store.create_user("a@example.com")
        store.replace_mfa_setup(user.id, "JBSWY3DPEHPK3PXP", ["h1", "h2"])

        assert store.mfa_secrets[user.id].secret != "JBSWY3DPEHPK3PXP"
        assert store.get_mfa_secret(user.id).secret == "JBSWY3DPEHPK3PXP"
        assert len(store.list_backup_codes(user.id)) == 2

    def test_other_key_cannot_read_secret(self, store):
        user = store.create_user("a@example.com")
        store.replace_mfa_setup(user.id, "JBSWY3DPEHPK3PXP", [])
        other = MemoryStore(mfa_encryption_key="another-key")
        other.users = store.users
        other.mfa_secrets = store.mfa_secrets
        assert other.get_mfa_secret(user.id) is None

    def test_backup_code_consumed_once(self, store):
        user = store.create_user("a@example.com")
        store.replace_mfa_setup(user.id, "JBSWY3DPEHPK3PXP", ["h1"])
        code = store.list_backup_codes(user.id)[0]

        assert store.consume_backup_code(code.id, NOW) is True
        assert store.consume_backup_code(code.id, NOW) is False
        assert store.list_backup_codes(user.id) == []
        assert len(store.list_backup_codes(user.id, unused_only=False)) == 1

    def test_temp_token_replacement_is_conditional(self, store):
        user = store.create_user("a@example.com")
        first = MfaTempToken(
            id=new_id(), user_id=user.id, token="t1", expires_at=NOW + timedelta(minutes=5)
        )
        store.create_mfa_temp_token(first)
        second = MfaTempToken(
            id=new_id(), user_id=user.id, token="t2", expires_at=NOW + timedelta(minutes=5)
        )
        third = MfaTempToken(
            id=new_id(), user_id=user.id, token="t3", expires_at=NOW + timedelta(minutes=5)
        )

        assert store.replace_mfa_temp_token(first.id, second, NOW) is True
        assert store.replace_mfa_temp_token(first.id, third, NOW) is False
        assert store.get_mfa_temp_token("t3") is None


class TestPasswordReset:
    def test_completion_is_all_or_nothing(self, store):
        user = store.create_user("a@example.com")
        store.set_password(user.id, "old-hash")
        store.lock_user(user.id, NOW + timedelta(hours=1))
        store.create_session(_session(user.id))
        token = store.create_password_reset_token(
            PasswordResetToken(
                id=new_id(), user_id=user.id, token="r1", expires_at=NOW + timedelta(hours=1)
            )
        )

        assert store.complete_password_reset(user.id, "new-hash", token.id, NOW) == 1
        assert store.get_password_hash(user.id) == "new-hash"
        assert store.get_user(user.id).account_locked is False

        with pytest.raises(ConstraintViolation):
            store.complete_password_reset(user.id, "newer-hash", token.id, NOW)
        assert store.get_password_hash(user.id) == "new-hash"
