"""Password strength rules, hashing and the reset-by-email flow."""

from datetime import timedelta

import pytest

from authcore.service.errors import ValidationError
from authcore.service.password_reset import RESET_REQUESTED
from authcore.service.passwords import password_problems

from tests.support import TEST_PASSWORD

NEW_PASSWORD = "BrandNewPass456#"


def _reset_token(notifier):
    kind, sent = notifier.sent[-1]
    assert kind == "password_reset"
    return sent["token"]


class TestPasswordRules:
    def test_strong_password_has_no_problems(self):
        assert password_problems(TEST_PASSWORD) == []

    @pytest.mark.parametrize(
        "password,fragment",
        [
            ("Sh0rt!", "at least 8 characters"),
            ("lowercase123!", "uppercase"),
            ("UPPERCASE123!", "lowercase"),
            ("NoNumbers!!", "number"),
            ("NoSpecial123", "special character"),
        ],
    )
    def test_each_rule(self, password, fragment):
        problems = password_problems(password)
        assert len(problems) == 1
        assert fragment in problems[0]


class TestPasswordHashing:
    def test_hash_is_argon2id_and_salted(self, passwords):
        first = passwords.hash(TEST_PASSWORD)
        second = passwords.hash(TEST_PASSWORD)
        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify(self, passwords, make_user):
        user = make_user()
        assert passwords.verify(user, TEST_PASSWORD) is True
        assert passwords.verify(user, "nope") is False

    def test_missing_user_or_hash_is_false(self, passwords, store):
        assert passwords.verify(None, TEST_PASSWORD) is False
        orphan = store.create_user("nohash@example.com")
        assert passwords.verify(orphan, TEST_PASSWORD) is False

    def test_corrupt_hash_is_false(self, passwords, make_user, store):
        user = make_user()
        store.credentials[user.id] = "not-a-hash"
        assert passwords.verify(user, TEST_PASSWORD) is False


class TestRequestReset:
    async def test_registered_email_gets_link(self, password_reset, make_user, notifier, store):
        user = make_user()

        message = await password_reset.request_reset("User@Example.com", ip_address="5.6.7.8")

        assert message == RESET_REQUESTED
        token = _reset_token(notifier)
        record = store.get_password_reset_token(token)
        assert record.user_id == user.id
        assert record.ip_address == "5.6.7.8"
        assert record.expires_at - record.created_at == timedelta(minutes=60)
        assert len(token) >= 40

    async def test_unknown_email_same_reply_no_mail(self, password_reset, notifier, store):
        message = await password_reset.request_reset("ghost@example.com")
        assert message == RESET_REQUESTED
        assert notifier.sent == []
        assert store.password_reset_tokens == {}

    async def test_new_request_supersedes_old_token(self, password_reset, make_user, notifier):
        make_user()
        await password_reset.request_reset("user@example.com")
        first = _reset_token(notifier)
        await password_reset.request_reset("user@example.com")

        with pytest.raises(ValidationError) as exc_info:
            await password_reset.complete_reset(first, NEW_PASSWORD)
        assert exc_info.value.error_code == "invalid_token"


class TestCompleteReset:
    async def test_sets_password_unlocks_and_revokes(
        self, password_reset, make_user, notifier, store, sessions, passwords
    ):
        user = make_user(account_locked=True, failed_login_attempts=6)
        await sessions.create(user.id)
        await sessions.create(user.id)
        await password_reset.request_reset("user@example.com")

        revoked = await password_reset.complete_reset(_reset_token(notifier), NEW_PASSWORD)

        assert revoked == 2
        stored = store.get_user(user.id)
        assert passwords.verify(stored, NEW_PASSWORD) is True
        assert passwords.verify(stored, TEST_PASSWORD) is False
        assert stored.account_locked is False
        assert stored.failed_login_attempts == 0
        assert store.sessions == {}
        assert notifier.kinds()[-1] == "password_changed"
        event = store.list_security_events(action="password_reset_completed")[0]
        assert event.details == {"sessions_revoked": 2}

    async def test_token_is_single_use(self, password_reset, make_user, notifier):
        make_user()
        await password_reset.request_reset("user@example.com")
        token = _reset_token(notifier)
        await password_reset.complete_reset(token, NEW_PASSWORD)

        with pytest.raises(ValidationError) as exc_info:
            await password_reset.complete_reset(token, "AnotherPass789$")
        assert exc_info.value.error_code == "token_already_used"

    async def test_expired_token(self, password_reset, make_user, notifier, store, monkeypatch):
        make_user()
        await password_reset.request_reset("user@example.com")
        token = _reset_token(notifier)
        expires = store.get_password_reset_token(token).expires_at
        monkeypatch.setattr(password_reset, "_now", lambda: expires + timedelta(seconds=1))

        with pytest.raises(ValidationError) as exc_info:
            await password_reset.complete_reset(token, NEW_PASSWORD)
        assert exc_info.value.error_code == "token_expired"

    async def test_weak_password_keeps_token_usable(self, password_reset, make_user, notifier):
        make_user()
        await password_reset.request_reset("user@example.com")
        token = _reset_token(notifier)

        with pytest.raises(ValidationError) as exc_info:
            await password_reset.complete_reset(token, "weak")
        assert exc_info.value.error_code == "weak_password"
        assert len(exc_info.value.detail["problems"]) > 1

        assert await password_reset.complete_reset(token, NEW_PASSWORD) == 0

    @pytest.mark.parametrize("token", ["", "unknown-token"])
    async def test_unknown_token(self, password_reset, token):
        with pytest.raises(ValidationError) as exc_info:
            await password_reset.complete_reset(token, NEW_PASSWORD)
        assert exc_info.value.error_code == "invalid_token"
