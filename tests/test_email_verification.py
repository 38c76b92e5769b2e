from datetime import timedelta

import pytest

from authcore.service.email_verification import VERIFICATION_RESENT
from authcore.service.errors import NotFoundError, ValidationError


def _verification_token(notifier):
    kind, sent = notifier.sent[-1]
    assert kind == "verification"
    return sent["token"]


class TestSendVerification:
    async def test_issues_token_and_mails_it(self, email_verification, make_user, notifier, store):
        user = make_user(verified=False)

        record = await email_verification.send_verification(user.id)

        assert _verification_token(notifier) == record.token
        assert record.expires_at - record.created_at == timedelta(hours=24)
        assert store.get_email_verification_token(record.token).user_id == user.id

    async def test_already_verified(self, email_verification, make_user):
        user = make_user(verified=True)
        with pytest.raises(ValidationError) as exc_info:
            await email_verification.send_verification(user.id)
        assert exc_info.value.error_code == "already_verified"

    async def test_unknown_user(self, email_verification):
        with pytest.raises(NotFoundError):
            await email_verification.send_verification("missing")


class TestVerify:
    async def test_marks_user_verified(self, email_verification, make_user, notifier, store):
        user = make_user(verified=False)
        await email_verification.send_verification(user.id)

        verified = await email_verification.verify(_verification_token(notifier))

        assert verified.id == user.id
        assert verified.email_verified is True
        assert store.list_security_events(user_id=user.id, action="email_verified")

    async def test_second_use_rejected(self, email_verification, make_user, notifier):
        user = make_user(verified=False)
        await email_verification.send_verification(user.id)
        token = _verification_token(notifier)
        await email_verification.verify(token)

        with pytest.raises(ValidationError) as exc_info:
            await email_verification.verify(token)
        assert exc_info.value.error_code == "token_already_used"

    async def test_expired(self, email_verification, make_user, monkeypatch):
        user = make_user(verified=False)
        record = await email_verification.send_verification(user.id)
        monkeypatch.setattr(
            email_verification, "_now", lambda: record.expires_at + timedelta(minutes=1)
        )

        with pytest.raises(ValidationError) as exc_info:
            await email_verification.verify(record.token)
        assert exc_info.value.error_code == "token_expired"

    async def test_unknown_token(self, email_verification):
        with pytest.raises(ValidationError) as exc_info:
            await email_verification.verify("nope")
        assert exc_info.value.error_code == "invalid_token"

    async def test_resent_token_replaces_previous(self, email_verification, make_user, notifier):
        user = make_user(verified=False)
        await email_verification.send_verification(user.id)
        first = _verification_token(notifier)
        await email_verification.send_verification(user.id)

        with pytest.raises(ValidationError):
            await email_verification.verify(first)
        await email_verification.verify(_verification_token(notifier))


class TestResend:
    async def test_unverified_user_gets_mail(self, email_verification, make_user, notifier):
        make_user(verified=False)
        assert await email_verification.resend("user@example.com") == VERIFICATION_RESENT
        assert notifier.kinds() == ["verification"]

    @pytest.mark.parametrize("verified", [True, None])
    async def test_same_reply_without_mail(self, email_verification, make_user, notifier, verified):
        if verified is not None:
            make_user(verified=verified)
        assert await email_verification.resend("user@example.com") == VERIFICATION_RESENT
        assert notifier.sent == []
