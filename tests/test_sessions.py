"""Tests for SessionManager."""

import json
from datetime import timedelta

import pytest

from authcore.service.errors import SessionCreationError, SessionError
from authcore.service.sessions import SessionManager
from authcore.service.tokens import TokenService

from tests.support import CHROME_MAC, FIREFOX_WINDOWS


class TestCreate:
    async def test_default_session_lasts_a_day(self, sessions, make_user, store):
        user = make_user()
        issued = await sessions.create(user.id, email=user.email)

        row = store.get_session_by_token(issued.access_token)
        assert row is not None
        assert row.refresh_token == issued.refresh_token
        lifetime = row.expires_at - row.created_at
        assert lifetime == timedelta(hours=24)

    async def test_remember_me_lasts_thirty_days(self, sessions, make_user, store):
        user = make_user()
        issued = await sessions.create(user.id, remember_me=True)
        row = store.get_session_by_token(issued.access_token)
        assert row.expires_at - row.created_at == timedelta(days=30)

    async def test_device_info_parsed_from_user_agent(self, sessions, make_user, store):
        user = make_user()
        issued = await sessions.create(user.id, ip_address="1.2.3.4", user_agent=CHROME_MAC)
        row = store.get_session_by_token(issued.access_token)
        assert row.device_info == {"browser": "Chrome", "os": "macOS", "device_type": "desktop"}
        assert row.ip_address == "1.2.3.4"

    async def test_store_failure_wrapped(self, sessions):
        with pytest.raises(SessionCreationError):
            await sessions.create("no-such-user")


class TestValidate:
    async def test_valid_session_touches_activity(self, sessions, make_user, store, monkeypatch):
        user = make_user()
        issued = await sessions.create(user.id)
        later = issued.session.created_at + timedelta(minutes=5)
        monkeypatch.setattr(sessions, "_now", lambda: later)

        result = await sessions.validate(issued.access_token)

        assert result.valid is True
        assert result.session.user_id == user.id
        assert store.get_session_by_token(issued.access_token).last_activity_at == later

    async def test_garbage_token_is_invalid(self, sessions):
        result = await sessions.validate("garbage")
        assert result.valid is False
        assert result.reason == SessionManager.INVALID_TOKEN

    async def test_refresh_token_is_not_an_access_token(self, sessions, make_user):
        user = make_user()
        issued = await sessions.create(user.id)
        result = await sessions.validate(issued.refresh_token)
        assert result.reason == SessionManager.INVALID_TOKEN

    async def test_revoked_session_not_found(self, sessions, make_user):
        user = make_user()
        issued = await sessions.create(user.id)
        await sessions.delete(issued.access_token)

        result = await sessions.validate(issued.access_token)
        assert result.valid is False
        assert result.reason == SessionManager.NOT_FOUND

    async def test_expired_row_is_removed(self, sessions, make_user, store, monkeypatch):
        user = make_user()
        issued = await sessions.create(user.id)
        monkeypatch.setattr(
            sessions, "_now", lambda: issued.session.expires_at + timedelta(seconds=1)
        )

        result = await sessions.validate(issued.access_token)

        assert result.valid is False
        assert result.reason == SessionManager.EXPIRED
        assert store.get_session_by_token(issued.access_token) is None

    async def test_expired_access_claim_with_live_row(self, store, settings, make_user):
        """The row survives so the client can refresh."""
        clock_now = [1_700_000_000.0]
        tokens = TokenService(settings, clock=lambda: clock_now[0])
        manager = SessionManager(store, tokens, settings)
        user = make_user()
        issued = await manager.create(user.id)

        clock_now[0] += settings.access_token_ttl_minutes * 60 + 1
        result = await manager.validate(issued.access_token)

        assert result.valid is False
        assert result.reason == SessionManager.EXPIRED
        assert store.get_session_by_token(issued.access_token) is not None


class TestRefresh:
    async def test_refresh_rotates_both_tokens(self, sessions, make_user, store):
        user = make_user()
        issued = await sessions.create(user.id, email=user.email)

        rotated = await sessions.refresh(issued.refresh_token)

        assert rotated.access_token != issued.access_token
        assert rotated.refresh_token != issued.refresh_token
        assert rotated.session.id == issued.session.id
        assert store.get_session_by_token(issued.access_token) is None
        assert (await sessions.validate(rotated.access_token)).valid is True

    async def test_old_refresh_token_is_spent(self, sessions, make_user):
        user = make_user()
        issued = await sessions.create(user.id)
        await sessions.refresh(issued.refresh_token)

        with pytest.raises(SessionError) as exc_info:
            await sessions.refresh(issued.refresh_token)
        assert exc_info.value.reason == SessionError.NOT_FOUND
        assert exc_info.value.recoverable is True

    async def test_refresh_of_expired_session(self, sessions, make_user, store, monkeypatch):
        user = make_user()
        issued = await sessions.create(user.id)
        monkeypatch.setattr(
            sessions, "_now", lambda: issued.session.expires_at + timedelta(minutes=1)
        )

        with pytest.raises(SessionError) as exc_info:
            await sessions.refresh(issued.refresh_token)
        assert exc_info.value.reason == SessionError.EXPIRED
        assert store.get_session_by_token(issued.access_token) is None

    async def test_refresh_token_never_outlives_session(self, sessions, tokens, make_user):
        user = make_user()
        issued = await sessions.create(user.id)
        rotated = await sessions.refresh(issued.refresh_token)

        payload = tokens.verify(rotated.refresh_token).payload
        expires = issued.session.expires_at.timestamp()
        assert payload.expires_at <= expires + 1


class TestRevocation:
    async def test_delete_is_idempotent(self, sessions, make_user):
        user = make_user()
        issued = await sessions.create(user.id)
        await sessions.delete(issued.access_token)
        await sessions.delete(issued.access_token)
        await sessions.delete("never-existed")

    async def test_delete_all_for_user(self, sessions, make_user, store):
        alice = make_user("alice@example.com")
        bob = make_user("bob@example.com")
        for _ in range(3):
            await sessions.create(alice.id)
        bob_session = await sessions.create(bob.id)

        assert await sessions.delete_all_for_user(alice.id) == 3
        assert store.get_session_by_token(bob_session.access_token) is not None

    async def test_delete_by_id_is_owner_scoped(self, sessions, make_user, store):
        alice = make_user("alice@example.com")
        bob = make_user("bob@example.com")
        issued = await sessions.create(alice.id)

        with pytest.raises(SessionError):
            await sessions.delete_by_id(issued.session.id, bob.id)
        assert store.get_session_by_token(issued.access_token) is not None

        await sessions.delete_by_id(issued.session.id, alice.id)
        assert store.get_session_by_token(issued.access_token) is None

    async def test_cleanup_expired(self, sessions, make_user, store, monkeypatch):
        user = make_user()
        short = await sessions.create(user.id)
        await sessions.create(user.id, remember_me=True)
        monkeypatch.setattr(
            sessions, "_now", lambda: short.session.expires_at + timedelta(minutes=1)
        )

        assert await sessions.cleanup_expired() == 1
        assert len(store.sessions) == 1


class TestListing:
    async def test_lists_sessions_with_current_flag(self, sessions, make_user):
        user = make_user()
        first = await sessions.create(user.id, user_agent=CHROME_MAC)
        await sessions.create(user.id, user_agent=FIREFOX_WINDOWS)

        views = await sessions.list_for_user(user.id, first.access_token)

        assert len(views) == 2
        current = [v for v in views if v.is_current]
        assert [v.id for v in current] == [first.session.id]
        assert {v.device["browser"] for v in views} == {"Chrome", "Firefox"}

    async def test_serialized_device_info_is_normalized(self, sessions, make_user, store):
        user = make_user()
        issued = await sessions.create(user.id, user_agent=CHROME_MAC)
        store.sessions[issued.session.id].device_info = json.dumps(
            {"browser": "Safari", "os": "iOS", "device_type": "mobile"}
        )

        views = await sessions.list_for_user(user.id)
        assert views[0].device == {"browser": "Safari", "os": "iOS", "device_type": "mobile"}

    async def test_missing_device_info_falls_back_to_user_agent(
        self, sessions, make_user, store
    ):
        user = make_user()
        issued = await sessions.create(user.id, user_agent=FIREFOX_WINDOWS)
        store.sessions[issued.session.id].device_info = None

        views = await sessions.list_for_user(user.id)
        assert views[0].device["browser"] == "Firefox"
        assert views[0].device["os"] == "Windows"

    async def test_has_matching_session(self, sessions, make_user):
        user = make_user()
        await sessions.create(user.id, ip_address="1.1.1.1", user_agent=CHROME_MAC)

        assert await sessions.has_matching_session(user.id, "1.1.1.1", CHROME_MAC) is True
        assert await sessions.has_matching_session(user.id, "2.2.2.2", CHROME_MAC) is False
        assert await sessions.has_matching_session(user.id, "1.1.1.1", FIREFOX_WINDOWS) is False
