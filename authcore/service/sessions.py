from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.devices import DeviceClass, parse_device_info
from authcore.service.errors import (
    MalformedTokenError,
    SessionCreationError,
    SessionError,
    WrongTokenTypeError,
)
from authcore.service.tokens import TokenKind, TokenService
from authcore.storage.common import normalize_device_info
from authcore.storage.models import Session

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session_by_token(self, token: str) -> Optional[Session]: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> None: ...

    def rotate_session_tokens(
        self, session_id: str, token: str, refresh_token: str, at: datetime
    ) -> Optional[Session]: ...

    def delete_session_by_token(self, token: str) -> bool: ...

    def delete_session(self, session_id: str, user_id: Optional[str] = None) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def list_user_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def find_active_session(
        self,
        user_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> Optional[Session]: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


@dataclass(frozen=True)
class IssuedSession:
    session: Session
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class SessionValidation:
    valid: bool
    session: Optional[Session] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class SessionView:
    """A session as shown on the owner's "manage devices" page."""

    id: str
    device: Dict[str, Any]
    ip_address: Optional[str]
    last_activity_at: datetime
    created_at: datetime
    expires_at: datetime
    is_current: bool


class SessionManager:
    """Server-side session lifecycle layered over TokenService and the store.

    A session is active until ``expires_at``; expiry is evaluated whenever a
    row is read and the row is removed at that point.
    """

    INVALID_TOKEN = "invalid_token"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"

    def __init__(self, store: SessionStore, tokens: TokenService, settings: Settings) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def session_ttl(self, remember_me: bool) -> timedelta:
        if remember_me:
            return timedelta(days=self.settings.remember_me_ttl_days)
        return timedelta(hours=self.settings.session_ttl_hours)

    async def create(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        business_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        remember_me: bool = False,
    ) -> IssuedSession:
        ttl = self.session_ttl(remember_me)
        access_token = self.tokens.issue(
            user_id, TokenKind.ACCESS, email=email, business_id=business_id
        )
        # The refresh token never outlives the session row it belongs to
        refresh_token = self.tokens.issue(
            user_id,
            TokenKind.REFRESH,
            email=email,
            business_id=business_id,
            ttl=ttl,
        )
        session = Session.new(
            user_id,
            access_token,
            refresh_token,
            ttl,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=parse_device_info(user_agent).as_dict(),
            now=self._now(),
        )
        try:
            stored = self.store.create_session(session)
        except Exception as exc:
            logger.error("session_create_failed", user_id=user_id, error=str(exc))
            raise SessionCreationError("Failed to create session") from exc
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=stored.id,
            remember_me=remember_me,
        )
        return IssuedSession(
            session=stored, access_token=access_token, refresh_token=refresh_token
        )

    async def validate(self, access_token: str) -> SessionValidation:
        """Check an access token against both its own ``exp`` and the stored row."""
        try:
            verified = self.tokens.verify(access_token, TokenKind.ACCESS)
        except (MalformedTokenError, WrongTokenTypeError):
            return SessionValidation(valid=False, reason=self.INVALID_TOKEN)

        now = self._now()
        session = self.store.get_session_by_token(access_token)
        if session is None:
            return SessionValidation(valid=False, reason=self.NOT_FOUND)
        if session.is_expired(now):
            self.store.delete_session(session.id)
            logger.info("session_expired", session_id=session.id, user_id=session.user_id)
            return SessionValidation(valid=False, reason=self.EXPIRED)
        if verified.expired:
            # Row still live: the client recovers through refresh
            return SessionValidation(valid=False, session=session, reason=self.EXPIRED)

        self.store.touch_session(session.id, now)
        session.last_activity_at = now
        return SessionValidation(valid=True, session=session)

    async def refresh(self, refresh_token: str) -> IssuedSession:
        session = self.store.get_session_by_refresh_token(refresh_token)
        if session is None:
            raise SessionError(SessionError.NOT_FOUND)
        now = self._now()
        if session.is_expired(now):
            self.store.delete_session(session.id)
            raise SessionError(SessionError.EXPIRED)

        pair = self.tokens.rotate(refresh_token, refresh_ttl=session.expires_at - now)
        rotated = self.store.rotate_session_tokens(
            session.id, pair.access_token, pair.refresh_token, now
        )
        if rotated is None:
            # Revoked between the lookup and the write
            raise SessionError(SessionError.NOT_FOUND)
        logger.info("session_refreshed", session_id=session.id, user_id=session.user_id)
        return IssuedSession(
            session=rotated,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
        )

    async def delete(self, access_token: str) -> None:
        """Revoke the session behind ``access_token``; unknown tokens are ignored."""
        if self.store.delete_session_by_token(access_token):
            logger.info("session_revoked")

    async def delete_all_for_user(self, user_id: str) -> int:
        count = self.store.delete_user_sessions(user_id)
        logger.info("sessions_revoked_for_user", user_id=user_id, count=count)
        return count

    async def delete_by_id(self, session_id: str, user_id: str) -> None:
        if not self.store.delete_session(session_id, user_id):
            raise SessionError(SessionError.NOT_FOUND)
        logger.info("session_revoked_by_owner", user_id=user_id, session_id=session_id)

    async def list_for_user(
        self, user_id: str, current_token: Optional[str] = None
    ) -> List[SessionView]:
        views: List[SessionView] = []
        for session in self.store.list_user_sessions(user_id, self._now()):
            device = normalize_device_info(session.device_info)
            if not device:
                device = parse_device_info(session.user_agent).as_dict()
            views.append(
                SessionView(
                    id=session.id,
                    device=device,
                    ip_address=session.ip_address,
                    last_activity_at=session.last_activity_at,
                    created_at=session.created_at,
                    expires_at=session.expires_at,
                    is_current=current_token is not None and session.token == current_token,
                )
            )
        return views

    async def has_matching_session(
        self, user_id: str, ip_address: Optional[str], user_agent: Optional[str]
    ) -> bool:
        return (
            self.store.find_active_session(user_id, ip_address, user_agent, self._now())
            is not None
        )

    async def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_sessions(self._now())
        logger.info("expired_sessions_pruned", removed=removed)
        return removed

    @staticmethod
    def parse_device_info(user_agent: Optional[str]) -> DeviceClass:
        return parse_device_info(user_agent)


__all__ = [
    "IssuedSession",
    "SessionValidation",
    "SessionView",
    "SessionManager",
]
