from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    ConfigError,
    ExpiredTokenError,
    MalformedTokenError,
    WrongTokenTypeError,
)

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    MFA_CHALLENGE = "mfa_challenge"


@dataclass(frozen=True)
class TokenPayload:
    subject: str
    type: TokenKind
    issued_at: int
    expires_at: int
    email: Optional[str] = None
    business_id: Optional[str] = None
    jti: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "TokenPayload":
        return cls(
            subject=str(claims["sub"]),
            type=TokenKind(claims["type"]),
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
            email=claims.get("email"),
            business_id=claims.get("businessId"),
            jti=claims.get("jti"),
        )


@dataclass(frozen=True)
class VerifiedToken:
    """Outcome of a signature check; expiry is reported, not raised."""

    payload: TokenPayload
    expired: bool


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """HS256 access/refresh/challenge tokens. Stateless apart from settings."""

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], float]] = None
    ) -> None:
        self.settings = settings
        self._clock = clock or time.time

    def _secret(self) -> bytes:
        secret = self.settings.jwt_secret
        if not secret or len(secret) < MIN_SECRET_LENGTH:
            raise ConfigError(
                f"JWT_SECRET must be set and at least {MIN_SECRET_LENGTH} characters"
            )
        return secret.encode()

    def _default_ttl(self, kind: TokenKind) -> timedelta:
        if kind is TokenKind.REFRESH:
            return timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        if kind is TokenKind.MFA_CHALLENGE:
            return timedelta(minutes=self.settings.mfa_challenge_ttl_minutes)
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret(), signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def issue(
        self,
        subject: str,
        kind: TokenKind | str,
        *,
        email: Optional[str] = None,
        business_id: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> str:
        kind = TokenKind(kind)
        self._secret()
        now = int(self._clock())
        lifetime = ttl if ttl is not None else self._default_ttl(kind)
        claims: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "type": kind.value,
            "iat": now,
            "exp": now + int(lifetime.total_seconds()),
            # Two tokens minted in the same second must still differ
            "jti": str(uuid.uuid4()),
        }
        if email is not None:
            claims["email"] = email
        if business_id is not None:
            claims["businessId"] = business_id
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(
        self, token: str, expected_kind: TokenKind | str | None = None
    ) -> VerifiedToken:
        """Check signature and structure.

        Raises ``MalformedTokenError`` for anything tampered or unparseable and
        ``WrongTokenTypeError`` when ``expected_kind`` does not match. An
        authentic but stale token comes back with ``expired=True``.
        """
        if not token or not isinstance(token, str):
            raise MalformedTokenError("Invalid token")
        parts = token.split(".")
        if len(parts) != 3:
            raise MalformedTokenError("Invalid token")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            raise MalformedTokenError("Invalid token") from exc
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise MalformedTokenError("Invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise MalformedTokenError("Invalid token")

        try:
            claims = json.loads(_decode_segment(payload_b64))
            payload = TokenPayload.from_claims(claims)
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError("Invalid token") from exc
        if claims.get("iss") != self.settings.jwt_issuer:
            raise MalformedTokenError("Invalid token")
        aud = claims.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise MalformedTokenError("Invalid token")

        if expected_kind is not None and payload.type is not TokenKind(expected_kind):
            logger.warning(
                "token_type_mismatch",
                expected_type=TokenKind(expected_kind).value,
                actual_type=payload.type.value,
                user_id=payload.subject,
            )
            raise WrongTokenTypeError("Invalid token type")

        return VerifiedToken(payload=payload, expired=payload.expires_at <= self._clock())

    def decode(self, token: str) -> Optional[TokenPayload]:
        """Read claims without checking the signature. Display use only."""
        if not token or not isinstance(token, str):
            return None
        parts = token.split(".")
        if len(parts) != 3:
            return None
        try:
            return TokenPayload.from_claims(json.loads(_decode_segment(parts[1])))
        except (ValueError, TypeError, KeyError):
            return None

    def time_until_expiry(self, token: str) -> int:
        """Seconds until ``exp``; 0 for expired, forged or unreadable tokens."""
        try:
            verified = self.verify(token)
        except (MalformedTokenError, WrongTokenTypeError):
            return 0
        if verified.expired:
            return 0
        return max(0, int(verified.payload.expires_at - self._clock()))

    def rotate(
        self, refresh_token: str, *, refresh_ttl: Optional[timedelta] = None
    ) -> TokenPair:
        verified = self.verify(refresh_token, TokenKind.REFRESH)
        if verified.expired:
            raise ExpiredTokenError("Refresh token expired")
        payload = verified.payload
        return TokenPair(
            access_token=self.issue(
                payload.subject,
                TokenKind.ACCESS,
                email=payload.email,
                business_id=payload.business_id,
            ),
            refresh_token=self.issue(
                payload.subject,
                TokenKind.REFRESH,
                email=payload.email,
                business_id=payload.business_id,
                ttl=refresh_ttl,
            ),
        )

    @staticmethod
    def extract_from_header(header: Optional[str]) -> Optional[str]:
        """Return the token from ``Bearer <token>``; None for any other shape."""
        if not header or not isinstance(header, str):
            return None
        parts = header.split(" ")
        if len(parts) != 2:
            return None
        scheme, token = parts
        if scheme.lower() != "bearer" or not token:
            return None
        return token


__all__ = [
    "MIN_SECRET_LENGTH",
    "TokenKind",
    "TokenPayload",
    "VerifiedToken",
    "TokenPair",
    "TokenService",
]
