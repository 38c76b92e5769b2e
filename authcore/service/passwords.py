from __future__ import annotations

import re
import secrets
from typing import List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger
from authcore.storage.models import User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
_SPECIAL_RE = re.compile(r"[^A-Za-z0-9]")


class CredentialStore(Protocol):
    def get_password_hash(self, user_id: str) -> Optional[str]: ...

    def set_password(self, user_id: str, password_hash: str) -> None: ...


def password_problems(password: str) -> List[str]:
    """Return the unmet strength rules for ``password`` (empty when acceptable)."""
    problems: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        problems.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        problems.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        problems.append("Password must contain at least one number")
    if not _SPECIAL_RE.search(password):
        problems.append("Password must contain at least one special character")
    return problems


class PasswordService:
    """argon2id hashing and verification against the credential store."""

    def __init__(self, store: CredentialStore) -> None:
        self.store = store
        self._hasher = PasswordHasher(type=Type.ID)
        # Compared against when the account does not exist so both paths cost one argon2 verify
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(32))

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def set_password(self, user_id: str, password: str) -> None:
        self.store.set_password(user_id, self.hash(password))

    def verify(self, user: Optional[User], password: str) -> bool:
        """Check ``password`` for ``user``; always performs one hash comparison."""
        stored_hash = self.store.get_password_hash(user.id) if user else None
        if stored_hash is None:
            if user is not None:
                logger.warning("password_record_missing", user_id=user.id)
            self._verify_hash(self._dummy_hash, password)
            return False
        return self._verify_hash(stored_hash, password)

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False
