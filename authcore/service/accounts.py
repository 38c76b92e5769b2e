from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Union

from authcore.storage.models import User


class UserLookup(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...


@dataclass(frozen=True)
class Known:
    user: User


@dataclass(frozen=True)
class Unknown:
    email: str


Account = Union[Known, Unknown]


def lookup_or_unknown(store: UserLookup, email: str) -> Account:
    """Resolve ``email`` to ``Known(user)`` or ``Unknown(email)``.

    Every caller that must not reveal whether an address is registered goes
    through here and branches on the variant, so the decision is made once.
    """
    user = store.get_user_by_email(email) if email else None
    if user is None:
        return Unknown(email=email)
    return Known(user=user)


__all__ = ["Known", "Unknown", "Account", "lookup_or_unknown"]
