# historia/memory/identity.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class Identity:
    user_id: str
    display_name: str = "You"
    email: Optional[str] = None


class IdentityProvider(Protocol):
    """Supplies the signed-in user, or None when nobody is signed in."""

    def current_user(self) -> Optional[Identity]:
        ...


class StaticIdentityProvider:
    """Identity provider for a fixed user; set_user(None) signs out."""

    def __init__(self, identity: Optional[Identity] = None) -> None:
        self._identity = identity

    def current_user(self) -> Optional[Identity]:
        return self._identity

    def set_user(self, identity: Optional[Identity]) -> None:
        self._identity = identity
