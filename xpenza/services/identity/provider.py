"""
Identity Provider Adapter

The sync store only needs two things from authentication: the current
user id, and a notification when it changes. Absence of a user id means
"logged out" and suppresses every remote operation.

SessionIdentityProvider is the in-process adapter: whatever sign-in SDK
the app uses feeds it with sign_in()/sign_out().
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

IdentityListener = Callable[[Optional[str]], None]


class UserProfile(BaseModel):
    """The signed-in user as reported by the identity provider."""
    model_config = ConfigDict(frozen=True)

    uid: str = Field(..., min_length=1)
    email: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    phone_number: Optional[str] = None


class IdentityProviderInterface(ABC):
    """Abstract source of the session identity."""

    @property
    @abstractmethod
    def current_user_id(self) -> Optional[str]:
        """Opaque id of the signed-in user, or None when logged out."""
        pass

    @abstractmethod
    def on_change(self, listener: IdentityListener) -> Callable[[], None]:
        """
        Register a listener called with the new user id (or None).

        Returns:
            A callable that removes the listener
        """
        pass


class SessionIdentityProvider(IdentityProviderInterface):
    """In-process identity holder fed by the sign-in flow."""

    def __init__(self, profile: Optional[UserProfile] = None):
        self._profile = profile
        self._listeners: list[IdentityListener] = []

    @property
    def current_user(self) -> Optional[UserProfile]:
        return self._profile

    @property
    def current_user_id(self) -> Optional[str]:
        return self._profile.uid if self._profile else None

    def on_change(self, listener: IdentityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def sign_in(self, profile: UserProfile) -> None:
        changed = self.current_user_id != profile.uid
        self._profile = profile
        if changed:
            self._emit()

    def sign_out(self) -> None:
        if self._profile is None:
            return
        self._profile = None
        self._emit()

    def _emit(self) -> None:
        user_id = self.current_user_id
        for listener in list(self._listeners):
            listener(user_id)
