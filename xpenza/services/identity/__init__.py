"""Identity provider package."""

from xpenza.services.identity.provider import (
    IdentityProviderInterface,
    SessionIdentityProvider,
    UserProfile,
)

__all__ = [
    "IdentityProviderInterface",
    "SessionIdentityProvider",
    "UserProfile",
]
