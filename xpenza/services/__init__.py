"""Services package."""

from xpenza.services.identity import (
    IdentityProviderInterface,
    SessionIdentityProvider,
    UserProfile,
)
from xpenza.services.storage import (
    BatchCommitError,
    ConnectionError,
    DocumentStoreInterface,
    GoogleSheetsClient,
    GoogleSheetsDocumentStore,
    InMemoryCache,
    InMemoryDocumentStore,
    JsonFileCache,
    LocalCacheInterface,
    NotFoundError,
    StorageError,
)

__all__ = [
    # Identity
    "IdentityProviderInterface",
    "SessionIdentityProvider",
    "UserProfile",
    # Storage services
    "BatchCommitError",
    "ConnectionError",
    "DocumentStoreInterface",
    "GoogleSheetsClient",
    "GoogleSheetsDocumentStore",
    "InMemoryCache",
    "InMemoryDocumentStore",
    "JsonFileCache",
    "LocalCacheInterface",
    "NotFoundError",
    "StorageError",
]
