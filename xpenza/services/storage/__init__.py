"""
Storage Services Package

Provides abstract interfaces and concrete implementations for the remote
document store and the local persistent cache. Google Sheets and an
in-memory store implement the remote side; JSON files and a dict implement
the cache.
"""

from xpenza.services.storage.interface import (
    CATEGORIES,
    LEDGERS,
    TRANSACTIONS,
    BatchCommitError,
    BatchOperation,
    BatchOperationType,
    ConnectionError,
    Document,
    DocumentStoreInterface,
    LocalCacheInterface,
    NotFoundError,
    StorageError,
    Subscription,
)
from xpenza.services.storage.memory import InMemoryDocumentStore
from xpenza.services.storage.local_cache import InMemoryCache, JsonFileCache
from xpenza.services.storage.google_sheets import (
    GoogleSheetsClient,
    GoogleSheetsDocumentStore,
)

__all__ = [
    # Collections
    "CATEGORIES",
    "LEDGERS",
    "TRANSACTIONS",
    # Interfaces
    "BatchOperation",
    "BatchOperationType",
    "Document",
    "DocumentStoreInterface",
    "LocalCacheInterface",
    "Subscription",
    # Exceptions
    "BatchCommitError",
    "ConnectionError",
    "NotFoundError",
    "StorageError",
    # Implementations
    "GoogleSheetsClient",
    "GoogleSheetsDocumentStore",
    "InMemoryCache",
    "InMemoryDocumentStore",
    "JsonFileCache",
]
