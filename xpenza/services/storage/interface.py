"""
Abstract Storage Interfaces

DESIGN DECISION: The sync store only talks to these interfaces.
This allows us to:
1. Swap the remote document store (Google Sheets, a hosted document DB)
2. Use in-memory storage for testing
3. Keep the optimistic-write protocol decoupled from any backend

The remote interface is intentionally small - a collection-oriented
document store with equality filters and live watches. Just the operations
the sync store needs.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field


# Collection names
TRANSACTIONS = "transactions"
LEDGERS = "ledgers"
CATEGORIES = "categories"


class Document(BaseModel):
    """A remote document: generated id plus its field map."""

    id: str
    data: dict[str, Any] = Field(default_factory=dict)

    def matches(self, filters: dict[str, Any]) -> bool:
        """Equality match on every filter field."""
        return all(self.data.get(field) == value for field, value in filters.items())


class BatchOperationType(str, Enum):
    UPDATE = "update"
    DELETE = "delete"


class BatchOperation(BaseModel):
    """One write inside an atomic batch."""

    op: BatchOperationType
    collection: str
    doc_id: str
    fields: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def delete(cls, collection: str, doc_id: str) -> "BatchOperation":
        return cls(op=BatchOperationType.DELETE, collection=collection, doc_id=doc_id)

    @classmethod
    def update(cls, collection: str, doc_id: str, fields: dict[str, Any]) -> "BatchOperation":
        return cls(
            op=BatchOperationType.UPDATE,
            collection=collection,
            doc_id=doc_id,
            fields=fields,
        )


SnapshotCallback = Callable[[list[Document]], None]


class Subscription:
    """
    Cancellation handle of a live watch.

    Cancelling is idempotent: the underlying unsubscribe runs exactly once.
    """

    def __init__(self, unsubscribe: Optional[Callable[[], None]] = None):
        self._unsubscribe = unsubscribe
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def attach(self, unsubscribe: Callable[[], None]) -> None:
        """Bind the unsubscribe callable once the watch is established."""
        if not self._active:
            unsubscribe()
            return
        self._unsubscribe = unsubscribe

    def cancel(self) -> bool:
        """Stop the watch. Returns False if it was already cancelled."""
        if not self._active:
            return False
        self._active = False
        if self._unsubscribe is not None:
            self._unsubscribe()
        return True

    __call__ = cancel


class DocumentStoreInterface(ABC):
    """
    Abstract interface for the remote document store.

    Any backend must implement these methods. Failures are reported as
    StorageError (or a subclass); nothing else should escape.
    """

    @abstractmethod
    async def create(self, collection: str, data: dict[str, Any]) -> str:
        """
        Create a document with a generated id.

        Returns:
            The server-assigned document id

        Raises:
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def list_documents(
        self,
        collection: str,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[Document]:
        """
        Read every document matching the equality filters.

        Order is not guaranteed; callers sort client-side.
        """
        pass

    @abstractmethod
    def watch(
        self,
        collection: str,
        filters: dict[str, Any],
        on_snapshot: SnapshotCallback,
    ) -> Subscription:
        """
        Start a live watch.

        `on_snapshot` receives the full list of matching documents
        every time any of them changes (and once when the watch starts).
        """
        pass

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """
        Merge `fields` into an existing document.

        Raises:
            NotFoundError: If the document doesn't exist
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document. Deleting a missing document is not an error."""
        pass

    @abstractmethod
    async def commit_batch(self, operations: list[BatchOperation]) -> None:
        """
        Apply update/delete operations atomically: all or nothing.

        Raises:
            BatchCommitError: If any operation cannot be applied
        """
        pass


class LocalCacheInterface(ABC):
    """
    Key-value storage that survives restarts.

    Values are serialized JSON strings. The sync store is the only writer.
    """

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove_item(self, key: str) -> None:
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass


class BatchCommitError(StorageError):
    """An atomic batch was rejected; none of its operations were applied."""
    pass
