"""
In-Memory Document Store

A complete implementation of the remote document store contract held in a
process-local dict. Used for tests and for running the app offline.

Watches behave like a hosted document database: every matching watcher
receives a full snapshot synchronously whenever a write touches its
collection, including writes whose caller has not resumed yet. That is
exactly the push-before-create-returns interleaving the sync store has to
reconcile.

Test controls:
- pause()/resume() hold every remote call at its suspension point
- fail_next() makes the next matching call raise StorageError
"""

import asyncio
import copy
from collections import defaultdict
from itertools import count
from typing import Any, Optional
from uuid import uuid4

from xpenza.services.storage.interface import (
    BatchCommitError,
    BatchOperation,
    BatchOperationType,
    Document,
    DocumentStoreInterface,
    NotFoundError,
    SnapshotCallback,
    StorageError,
    Subscription,
)


class InMemoryDocumentStore(DocumentStoreInterface):
    """Dict-backed document store with synchronous snapshot delivery."""

    def __init__(self):
        self._collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._watchers: dict[int, tuple[str, dict[str, Any], SnapshotCallback]] = {}
        self._watch_ids = count(1)
        self._gate = asyncio.Event()
        self._gate.set()
        self._failures: list[tuple[str, Optional[str], Exception]] = []

        # (operation, collection) of every call, in order
        self.calls: list[tuple[str, str]] = []
        self.unsubscribe_count = 0

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def pause(self) -> None:
        """Hold every remote call until resume()."""
        self._gate.clear()

    def resume(self) -> None:
        self._gate.set()

    def fail_next(
        self,
        operation: str,
        collection: Optional[str] = None,
        error: Optional[Exception] = None,
    ) -> None:
        """Make the next `operation` call (optionally on `collection`) fail."""
        self._failures.append(
            (operation, collection, error or StorageError(f"simulated {operation} failure"))
        )

    def seed(self, collection: str, data: dict[str, Any], doc_id: Optional[str] = None) -> str:
        """Insert a document directly, as if written by another client."""
        doc_id = doc_id or uuid4().hex
        self._collections[collection][doc_id] = copy.deepcopy(data)
        self._notify(collection)
        return doc_id

    def documents(self, collection: str) -> list[Document]:
        return [
            Document(id=doc_id, data=copy.deepcopy(data))
            for doc_id, data in self._collections[collection].items()
        ]

    @property
    def watcher_count(self) -> int:
        return len(self._watchers)

    # ------------------------------------------------------------------
    # DocumentStoreInterface
    # ------------------------------------------------------------------

    async def create(self, collection: str, data: dict[str, Any]) -> str:
        await self._enter("create", collection)
        doc_id = uuid4().hex
        self._collections[collection][doc_id] = copy.deepcopy(data)
        self._notify(collection)
        return doc_id

    async def list_documents(
        self,
        collection: str,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[Document]:
        await self._enter("list", collection)
        return self._matching(collection, filters or {})

    def watch(
        self,
        collection: str,
        filters: dict[str, Any],
        on_snapshot: SnapshotCallback,
    ) -> Subscription:
        watch_id = next(self._watch_ids)
        self._watchers[watch_id] = (collection, dict(filters), on_snapshot)

        def unsubscribe() -> None:
            self.unsubscribe_count += 1
            self._watchers.pop(watch_id, None)

        subscription = Subscription(unsubscribe)
        on_snapshot(self._matching(collection, filters))
        return subscription

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        await self._enter("update", collection)
        document = self._collections[collection].get(doc_id)
        if document is None:
            raise NotFoundError(f"{collection}/{doc_id} does not exist")
        document.update(copy.deepcopy(fields))
        self._notify(collection)

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._enter("delete", collection)
        if self._collections[collection].pop(doc_id, None) is not None:
            self._notify(collection)

    async def commit_batch(self, operations: list[BatchOperation]) -> None:
        await self._enter("batch", operations[0].collection if operations else "")

        # Validate everything before touching anything
        for operation in operations:
            if (
                operation.op == BatchOperationType.UPDATE
                and operation.doc_id not in self._collections[operation.collection]
            ):
                raise BatchCommitError(
                    f"{operation.collection}/{operation.doc_id} does not exist"
                )

        touched = set()
        for operation in operations:
            documents = self._collections[operation.collection]
            if operation.op == BatchOperationType.DELETE:
                documents.pop(operation.doc_id, None)
            else:
                documents[operation.doc_id].update(copy.deepcopy(operation.fields))
            touched.add(operation.collection)

        for collection in sorted(touched):
            self._notify(collection)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _enter(self, operation: str, collection: str) -> None:
        self.calls.append((operation, collection))
        # Every remote call is a suspension point
        await asyncio.sleep(0)
        await self._gate.wait()

        for index, (op, target, error) in enumerate(self._failures):
            if op == operation and target in (None, collection):
                del self._failures[index]
                raise error

    def _matching(self, collection: str, filters: dict[str, Any]) -> list[Document]:
        return [
            document
            for document in self.documents(collection)
            if document.matches(filters)
        ]

    def _notify(self, collection: str) -> None:
        for watch_id, (watched, filters, callback) in list(self._watchers.items()):
            if watched != collection or watch_id not in self._watchers:
                continue
            callback(self._matching(collection, filters))
