"""
Synchronization Store

The in-memory state container of a signed-in session: ledgers, the
transactions of the active ledger, and categories.

WRITE PROTOCOL:
1. A command applies its change to local state immediately (optimistic)
2. The remote write runs in a task tracked by the in-flight registry
3. On success the record is confirmed (server id substituted)
4. On failure the record is kept but flagged unsynced - except deletes,
   which put the deleted records back where they were
5. After reset() (logout) outcomes of older writes are dropped

Live subscriptions push remote snapshots into the same state. Pushed
documents are matched to local records through their client_key, so a
push that overtakes a pending insert never duplicates it.

All mutations happen on the event loop and replace an immutable
StoreState; no locks are needed.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, ValidationError

from xpenza.audit import SyncAuditLogger
from xpenza.config import SyncSettings, get_settings
from xpenza.models.audit import (
    SyncEvent,
    SyncEventBuilder,
    SyncEventType,
    SyncSeverity,
)
from xpenza.models.finance import (
    DEFAULT_CATEGORIES,
    Category,
    CategoryType,
    Ledger,
    RecordState,
    Transaction,
    TransactionDraft,
    TransactionPatch,
    TransactionType,
    utc_now,
)
from xpenza.models.results import CommandResult, PreconditionReason
from xpenza.services.identity import IdentityProviderInterface
from xpenza.services.storage import (
    CATEGORIES,
    LEDGERS,
    TRANSACTIONS,
    BatchOperation,
    Document,
    DocumentStoreInterface,
    LocalCacheInterface,
    StorageError,
    Subscription,
)
from xpenza.sync.inflight import InFlightRegistry

Record = TypeVar("Record", Transaction, Ledger)


class StoreState(BaseModel):
    """Immutable snapshot of everything the store holds."""
    model_config = ConfigDict(frozen=True)

    transactions: tuple[Transaction, ...] = ()
    categories: tuple[Category, ...] = DEFAULT_CATEGORIES
    ledgers: tuple[Ledger, ...] = ()
    active_ledger_id: Optional[str] = None


StateListener = Callable[[StoreState, StoreState], None]


def _created_key(record: Transaction | Ledger) -> datetime:
    created = record.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created


def newest_first(records: Iterable[Record]) -> tuple[Record, ...]:
    """Sort by creation time, newest first (remote order is not trusted)."""
    return tuple(sorted(records, key=_created_key, reverse=True))


def _find_by_key(records: Iterable[Record], client_key: str) -> Optional[Record]:
    for record in records:
        if record.client_key == client_key:
            return record
    return None


def _find_by_id(records: Iterable[Record], record_id: str) -> Optional[Record]:
    """Match either the current id or the client_key (the original temp id)."""
    for record in records:
        if record.id == record_id or record.client_key == record_id:
            return record
    return None


class SyncStore:
    """
    Optimistic local state mediating between the UI and the remote store.

    Commands return a CommandResult as soon as the local change is
    applied; remote confirmation happens later. Use wait_for_sync() to
    wait for every in-flight write (tests, shutdown).
    """

    def __init__(
        self,
        remote: DocumentStoreInterface,
        identity: IdentityProviderInterface,
        cache: Optional[LocalCacheInterface] = None,
        audit_logger: Optional[SyncAuditLogger] = None,
        settings: Optional[SyncSettings] = None,
        cache_key: Optional[str] = None,
    ):
        self._remote = remote
        self._identity = identity
        self._cache = cache
        self._settings = settings or get_settings().sync
        self._cache_key = cache_key or get_settings().cache.store_key
        self._audit = audit_logger or SyncAuditLogger(self._settings.recent_event_buffer)

        self._state = StoreState()
        self._listeners: list[StateListener] = []
        self._inflight = InFlightRegistry()
        self._bootstrap_lock = asyncio.Lock()

        # client_key -> server id, for every record known to be on the remote store
        self._server_ids: dict[str, str] = {}
        # Outcome of the last finished remote write per client_key
        self._write_outcomes: dict[str, RecordState] = {}
        # Ids and client_keys of records deleted locally whose remote delete
        # has not finished; pushes must not bring them back
        self._deleting: set[str] = set()
        # Bumped by reset(); work started under an older value must not touch state
        self._generation = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def transactions(self) -> tuple[Transaction, ...]:
        return self._state.transactions

    @property
    def ledgers(self) -> tuple[Ledger, ...]:
        return self._state.ledgers

    @property
    def categories(self) -> tuple[Category, ...]:
        return self._state.categories

    @property
    def active_ledger_id(self) -> Optional[str]:
        return self._state.active_ledger_id

    @property
    def active_ledger(self) -> Optional[Ledger]:
        if self._state.active_ledger_id is None:
            return None
        return self.find_ledger(self._state.active_ledger_id)

    @property
    def audit_logger(self) -> SyncAuditLogger:
        return self._audit

    @property
    def inflight(self) -> InFlightRegistry:
        return self._inflight

    def find_transaction(self, record_id: str) -> Optional[Transaction]:
        return _find_by_id(self._state.transactions, record_id)

    def find_ledger(self, ledger_id: str) -> Optional[Ledger]:
        return _find_by_id(self._state.ledgers, ledger_id)

    def categories_for(self, transaction_type: TransactionType) -> list[Category]:
        """Categories offered when entering a transaction of this type."""
        return [c for c in self._state.categories if c.applies_to(transaction_type)]

    def subscribe_state(self, listener: StateListener) -> Callable[[], None]:
        """Call `listener(previous, current)` after every state change."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def wait_for_sync(self) -> None:
        """Wait until no remote write is in flight."""
        await self._inflight.drain()

    # ------------------------------------------------------------------
    # Local cache
    # ------------------------------------------------------------------

    def rehydrate(self) -> bool:
        """
        Load the cached state, once, at startup.

        Writes that were in flight when the process died are lost, so
        pending records come back as unsynced.
        """
        if self._cache is None:
            return False
        try:
            raw = self._cache.get_item(self._cache_key)
        except StorageError as e:
            self._log_cache_problem("Could not read cached state", e)
            return False
        if not raw:
            return False

        try:
            cached = StoreState.model_validate_json(raw)
        except ValidationError as e:
            self._log_cache_problem("Cached state is unreadable; starting empty", e)
            return False

        transactions = tuple(self._settle_restored(t) for t in cached.transactions)
        ledgers = tuple(self._settle_restored(l) for l in cached.ledgers)
        self._remember(transactions)
        self._remember(ledgers)
        self._set_state(
            transactions=newest_first(transactions),
            categories=cached.categories,
            ledgers=ledgers,
            active_ledger_id=cached.active_ledger_id,
        )
        self._audit.log(SyncEvent(
            event_type=SyncEventType.CACHE_REHYDRATED,
            description="State restored from local cache",
            details={"transactions": len(transactions), "ledgers": len(ledgers)},
        ))
        return True

    def reset(self) -> None:
        """
        Forget the session's data (logout).

        In-flight writes still reach the remote store, but their outcomes
        (confirmations, rollbacks) are no longer applied.
        """
        self._generation += 1
        self._server_ids.clear()
        self._write_outcomes.clear()
        self._deleting.clear()
        self._set_state(
            transactions=(),
            categories=DEFAULT_CATEGORIES,
            ledgers=(),
            active_ledger_id=None,
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def add_transaction(self, draft: TransactionDraft) -> CommandResult:
        user_id = self._identity.current_user_id
        if not user_id:
            return self._skip("add_transaction", PreconditionReason.NO_SESSION)
        ledger_id = self._state.active_ledger_id
        if not ledger_id:
            return self._skip("add_transaction", PreconditionReason.NO_ACTIVE_LEDGER)

        temp_id = self._new_temp_id()
        now = utc_now()
        transaction = Transaction(
            id=temp_id,
            client_key=temp_id,
            owner_id=user_id,
            ledger_id=ledger_id,
            title=draft.resolved_title(),
            amount=draft.amount,
            date=draft.date or now.date(),
            category=draft.category,
            type=draft.type,
            note=draft.note,
            created_at=now,
            state=RecordState.PENDING,
        )
        self._set_state(transactions=(transaction,) + self._state.transactions)
        self._audit.log(SyncEventBuilder.record_added("transaction", temp_id))

        # A ledger that is itself still pending must reach the store first
        after = (ledger_id,) if self._is_temporary(ledger_id) else ()
        self._inflight.submit(
            temp_id, self._push_new_transaction, temp_id, self._generation, after=after
        )
        return CommandResult.success(temp_id)

    async def update_transaction(self, record_id: str, patch: TransactionPatch) -> CommandResult:
        if not self._identity.current_user_id:
            return self._skip("update_transaction", PreconditionReason.NO_SESSION)
        record = self.find_transaction(record_id)
        if record is None:
            return self._skip("update_transaction", PreconditionReason.NOT_FOUND, record_id)

        changes = patch.changes()
        if not changes:
            return CommandResult.success(record.id)

        self._update_records(
            "transactions",
            record.client_key,
            **changes,
            updated_at=utc_now(),
            state=RecordState.PENDING,
        )
        self._audit.log(SyncEvent(
            event_type=SyncEventType.TRANSACTION_UPDATED,
            severity=SyncSeverity.DEBUG,
            entity_type="transaction",
            entity_id=record.id,
            correlation_id=record.client_key,
            description="Transaction patched locally",
            details={"fields": sorted(changes)},
        ))
        self._inflight.submit(
            record.client_key,
            self._push_transaction_update,
            record.client_key,
            patch.remote_changes(),
            self._generation,
        )
        return CommandResult.success(record.id)

    async def delete_transaction(self, record_id: str) -> CommandResult:
        if not self._identity.current_user_id:
            return self._skip("delete_transaction", PreconditionReason.NO_SESSION)
        record = self.find_transaction(record_id)
        if record is None:
            return self._skip("delete_transaction", PreconditionReason.NOT_FOUND, record_id)

        snapshot = self._state.transactions
        self._set_state(
            transactions=tuple(t for t in snapshot if t.client_key != record.client_key)
        )
        self._audit.log(SyncEvent(
            event_type=SyncEventType.TRANSACTION_DELETED,
            severity=SyncSeverity.DEBUG,
            entity_type="transaction",
            entity_id=record.id,
            correlation_id=record.client_key,
            description="Transaction removed locally",
        ))
        refs = {record.id, record.client_key}
        self._deleting.update(refs)
        self._inflight.submit(
            record.client_key,
            self._push_transaction_delete,
            record,
            snapshot,
            refs,
            self._generation,
        )
        return CommandResult.success(record.id)

    async def fetch_transactions(self) -> CommandResult:
        """One-shot pull of the active ledger's transactions."""
        user_id = self._identity.current_user_id
        if not user_id:
            return self._skip("fetch_transactions", PreconditionReason.NO_SESSION)
        ledger_id = self._state.active_ledger_id
        if not ledger_id:
            return self._skip("fetch_transactions", PreconditionReason.NO_ACTIVE_LEDGER)

        generation = self._generation
        try:
            documents = await self._remote.list_documents(
                TRANSACTIONS, {"owner_id": user_id, "ledger_id": ledger_id}
            )
        except StorageError as e:
            self._audit.log_fetch_failed(TRANSACTIONS, e)
            return CommandResult.remote_failed(str(e))

        if self._is_stale(generation):
            return self._skip("fetch_transactions", PreconditionReason.NO_SESSION)
        self._apply_transaction_snapshot(ledger_id, documents)
        return CommandResult.success()

    def subscribe_to_transactions(self) -> CommandResult:
        """
        Watch the active ledger's transactions.

        The ledger filter is fixed at subscribe time: cancel the returned
        subscription and subscribe again when the active ledger changes.
        """
        user_id = self._identity.current_user_id
        if not user_id:
            return self._skip("subscribe_to_transactions", PreconditionReason.NO_SESSION)
        ledger_id = self._state.active_ledger_id
        if not ledger_id:
            return self._skip("subscribe_to_transactions", PreconditionReason.NO_ACTIVE_LEDGER)

        subscription = self._watch(
            TRANSACTIONS,
            {"owner_id": user_id, "ledger_id": ledger_id},
            lambda documents: self._apply_transaction_snapshot(ledger_id, documents),
        )
        return CommandResult.success(ledger_id, subscription=subscription)

    # ------------------------------------------------------------------
    # Ledgers
    # ------------------------------------------------------------------

    async def add_ledger(
        self,
        name: str,
        icon: Optional[str] = None,
        color: Optional[str] = None,
    ) -> CommandResult:
        user_id = self._identity.current_user_id
        if not user_id:
            return self._skip("add_ledger", PreconditionReason.NO_SESSION)

        temp_id = self._new_temp_id()
        ledger = Ledger(
            id=temp_id,
            client_key=temp_id,
            owner_id=user_id,
            name=name,
            icon=icon or self._settings.default_ledger_icon,
            color=color or self._settings.default_ledger_color,
            state=RecordState.PENDING,
        )
        changes = {"ledgers": self._state.ledgers + (ledger,)}
        if self._state.active_ledger_id is None:
            changes["active_ledger_id"] = temp_id
        self._set_state(**changes)
        self._audit.log(SyncEventBuilder.record_added("ledger", temp_id))

        self._inflight.submit(temp_id, self._push_new_ledger, temp_id, self._generation)
        return CommandResult.success(temp_id)

    async def set_active_ledger(self, ledger_id: str) -> CommandResult:
        ledger = self.find_ledger(ledger_id)
        if ledger is None:
            return self._skip("set_active_ledger", PreconditionReason.NOT_FOUND, ledger_id)
        if ledger.id != self._state.active_ledger_id:
            self._set_state(active_ledger_id=ledger.id)
        return CommandResult.success(ledger.id)

    async def delete_ledger(self, ledger_id: str) -> CommandResult:
        """
        Delete a ledger and every transaction in it.

        Removed locally at once; the remote side is a single atomic batch.
        If the batch fails, ledgers, active pointer and transactions are
        restored from the snapshot taken here.
        """
        user_id = self._identity.current_user_id
        if not user_id:
            return self._skip("delete_ledger", PreconditionReason.NO_SESSION)
        ledger = self.find_ledger(ledger_id)
        if ledger is None:
            return self._skip("delete_ledger", PreconditionReason.NOT_FOUND, ledger_id)

        snapshot = self._state
        ledger_refs = {ledger.id, ledger.client_key}
        removed = [t for t in snapshot.transactions if t.ledger_id in ledger_refs]
        remaining = tuple(l for l in snapshot.ledgers if l.client_key != ledger.client_key)

        active = snapshot.active_ledger_id
        if active in ledger_refs:
            # Any remaining ledger will do
            active = remaining[0].id if remaining else None

        self._set_state(
            ledgers=remaining,
            active_ledger_id=active,
            transactions=tuple(
                t for t in snapshot.transactions if t.ledger_id not in ledger_refs
            ),
        )
        self._audit.log(SyncEvent(
            event_type=SyncEventType.LEDGER_DELETED,
            entity_type="ledger",
            entity_id=ledger.id,
            correlation_id=ledger.client_key,
            description=f"Ledger removed locally with {len(removed)} transactions",
        ))

        refs = set(ledger_refs)
        for t in removed:
            refs.update((t.id, t.client_key))
        self._deleting.update(refs)

        # Inserts still on the wire must land before the batch looks for them
        self._inflight.submit(
            ledger.client_key,
            self._push_ledger_delete,
            ledger,
            user_id,
            snapshot,
            active,
            refs,
            self._generation,
            after=[t.client_key for t in removed],
        )
        return CommandResult.success(ledger.id)

    async def fetch_ledgers(self) -> CommandResult:
        user_id = self._identity.current_user_id
        if not user_id:
            return self._skip("fetch_ledgers", PreconditionReason.NO_SESSION)

        generation = self._generation
        try:
            documents = await self._remote.list_documents(LEDGERS, {"owner_id": user_id})
        except StorageError as e:
            self._audit.log_fetch_failed(LEDGERS, e)
            return CommandResult.remote_failed(str(e))

        if self._is_stale(generation):
            return self._skip("fetch_ledgers", PreconditionReason.NO_SESSION)
        self._apply_ledger_snapshot(documents)
        return CommandResult.success(self._state.active_ledger_id)

    def subscribe_to_ledgers(self) -> CommandResult:
        user_id = self._identity.current_user_id
        if not user_id:
            return self._skip("subscribe_to_ledgers", PreconditionReason.NO_SESSION)

        subscription = self._watch(
            LEDGERS, {"owner_id": user_id}, self._apply_ledger_snapshot
        )
        return CommandResult.success(subscription=subscription)

    async def initialize_ledgers(self) -> CommandResult:
        """
        Make sure the user has at least one ledger.

        With no remote ledgers, creates the default book, activates it and
        moves ledger-less transactions onto it. Otherwise re-fetches.
        Safe to call repeatedly.
        """
        user_id = self._identity.current_user_id
        if not user_id:
            return self._skip("initialize_ledgers", PreconditionReason.NO_SESSION)

        generation = self._generation
        async with self._bootstrap_lock:
            try:
                documents = await self._remote.list_documents(LEDGERS, {"owner_id": user_id})
            except StorageError as e:
                self._audit.log_fetch_failed(LEDGERS, e)
                return CommandResult.remote_failed(str(e))

            if self._is_stale(generation):
                return self._skip("initialize_ledgers", PreconditionReason.NO_SESSION)
            if documents:
                self._apply_ledger_snapshot(documents)
                return CommandResult.success(self._state.active_ledger_id)

            client_key = self._new_temp_id()
            ledger = Ledger(
                id=client_key,
                client_key=client_key,
                owner_id=user_id,
                name=self._settings.default_ledger_name,
                icon=self._settings.default_ledger_icon,
                color=self._settings.default_ledger_color,
            )
            try:
                server_id = await self._remote.create(LEDGERS, ledger.to_document())
            except StorageError as e:
                self._audit.log_remote_write_failed("ledger", client_key, "create", e)
                return CommandResult.remote_failed(str(e))

            if self._is_stale(generation):
                return self._skip("initialize_ledgers", PreconditionReason.NO_SESSION)
            self._server_ids[client_key] = server_id
            ledger = ledger.model_copy(update={"id": server_id})
            others = tuple(l for l in self._state.ledgers if l.client_key != client_key)
            self._set_state(
                ledgers=newest_first(others + (ledger,)),
                active_ledger_id=server_id,
            )
            migrated = await self._migrate_orphans(user_id, server_id, generation)
            self._audit.log(SyncEvent(
                event_type=SyncEventType.LEDGERS_INITIALIZED,
                entity_type="ledger",
                entity_id=server_id,
                correlation_id=client_key,
                description=f"Created default ledger '{ledger.name}'",
                details={"migrated_transactions": migrated},
            ))
            return CommandResult.success(server_id)

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    async def add_category(
        self,
        name: str,
        icon: str = "grid",
        category_type: Optional[CategoryType] = None,
    ) -> CommandResult:
        """Persist a custom category, then append it (not optimistic)."""
        user_id = self._identity.current_user_id
        if not user_id:
            return self._skip("add_category", PreconditionReason.NO_SESSION)
        if any(c.name.lower() == name.strip().lower() for c in self._state.categories):
            return self._skip("add_category", PreconditionReason.DUPLICATE)

        generation = self._generation
        category = Category(
            id=self._new_temp_id(),
            name=name,
            icon=icon,
            is_custom=True,
            type=category_type,
        )
        try:
            doc_id = await self._remote.create(CATEGORIES, category.to_document(user_id))
        except StorageError as e:
            self._audit.log_remote_write_failed("category", category.id, "create", e)
            return CommandResult.remote_failed(str(e))

        if self._is_stale(generation):
            return self._skip("add_category", PreconditionReason.NO_SESSION)
        category = category.model_copy(update={"id": doc_id})
        self._set_state(categories=self._state.categories + (category,))
        self._audit.log(SyncEvent(
            event_type=SyncEventType.CATEGORY_ADDED,
            entity_type="category",
            entity_id=doc_id,
            description=f"Custom category '{category.name}' added",
        ))
        return CommandResult.success(doc_id)

    async def fetch_categories(self) -> CommandResult:
        """Rebuild categories as the built-in set plus the user's custom ones."""
        user_id = self._identity.current_user_id
        if not user_id:
            return self._skip("fetch_categories", PreconditionReason.NO_SESSION)

        generation = self._generation
        try:
            documents = await self._remote.list_documents(CATEGORIES, {"owner_id": user_id})
        except StorageError as e:
            self._audit.log_fetch_failed(CATEGORIES, e)
            return CommandResult.remote_failed(str(e))

        if self._is_stale(generation):
            return self._skip("fetch_categories", PreconditionReason.NO_SESSION)
        custom = []
        for document in documents:
            try:
                custom.append(Category.from_document(document.id, document.data))
            except (KeyError, ValidationError):
                continue  # Skip malformed documents
        builtin_ids = {c.id for c in DEFAULT_CATEGORIES}
        self._set_state(
            categories=DEFAULT_CATEGORIES + tuple(c for c in custom if c.id not in builtin_ids)
        )
        return CommandResult.success()

    # ------------------------------------------------------------------
    # Remote writes (run inside in-flight tasks)
    # ------------------------------------------------------------------

    async def _push_new_transaction(self, client_key: str, generation: int) -> Optional[str]:
        if self._is_stale(generation):
            return None
        record = _find_by_key(self._state.transactions, client_key)
        if record is None:
            return None  # Deleted before the write started

        if record.ledger_id and self._is_temporary(record.ledger_id):
            self._finish_write("transactions", client_key, RecordState.UNSYNCED)
            self._audit.log_remote_write_failed(
                "transaction",
                client_key,
                "create",
                StorageError(f"ledger {record.ledger_id} has not reached the remote store"),
            )
            return None

        try:
            server_id = await self._remote.create(TRANSACTIONS, record.to_document())
        except StorageError as e:
            self._audit.log_remote_write_failed("transaction", client_key, "create", e)
            if not self._is_stale(generation):
                self._finish_write("transactions", client_key, RecordState.UNSYNCED)
            return None

        if self._is_stale(generation):
            return server_id
        self._server_ids[client_key] = server_id
        current = _find_by_key(self._state.transactions, client_key)
        already_pushed = current is not None and current.id == server_id
        self._finish_write("transactions", client_key, RecordState.CONFIRMED, id=server_id)
        self._audit.log(SyncEventBuilder.record_confirmed(
            "transaction", client_key, server_id, already_pushed=already_pushed
        ))
        return server_id

    async def _push_transaction_update(
        self,
        client_key: str,
        fields: dict,
        generation: int,
    ) -> Optional[str]:
        if self._is_stale(generation):
            return None
        record = _find_by_key(self._state.transactions, client_key)
        if record is None:
            return None  # Deleted meanwhile

        if self._is_temporary(record.id):
            # The insert never reached the remote store; this edit retries it
            return await self._push_new_transaction(client_key, generation)

        payload = dict(fields)
        if record.updated_at is not None:
            payload["updated_at"] = record.updated_at.isoformat()
        try:
            await self._remote.update(TRANSACTIONS, record.id, payload)
        except StorageError as e:
            self._audit.log_remote_write_failed(
                "transaction", client_key, "update", e, entity_id=record.id
            )
            if not self._is_stale(generation):
                self._finish_write("transactions", client_key, RecordState.UNSYNCED)
            return record.id

        if not self._is_stale(generation):
            self._finish_write("transactions", client_key, RecordState.CONFIRMED)
        return record.id

    async def _push_transaction_delete(
        self,
        record: Transaction,
        snapshot: tuple[Transaction, ...],
        refs: set[str],
        generation: int,
    ) -> Optional[str]:
        # None: the insert never reached the remote store, nothing to delete
        server_id = self._server_id_of(record)
        try:
            if server_id is not None:
                await self._remote.delete(TRANSACTIONS, server_id)
        except StorageError as e:
            self._audit.log_delete_reverted("transaction", record.client_key, server_id, e)
            if not self._is_stale(generation):
                self._set_state(transactions=self._restore(
                    self._state.transactions, snapshot, {record.client_key}, record.client_key
                ))
            return None
        finally:
            self._deleting.difference_update(refs)
        return server_id

    async def _push_new_ledger(self, client_key: str, generation: int) -> Optional[str]:
        if self._is_stale(generation):
            return None
        ledger = _find_by_key(self._state.ledgers, client_key)
        if ledger is None:
            return None

        try:
            server_id = await self._remote.create(LEDGERS, ledger.to_document())
        except StorageError as e:
            self._audit.log_remote_write_failed("ledger", client_key, "create", e)
            if not self._is_stale(generation):
                self._finish_write("ledgers", client_key, RecordState.UNSYNCED)
            return None

        if self._is_stale(generation):
            return server_id
        self._server_ids[client_key] = server_id
        current = _find_by_key(self._state.ledgers, client_key)
        already_pushed = current is not None and current.id == server_id

        active = self._state.active_ledger_id
        if active == client_key:
            active = server_id
        self._write_outcomes[client_key] = RecordState.CONFIRMED
        self._set_state(
            ledgers=tuple(
                l.model_copy(update={"id": server_id, "state": RecordState.CONFIRMED})
                if l.client_key == client_key else l
                for l in self._state.ledgers
            ),
            active_ledger_id=active,
            transactions=self._remap_ledger_refs(self._state.transactions),
        )
        self._audit.log(SyncEventBuilder.record_confirmed(
            "ledger", client_key, server_id, already_pushed=already_pushed
        ))
        return server_id

    async def _push_ledger_delete(
        self,
        ledger: Ledger,
        owner_id: str,
        snapshot: StoreState,
        fallback: Optional[str],
        refs: set[str],
        generation: int,
    ) -> Optional[str]:
        server_id = self._server_id_of(ledger)
        try:
            if server_id is None:
                return None  # Never reached the remote store
            refs.add(server_id)
            self._deleting.add(server_id)

            documents = await self._remote.list_documents(
                TRANSACTIONS, {"owner_id": owner_id, "ledger_id": server_id}
            )
            refs.update(d.id for d in documents)
            self._deleting.update(refs)
            operations = [BatchOperation.delete(TRANSACTIONS, d.id) for d in documents]
            operations.append(BatchOperation.delete(LEDGERS, server_id))
            await self._remote.commit_batch(operations)
        except StorageError as e:
            self._audit.log_delete_reverted("ledger", ledger.client_key, server_id, e)
            if not self._is_stale(generation):
                self._revert_ledger_delete(ledger, snapshot, fallback)
            return None
        finally:
            self._deleting.difference_update(refs)
        return server_id

    def _revert_ledger_delete(
        self,
        ledger: Ledger,
        snapshot: StoreState,
        fallback: Optional[str],
    ) -> None:
        """Put the ledger and its transactions back next to their old neighbours."""
        ledger_refs = {ledger.id, ledger.client_key}
        removed = {t.client_key for t in snapshot.transactions if t.ledger_id in ledger_refs}

        # The pointer goes back only if nobody moved it since the delete
        active = self._state.active_ledger_id
        if active == self._server_ids.get(fallback, fallback):
            active = self._server_ids.get(snapshot.active_ledger_id, snapshot.active_ledger_id)

        self._set_state(
            ledgers=self._restore(
                self._state.ledgers, snapshot.ledgers, {ledger.client_key}, ledger.client_key
            ),
            active_ledger_id=active,
            transactions=self._remap_ledger_refs(self._restore(
                self._state.transactions, snapshot.transactions, removed, ledger.client_key
            )),
        )

    async def _migrate_orphans(self, owner_id: str, ledger_id: str, generation: int) -> int:
        """Attach transactions written before ledgers existed to `ledger_id`."""
        try:
            documents = await self._remote.list_documents(TRANSACTIONS, {"owner_id": owner_id})
            orphans = [d.id for d in documents if not d.data.get("ledger_id")]
            if not orphans:
                return 0
            await self._remote.commit_batch([
                BatchOperation.update(TRANSACTIONS, doc_id, {"ledger_id": ledger_id})
                for doc_id in orphans
            ])
        except StorageError as e:
            self._audit.log(SyncEvent(
                event_type=SyncEventType.TRANSACTIONS_MIGRATED,
                severity=SyncSeverity.ERROR,
                entity_type="ledger",
                entity_id=ledger_id,
                description="Migration of ledger-less transactions failed",
                error_message=str(e),
            ))
            return 0

        if not self._is_stale(generation):
            migrated = set(orphans)
            self._set_state(transactions=tuple(
                t.model_copy(update={"ledger_id": ledger_id})
                if t.id in migrated and not t.ledger_id else t
                for t in self._state.transactions
            ))
        self._audit.log(SyncEvent(
            event_type=SyncEventType.TRANSACTIONS_MIGRATED,
            entity_type="ledger",
            entity_id=ledger_id,
            description=f"Moved {len(orphans)} ledger-less transactions",
            details={"count": len(orphans)},
        ))
        return len(orphans)

    # ------------------------------------------------------------------
    # Snapshots (pulls and pushes)
    # ------------------------------------------------------------------

    def _watch(
        self,
        collection: str,
        filters: dict,
        apply: Callable[[list[Document]], None],
    ) -> Subscription:
        subscription = Subscription()

        def on_snapshot(documents: list[Document]) -> None:
            if subscription.active:
                apply(documents)

        remote_subscription = self._remote.watch(collection, filters, on_snapshot)

        def stop() -> None:
            remote_subscription.cancel()
            self._audit.log(SyncEvent(
                event_type=SyncEventType.SUBSCRIPTION_CANCELLED,
                severity=SyncSeverity.DEBUG,
                entity_type=collection,
                description=f"Stopped watching {collection}",
                details={"filters": filters},
            ))

        subscription.attach(stop)
        self._audit.log(SyncEvent(
            event_type=SyncEventType.SUBSCRIPTION_STARTED,
            severity=SyncSeverity.DEBUG,
            entity_type=collection,
            description=f"Watching {collection}",
            details={"filters": filters},
        ))
        return subscription

    def _merge_snapshot(
        self,
        remote: list[Record],
        local: tuple[Record, ...],
        keep_local: Callable[[Record], bool],
    ) -> list[Record]:
        """
        Remote documents replace local records, except that:
        - a local record with a write still in flight keeps its local fields
        - unconfirmed local inserts missing from the snapshot are kept
        """
        local_by_key = {r.client_key: r for r in local}
        merged = []
        seen = set()
        for record in remote:
            if record.client_key in seen:
                continue
            seen.add(record.client_key)
            self._server_ids[record.client_key] = record.id
            mine = local_by_key.get(record.client_key)
            if mine is not None and self._inflight.is_busy(record.client_key):
                record = mine.model_copy(update={"id": record.id})
            merged.append(record)

        merged.extend(
            r for r in local
            if r.client_key not in seen and self._is_temporary(r.id) and keep_local(r)
        )
        return merged

    def _parse_snapshot(self, model: type[Record], documents: list[Document]) -> list[Record]:
        """Documents as records, minus malformed ones and those being deleted."""
        records = []
        for document in documents:
            if document.id in self._deleting:
                continue
            try:
                record = model.from_document(document.id, document.data)
            except ValidationError:
                continue  # Skip malformed documents
            if record.client_key not in self._deleting:
                records.append(record)
        return records

    def _apply_transaction_snapshot(self, ledger_id: str, documents: list[Document]) -> None:
        remote = self._parse_snapshot(Transaction, documents)

        merged = self._merge_snapshot(
            remote,
            self._state.transactions,
            lambda t: t.ledger_id == ledger_id,
        )
        self._set_state(transactions=newest_first(merged))
        self._audit.log(SyncEventBuilder.snapshot_applied(
            TRANSACTIONS, len(remote), len(merged) - len(remote)
        ))

    def _apply_ledger_snapshot(self, documents: list[Document]) -> None:
        remote = self._parse_snapshot(Ledger, documents)

        ledgers = newest_first(
            self._merge_snapshot(remote, self._state.ledgers, lambda l: True)
        )

        active = self._state.active_ledger_id
        if active is not None:
            # A temporary pointer follows its ledger once confirmed
            active = self._server_ids.get(active, active)
        if active is None or _find_by_id(ledgers, active) is None:
            active = ledgers[0].id if ledgers else None

        self._set_state(
            ledgers=ledgers,
            active_ledger_id=active,
            transactions=self._remap_ledger_refs(self._state.transactions),
        )
        self._audit.log(SyncEventBuilder.snapshot_applied(
            LEDGERS, len(remote), len(ledgers) - len(remote)
        ))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_state(self, **changes) -> None:
        previous = self._state
        self._state = previous.model_copy(update=changes)
        self._persist()
        for listener in list(self._listeners):
            listener(previous, self._state)

    def _persist(self) -> None:
        if self._cache is None:
            return
        try:
            self._cache.set_item(self._cache_key, self._state.model_dump_json())
        except StorageError as e:
            self._log_cache_problem("Could not write state to local cache", e)

    def _log_cache_problem(self, description: str, error: Exception) -> None:
        self._audit.log(SyncEvent(
            event_type=SyncEventType.CACHE_WRITE_FAILED,
            severity=SyncSeverity.WARNING,
            description=description,
            error_message=str(error),
        ))

    def _skip(
        self,
        command: str,
        reason: PreconditionReason,
        record_id: Optional[str] = None,
    ) -> CommandResult:
        self._audit.log_precondition_failed(command, reason.value)
        return CommandResult.precondition_failed(reason, record_id)

    def _new_temp_id(self) -> str:
        return f"{self._settings.temp_id_prefix}{uuid4().hex}"

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    def _is_temporary(self, record_id: str) -> bool:
        return record_id.startswith(self._settings.temp_id_prefix)

    def _server_id_of(self, record: Transaction | Ledger) -> Optional[str]:
        if not self._is_temporary(record.id):
            return record.id
        return self._server_ids.get(record.client_key)

    def _remember(self, records: Iterable[Transaction | Ledger]) -> None:
        for record in records:
            if not self._is_temporary(record.id):
                self._server_ids[record.client_key] = record.id

    def _update_records(self, collection: str, client_key: str, **changes) -> bool:
        records = getattr(self._state, collection)
        if _find_by_key(records, client_key) is None:
            return False
        self._set_state(**{collection: tuple(
            r.model_copy(update=changes) if r.client_key == client_key else r
            for r in records
        )})
        return True

    def _finish_write(
        self,
        collection: str,
        client_key: str,
        outcome: RecordState,
        **changes,
    ) -> None:
        """Settle a record after its remote write; stays pending if more writes are queued."""
        self._write_outcomes[client_key] = outcome
        state = RecordState.PENDING if self._inflight.pending(client_key) > 1 else outcome
        self._update_records(collection, client_key, state=state, **changes)

    def _settle_restored(self, record: Record) -> Record:
        if record.state == RecordState.PENDING:
            return record.model_copy(update={"state": RecordState.UNSYNCED})
        return record

    def _reconcile(self, records: tuple[Record, ...], running_key: str) -> tuple[Record, ...]:
        """
        Bring a snapshot taken before a rollback up to date with writes
        that finished since: confirmed ids, settled sync states.
        """
        result = []
        for record in records:
            changes = {}
            server_id = self._server_ids.get(record.client_key)
            if server_id and self._is_temporary(record.id):
                changes["id"] = server_id
            busy = self._inflight.pending(record.client_key) - (
                1 if record.client_key == running_key else 0
            )
            if record.state == RecordState.PENDING and busy <= 0:
                default = RecordState.CONFIRMED if server_id else RecordState.UNSYNCED
                changes["state"] = self._write_outcomes.get(record.client_key, default)
            result.append(record.model_copy(update=changes) if changes else record)
        return tuple(result)

    def _restore(
        self,
        current: tuple[Record, ...],
        snapshot: tuple[Record, ...],
        client_keys: set[str],
        running_key: str,
    ) -> tuple[Record, ...]:
        """
        Re-insert the snapshot records named by `client_keys` into `current`.

        Each one goes right after its nearest earlier snapshot neighbour that
        is still present. Records added or changed since the snapshot stay
        as they are.
        """
        present = {r.client_key for r in current}
        missing = {
            r.client_key: r
            for r in self._reconcile(
                tuple(r for r in snapshot if r.client_key in client_keys), running_key
            )
            if r.client_key not in present
        }
        if not missing:
            return current

        result = list(current)
        snapshot_keys = {r.client_key for r in snapshot}
        # Before the first surviving snapshot record; anything earlier is newer
        position = next(
            (i for i, r in enumerate(result) if r.client_key in snapshot_keys), len(result)
        )
        for record in snapshot:
            if record.client_key in missing:
                result.insert(position, missing[record.client_key])
                position += 1
                continue
            for index, kept in enumerate(result):
                if kept.client_key == record.client_key:
                    position = index + 1
                    break
        return tuple(result)

    def _remap_ledger_refs(self, transactions: tuple[Transaction, ...]) -> tuple[Transaction, ...]:
        """Point transactions at confirmed ledger ids instead of temporary ones."""
        return tuple(
            t.model_copy(update={"ledger_id": self._server_ids[t.ledger_id]})
            if t.ledger_id and self._is_temporary(t.ledger_id) and t.ledger_id in self._server_ids
            else t
            for t in transactions
        )
