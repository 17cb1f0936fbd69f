"""
Ledger Session

Ties the store's live subscriptions to the signed-in user and the active
ledger:

- login: bootstrap ledgers, watch ledgers, watch the active ledger's
  transactions
- active ledger changes: cancel the transaction watch, watch the new ledger
- logout (or a different user): cancel every watch and reset the store
"""

import asyncio
from typing import Callable, Optional

import structlog

from xpenza.models.results import CommandResult
from xpenza.services.identity import IdentityProviderInterface
from xpenza.services.storage import Subscription
from xpenza.sync.store import StoreState, SyncStore

logger = structlog.get_logger("xpenza.sync.session")


class LedgerSession:
    """Subscription lifecycle of one app session."""

    def __init__(self, store: SyncStore, identity: IdentityProviderInterface):
        self._store = store
        self._identity = identity

        self._ledger_subscription: Optional[Subscription] = None
        self._transaction_subscription: Optional[Subscription] = None
        self._transaction_ledger_id: Optional[str] = None

        self._remove_identity_listener: Optional[Callable[[], None]] = None
        self._remove_state_listener: Optional[Callable[[], None]] = None
        self._opening: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self._ledger_subscription is not None

    @property
    def transaction_ledger_id(self) -> Optional[str]:
        """Ledger the live transaction watch is filtered on."""
        return self._transaction_ledger_id

    async def start(self) -> Optional[CommandResult]:
        """Follow identity changes; opens right away if a user is signed in."""
        if self._remove_identity_listener is None:
            self._remove_identity_listener = self._identity.on_change(self._on_identity_change)
        if self._identity.current_user_id:
            return await self.open()
        return None

    async def stop(self) -> None:
        if self._remove_identity_listener is not None:
            self._remove_identity_listener()
            self._remove_identity_listener = None
        self.close()

    async def wait_until_open(self) -> None:
        """Wait for an open scheduled by a login event."""
        if self._opening is not None:
            await asyncio.wait([self._opening])

    async def open(self) -> CommandResult:
        result = await self._store.initialize_ledgers()
        if not result.ok:
            logger.warning(
                "session_bootstrap_failed",
                status=result.status.value,
                error=result.error_message,
            )
            return result

        if not self._identity.current_user_id:
            return result  # Signed out while bootstrapping

        self.close()
        self._ledger_subscription = self._store.subscribe_to_ledgers().subscription
        self._resubscribe_transactions()
        self._remove_state_listener = self._store.subscribe_state(self._on_state_change)
        logger.info("session_opened", active_ledger_id=self._store.active_ledger_id)
        return result

    def close(self) -> None:
        """Cancel every watch this session holds."""
        if self._remove_state_listener is not None:
            self._remove_state_listener()
            self._remove_state_listener = None
        if self._transaction_subscription is not None:
            self._transaction_subscription.cancel()
            self._transaction_subscription = None
        if self._ledger_subscription is not None:
            self._ledger_subscription.cancel()
            self._ledger_subscription = None
        self._transaction_ledger_id = None

    def _on_identity_change(self, user_id: Optional[str]) -> None:
        if self._opening is not None and not self._opening.done():
            self._opening.cancel()
        self.close()
        self._store.reset()
        if user_id:
            self._opening = asyncio.get_running_loop().create_task(self.open())
        logger.info("session_identity_changed", signed_in=bool(user_id))

    def _on_state_change(self, previous: StoreState, current: StoreState) -> None:
        if current.active_ledger_id != self._transaction_ledger_id:
            self._resubscribe_transactions()

    def _resubscribe_transactions(self) -> None:
        if self._transaction_subscription is not None:
            self._transaction_subscription.cancel()
            self._transaction_subscription = None

        # Set before subscribing: the initial snapshot re-enters _on_state_change
        self._transaction_ledger_id = self._store.active_ledger_id
        if self._transaction_ledger_id is None:
            return
        result = self._store.subscribe_to_transactions()
        self._transaction_subscription = result.subscription
