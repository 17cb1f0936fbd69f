"""Synchronization core: optimistic store, write registry and session wiring."""

from xpenza.sync.inflight import InFlightRegistry
from xpenza.sync.preferences import Preferences, PreferencesStore
from xpenza.sync.session import LedgerSession
from xpenza.sync.store import StoreState, SyncStore, newest_first

__all__ = [
    "InFlightRegistry",
    "LedgerSession",
    "Preferences",
    "PreferencesStore",
    "StoreState",
    "SyncStore",
    "newest_first",
]
