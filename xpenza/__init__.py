"""
Xpenza - Ledger Synchronization Core

Client-side state container for the Xpenza personal-finance tracker.
Users record income and expense transactions grouped into ledgers ("books");
this package keeps the local view of those records in step with a remote
document store.

DESIGN PRINCIPLES:
1. Local writes are applied immediately, the network confirms later
2. The remote store is the source of truth
3. Failures are visible as record state, never as exceptions in the UI
4. Every sync step is logged
5. Remote store, identity provider and cache are swappable
"""

__version__ = "1.0.0"
__author__ = "Xpenza Team"
