"""Persistence boundary.

The ledger and the oracle only ever talk to ``LedgerPersistence``; it wraps a
``KeyValueStore`` and contains store failures so in-memory state stays
authoritative for the session.
"""

from .adapter import LedgerPersistence
from .interfaces import KeyValueStore, StorageKeys

__all__ = ["KeyValueStore", "LedgerPersistence", "StorageKeys"]
