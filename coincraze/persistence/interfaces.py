from __future__ import annotations

from typing import Optional, Protocol


class StorageKeys:
    CASH_BALANCE = "cash_balance"
    OWNED_QUANTITY = "owned_quantity"
    INVESTED_COST = "invested_cost"
    REFERENCE_PRICE = "reference_price"
    LAST_SUCCESSFUL_PRICE = "last_successful_price"
    LAST_PRICE_SOURCE = "last_price_source"
    LAST_PRICE_UPDATE_TIME = "last_price_update_time"  # epoch milliseconds


class KeyValueStore(Protocol):
    """Durable string key-value store.

    Implementations raise ``PersistenceUnavailable`` when the backend fails.
    Writes are not transactional across keys; last write wins.
    """

    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if absent."""

    def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    def delete(self, key: str) -> None:
        """Remove a key if present."""
