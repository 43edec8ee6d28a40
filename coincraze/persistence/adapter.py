"""Persistence adapter for ledger and oracle state.

Encodes Decimals and timestamps as strings and contains store failures:
a read that fails returns the default, a write that fails returns False.
Nothing here raises ``PersistenceUnavailable`` to its callers.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from coincraze.errors import PersistenceUnavailable
from coincraze.persistence.interfaces import KeyValueStore, StorageKeys
from coincraze.types import ZERO, LedgerState, PriceSample

logger = logging.getLogger(__name__)

PERSISTED_SOURCE = "persisted"


def _to_epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class LedgerPersistence:
    """Reads and writes ledger/oracle state through a key-value store."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self.write_failures = 0

    @property
    def store(self) -> KeyValueStore:
        return self._store

    # ========== Raw access ==========

    def _get(self, key: str) -> Optional[str]:
        try:
            return self._store.get(key)
        except PersistenceUnavailable as exc:
            logger.warning("Persistence read failed for %s: %s", key, exc)
            return None

    def _set_many(self, values: dict[str, Optional[str]]) -> bool:
        try:
            for key, value in values.items():
                if value is None:
                    self._store.delete(key)
                else:
                    self._store.set(key, value)
        except PersistenceUnavailable as exc:
            self.write_failures += 1
            logger.warning("Persistence write failed (%d so far): %s", self.write_failures, exc)
            return False
        return True

    def _get_decimal(self, key: str) -> Optional[Decimal]:
        raw = self._get(key)
        if raw is None:
            return None
        try:
            value = Decimal(raw)
        except InvalidOperation:
            logger.warning("Ignoring malformed persisted value for %s: %r", key, raw)
            return None
        if not value.is_finite():
            logger.warning("Ignoring non-finite persisted value for %s", key)
            return None
        return value

    # ========== Ledger ==========

    def load_ledger_state(self, *, starting_balance: Decimal) -> LedgerState:
        """Load saved ledger state, falling back to first-run defaults."""
        cash = self._get_decimal(StorageKeys.CASH_BALANCE)
        owned = self._get_decimal(StorageKeys.OWNED_QUANTITY) or ZERO
        invested = self._get_decimal(StorageKeys.INVESTED_COST) or ZERO
        reference = self._get_decimal(StorageKeys.REFERENCE_PRICE)

        if cash is None or cash < 0:
            cash = starting_balance
        if owned <= 0:
            owned, invested = ZERO, ZERO
        if invested < 0:
            invested = ZERO
        if reference is not None and reference <= 0:
            reference = None

        return LedgerState(
            cash_balance=cash,
            owned_quantity=owned,
            invested_cost=invested,
            reference_price=reference,
        )

    def save_ledger_state(self, state: LedgerState) -> bool:
        return self._set_many(
            {
                StorageKeys.CASH_BALANCE: str(state.cash_balance),
                StorageKeys.OWNED_QUANTITY: str(state.owned_quantity),
                StorageKeys.INVESTED_COST: str(state.invested_cost),
                StorageKeys.REFERENCE_PRICE: (
                    str(state.reference_price) if state.reference_price is not None else None
                ),
            }
        )

    # ========== Price ==========

    def load_last_known_good(self) -> Optional[PriceSample]:
        value = self._get_decimal(StorageKeys.LAST_SUCCESSFUL_PRICE)
        if value is None or value <= 0:
            return None

        observed_ms = self.last_update_ms()
        observed_at = _from_epoch_ms(observed_ms) if observed_ms is not None else datetime.fromtimestamp(0, tz=timezone.utc)
        source = self._get(StorageKeys.LAST_PRICE_SOURCE) or PERSISTED_SOURCE
        return PriceSample(value=value, source=source, observed_at=observed_at)

    def save_last_known_good(self, sample: PriceSample) -> bool:
        return self._set_many(
            {
                StorageKeys.LAST_SUCCESSFUL_PRICE: str(sample.value),
                StorageKeys.LAST_PRICE_SOURCE: sample.source,
                StorageKeys.LAST_PRICE_UPDATE_TIME: str(_to_epoch_ms(sample.observed_at)),
            }
        )

    def last_update_ms(self) -> Optional[int]:
        """Epoch milliseconds of the last successful price update, if any."""
        raw = self._get(StorageKeys.LAST_PRICE_UPDATE_TIME)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring malformed %s: %r", StorageKeys.LAST_PRICE_UPDATE_TIME, raw)
            return None
