"""Error taxonomy.

Only ledger input validation is ever visible to the initiating caller, and
even that is reported as a rejected ``TradeResult`` rather than raised.
Oracle and persistence errors are contained where they occur.
"""

from __future__ import annotations


class CoinCrazeError(Exception):
    """Base exception for this package."""


class InvalidInput(CoinCrazeError, ValueError):
    """Non-positive, non-finite, unparsable or overdrawn amount."""

    def __init__(self, message: str, reason: str = "invalid_amount"):
        super().__init__(message)
        self.reason = reason


class PriceSourceError(CoinCrazeError):
    """A single price endpoint returned an unusable response."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class OracleUnavailable(CoinCrazeError):
    """Every configured price endpoint failed or timed out."""

    def __init__(self, errors: list[str] | tuple[str, ...]):
        super().__init__("Failed to fetch price from all endpoints")
        self.errors = tuple(errors)


class PersistenceUnavailable(CoinCrazeError):
    """A key-value store read or write failed."""
