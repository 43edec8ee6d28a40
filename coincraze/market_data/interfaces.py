from __future__ import annotations

from decimal import Decimal
from typing import Optional, Protocol


class PriceFeed(Protocol):
    """Supplies the effective price used for valuation and trades."""

    def effective_price(self, seed_price: Optional[Decimal] = None) -> Decimal:
        """Freshest known price, following the fallback chain; zero if unknown."""
        raise NotImplementedError


class StaticPriceFeed:
    """Fixed price, for tests and offline tools."""

    def __init__(self, price: Decimal | int | str) -> None:
        self.price = Decimal(str(price))

    def effective_price(self, seed_price: Optional[Decimal] = None) -> Decimal:
        return self.price
