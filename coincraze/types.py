from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional

TradeSide = Literal["BUY", "SELL", "DEBIT", "CREDIT", "RESET"]

ZERO = Decimal("0")


def utc_now() -> datetime:
    """Return a timezone-aware timestamp in UTC."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PriceSample:
    """A single observed market price.

    Timestamps are expected to be timezone-aware (UTC).
    """

    value: Decimal
    source: str
    observed_at: datetime

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        return (now - self.observed_at).total_seconds()

    def is_newer_than(self, other: Optional[PriceSample]) -> bool:
        return other is None or self.observed_at >= other.observed_at


@dataclass(frozen=True)
class MarketStats:
    """Market capitalisation and 24h price change of the traded asset."""

    market_cap: Decimal
    change_24h: Decimal  # percent
    observed_at: datetime

    @property
    def formatted_market_cap(self) -> str:
        return format_market_cap(self.market_cap)


def format_market_cap(value: Decimal) -> str:
    """Render as $82.35B, $12.50M or whole dollars with separators."""
    if value >= Decimal("1e9"):
        return f"${value / Decimal('1e9'):.2f}B"
    if value >= Decimal("1e6"):
        return f"${value / Decimal('1e6'):.2f}M"
    return f"${value:,.0f}"


@dataclass
class OracleState:
    current: Optional[PriceSample] = None
    last_known_good: Optional[PriceSample] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None

    def copy(self) -> OracleState:
        return replace(self)


@dataclass(frozen=True)
class PriceFailure:
    """Outcome of a refresh where no endpoint produced a usable price."""

    attempt: int
    errors: tuple[str, ...]
    fallback: Optional[PriceSample] = None


class PositionStatus(str, Enum):
    EMPTY = "empty"
    OPEN = "open"


@dataclass
class LedgerState:
    cash_balance: Decimal
    owned_quantity: Decimal = ZERO
    invested_cost: Decimal = ZERO
    reference_price: Optional[Decimal] = None  # price of the most recent buy

    @property
    def position_status(self) -> PositionStatus:
        return PositionStatus.OPEN if self.owned_quantity > 0 else PositionStatus.EMPTY

    def copy(self) -> LedgerState:
        return replace(self)


@dataclass(frozen=True)
class TradeResult:
    accepted: bool
    reason: str
    side: TradeSide
    amount: Optional[Decimal] = None
    price: Optional[Decimal] = None
    units: Optional[Decimal] = None  # asset units received (BUY) or sold (SELL)
    cash_delta: Decimal = ZERO
    state: Optional[LedgerState] = None
    memo: Optional[str] = None


@dataclass(frozen=True)
class PortfolioValueSnapshot:
    """Point-in-time portfolio value, copied onto a post or comment."""

    total_value: Decimal
    cash_balance: Decimal
    position_value: Decimal
    price: Decimal
    captured_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "total_value": str(self.total_value),
            "cash_balance": str(self.cash_balance),
            "position_value": str(self.position_value),
            "price": str(self.price),
            "captured_at": self.captured_at.isoformat(),
        }
