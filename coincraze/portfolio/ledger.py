"""Single-asset portfolio ledger.

Keeps cash balance, owned quantity and invested cost (the cash basis of the
units currently held) consistent across buys and sells:

- buy: cash -> units at the effective price; cost basis grows by the cash spent
- sell: units -> cash; cost basis shrinks in proportion to the units sold
- a sell that leaves less than ``dust_threshold`` of value behind closes the
  position completely, so no dust position is ever stranded

Invalid requests are rejected with a ``TradeResult`` and leave the state
untouched; nothing is ever partially applied.
"""

from __future__ import annotations

import logging
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Optional

from coincraze.config import LedgerConfig
from coincraze.errors import InvalidInput
from coincraze.market_data.interfaces import PriceFeed
from coincraze.persistence.adapter import LedgerPersistence
from coincraze.types import (
    ZERO,
    LedgerState,
    PortfolioValueSnapshot,
    PositionStatus,
    TradeResult,
    TradeSide,
    utc_now,
)

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
SELL_QUANTUM = Decimal("0.0001")


def parse_amount(value: Any) -> Decimal:
    """Convert user input to a strictly positive, finite Decimal.

    Raises:
        InvalidInput: If the value is unparsable, non-finite or not positive
    """
    if value is None or isinstance(value, bool):
        raise InvalidInput(f"Amount is required, got {value!r}")
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise InvalidInput(f"Amount is not a number: {value!r}") from exc

    if not amount.is_finite():
        raise InvalidInput("Amount must be finite")
    if amount <= 0:
        raise InvalidInput("Amount must be positive")
    return amount


class Ledger:
    """Cash/asset ledger for one simulated position.

    Thread-safety: Not thread-safe. Every operation runs to completion on the
    event loop thread, so callers never observe a partially applied trade.
    """

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        *,
        price_feed: Optional[PriceFeed] = None,
        persistence: Optional[LedgerPersistence] = None,
        state: Optional[LedgerState] = None,
    ) -> None:
        """Initialize the ledger.

        Args:
            config: Starting balance, dust threshold and feature costs
            price_feed: Source of the effective price (usually the PriceOracle)
            persistence: Snapshot sink, written after every accepted change
            state: Existing state; a fresh first-run state when omitted
        """
        self._config = config or LedgerConfig()
        self._price_feed = price_feed
        self._persistence = persistence
        self._state = state.copy() if state is not None else LedgerState(cash_balance=self._config.starting_balance)

    @classmethod
    def restore(
        cls,
        config: Optional[LedgerConfig] = None,
        *,
        persistence: LedgerPersistence,
        price_feed: Optional[PriceFeed] = None,
    ) -> Ledger:
        """Build a ledger from persisted state (or first-run defaults)."""
        config = config or LedgerConfig()
        state = persistence.load_ledger_state(starting_balance=config.starting_balance)
        return cls(config, price_feed=price_feed, persistence=persistence, state=state)

    # ========== State ==========

    @property
    def config(self) -> LedgerConfig:
        return self._config

    @property
    def state(self) -> LedgerState:
        """Copy of the current state."""
        return self._state.copy()

    @property
    def cash_balance(self) -> Decimal:
        return self._state.cash_balance

    @property
    def owned_quantity(self) -> Decimal:
        return self._state.owned_quantity

    @property
    def invested_cost(self) -> Decimal:
        return self._state.invested_cost

    @property
    def reference_price(self) -> Optional[Decimal]:
        """Price of the most recent buy; seed for the price fallback chain."""
        return self._state.reference_price

    @property
    def position_status(self) -> PositionStatus:
        return self._state.position_status

    def effective_price(self) -> Decimal:
        if self._price_feed is not None:
            return self._price_feed.effective_price(seed_price=self._state.reference_price)
        return self._state.reference_price or ZERO

    # ========== Trades ==========

    def buy(self, cash_amount: Any) -> TradeResult:
        """Convert cash into asset units at the effective price."""
        try:
            amount = parse_amount(cash_amount)
        except InvalidInput as exc:
            return self._reject("BUY", exc.reason, str(exc))

        if amount > self._state.cash_balance:
            return self._reject("BUY", "insufficient_balance", "Amount exceeds cash balance", amount=amount)

        price = self.effective_price()
        if price <= 0:
            return self._reject("BUY", "price_unavailable", "No price available", amount=amount)

        units = amount / price
        current = self._state
        self._commit(
            LedgerState(
                cash_balance=current.cash_balance - amount,
                owned_quantity=current.owned_quantity + units,
                invested_cost=current.invested_cost + amount,
                reference_price=price,
            )
        )

        logger.info("BUY %s cash -> %s units @ %s", amount, units, price)
        return TradeResult(
            accepted=True,
            reason="filled",
            side="BUY",
            amount=amount,
            price=price,
            units=units,
            cash_delta=-amount,
            state=self.state,
        )

    def sell(self, asset_amount: Any) -> TradeResult:
        """Convert asset units back into cash at the effective price."""
        try:
            amount = parse_amount(asset_amount)
        except InvalidInput as exc:
            return self._reject("SELL", exc.reason, str(exc))

        current = self._state
        if amount > current.owned_quantity:
            return self._reject("SELL", "insufficient_quantity", "Amount exceeds owned quantity", amount=amount)

        price = self.effective_price()
        if price <= 0:
            return self._reject("SELL", "price_unavailable", "No price available", amount=amount)

        proceeds = amount * price
        remaining = current.owned_quantity - amount

        if remaining * price < self._config.dust_threshold:
            # Full exit, whatever floating remainder the requested amount left behind
            reason = "full_exit"
            new_state = LedgerState(
                cash_balance=current.cash_balance + proceeds,
                owned_quantity=ZERO,
                invested_cost=ZERO,
                reference_price=None,
            )
        else:
            reason = "filled"
            new_state = LedgerState(
                cash_balance=current.cash_balance + proceeds,
                owned_quantity=remaining,
                invested_cost=current.invested_cost * (remaining / current.owned_quantity),
                reference_price=current.reference_price,
            )

        self._commit(new_state)
        logger.info("SELL %s units @ %s -> %s cash (%s)", amount, price, proceeds, reason)
        return TradeResult(
            accepted=True,
            reason=reason,
            side="SELL",
            amount=amount,
            price=price,
            units=amount,
            cash_delta=proceeds,
            state=self.state,
        )

    def sell_percent(self, percentage: Any) -> TradeResult:
        """Sell a share of the owned units.

        100 sells exactly the owned quantity; anything less is rounded down
        to ``SELL_QUANTUM`` so it never exceeds what is held.
        """
        try:
            pct = parse_amount(percentage)
        except InvalidInput as exc:
            return self._reject("SELL", exc.reason, str(exc))
        if pct > HUNDRED:
            return self._reject("SELL", "invalid_amount", f"Percentage must be at most 100, got {pct}")

        owned = self._state.owned_quantity
        if owned <= 0:
            return self._reject("SELL", "insufficient_quantity", "No position to sell")
        if pct == HUNDRED:
            return self.sell(owned)

        quantity = (owned * pct / HUNDRED).quantize(SELL_QUANTUM, rounding=ROUND_DOWN)
        if quantity <= 0:
            return self._reject("SELL", "invalid_amount", f"{pct}% of {owned} rounds to zero units")
        return self.sell(quantity)

    def reset(self) -> None:
        """Restore the starting balance and close the position.

        User-initiated escape hatch, not an error-recovery path.
        """
        self._commit(LedgerState(cash_balance=self._config.starting_balance))
        logger.info("Ledger reset to starting balance %s", self._config.starting_balance)

    # ========== Externally priced cash movements ==========

    def debit(self, amount: Any, memo: Optional[str] = None) -> TradeResult:
        """Take cash for something priced outside the ledger (e.g. a paid feature)."""
        try:
            value = parse_amount(amount)
        except InvalidInput as exc:
            return self._reject("DEBIT", exc.reason, str(exc), memo=memo)

        if value > self._state.cash_balance:
            return self._reject("DEBIT", "insufficient_balance", "Amount exceeds cash balance", amount=value, memo=memo)

        new_state = self._state.copy()
        new_state.cash_balance -= value
        self._commit(new_state)
        logger.info("DEBIT %s (%s)", value, memo or "-")
        return TradeResult(
            accepted=True, reason="filled", side="DEBIT", amount=value, cash_delta=-value, state=self.state, memo=memo
        )

    def credit(self, amount: Any, memo: Optional[str] = None) -> TradeResult:
        try:
            value = parse_amount(amount)
        except InvalidInput as exc:
            return self._reject("CREDIT", exc.reason, str(exc), memo=memo)

        new_state = self._state.copy()
        new_state.cash_balance += value
        self._commit(new_state)
        logger.info("CREDIT %s (%s)", value, memo or "-")
        return TradeResult(
            accepted=True, reason="filled", side="CREDIT", amount=value, cash_delta=value, state=self.state, memo=memo
        )

    def charge_feature(self, name: str) -> TradeResult:
        """Debit the configured cost of a paid feature, e.g. "verification"."""
        cost = self._config.feature_costs.get(name)
        if cost is None:
            return self._reject("DEBIT", "unknown_feature", f"Unknown feature: {name}", memo=name)
        return self.debit(cost, memo=name)

    # ========== Valuation ==========

    def position_value(self, price: Optional[Decimal] = None) -> Decimal:
        price = self.effective_price() if price is None else price
        return self._state.owned_quantity * price

    def total_value(self, price: Optional[Decimal] = None) -> Decimal:
        """Cash plus the market value of the owned units."""
        return self._state.cash_balance + self.position_value(price)

    def unrealized_pnl(self, price: Optional[Decimal] = None) -> Decimal:
        return self.position_value(price) - self._state.invested_cost

    def pnl_percent(self, price: Optional[Decimal] = None) -> Optional[Decimal]:
        """Unrealized P&L as a percentage of invested cost; None without a position."""
        if self._state.invested_cost <= 0:
            return None
        return self.unrealized_pnl(price) / self._state.invested_cost * HUNDRED

    def snapshot(self) -> PortfolioValueSnapshot:
        """Point-in-time copy of the portfolio value."""
        price = self.effective_price()
        position_value = self.position_value(price)
        return PortfolioValueSnapshot(
            total_value=self._state.cash_balance + position_value,
            cash_balance=self._state.cash_balance,
            position_value=position_value,
            price=price,
            captured_at=utc_now(),
        )

    def summary(self) -> dict:
        """Get ledger summary.

        Returns:
            Dict with ledger state and valuation, Decimals rendered as strings
        """
        price = self.effective_price()
        pnl_percent = self.pnl_percent(price)
        state = self._state
        return {
            "cash_balance": str(state.cash_balance),
            "owned_quantity": str(state.owned_quantity),
            "invested_cost": str(state.invested_cost),
            "reference_price": str(state.reference_price) if state.reference_price is not None else None,
            "position_status": state.position_status.value,
            "effective_price": str(price),
            "position_value": str(self.position_value(price)),
            "total_value": str(self.total_value(price)),
            "unrealized_pnl": str(self.unrealized_pnl(price)),
            "pnl_percent": str(pnl_percent) if pnl_percent is not None else None,
        }

    # ========== Internals ==========

    def _commit(self, new_state: LedgerState) -> None:
        if new_state.owned_quantity <= 0:
            new_state.owned_quantity = ZERO
            new_state.invested_cost = ZERO
            new_state.reference_price = None
        if new_state.cash_balance < 0:
            raise RuntimeError(f"cash balance would go negative: {new_state.cash_balance}")

        self._state = new_state
        if self._persistence is not None:
            self._persistence.save_ledger_state(new_state)

    def _reject(
        self,
        side: TradeSide,
        reason: str,
        message: str,
        *,
        amount: Optional[Decimal] = None,
        memo: Optional[str] = None,
    ) -> TradeResult:
        logger.info("%s rejected (%s): %s", side, reason, message)
        return TradeResult(accepted=False, reason=reason, side=side, amount=amount, state=self.state, memo=memo)
