"""Portfolio ledger.

Cash balance, owned quantity and cost basis for the single traded asset,
plus point-in-time value snapshots for the social feed.
"""

from .ledger import Ledger, parse_amount
from .snapshots import attach_portfolio_value

__all__ = ["Ledger", "attach_portfolio_value", "parse_amount"]
