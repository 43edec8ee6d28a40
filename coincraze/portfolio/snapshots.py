"""Portfolio value snapshots for the social feed.

A post or comment can carry the author's portfolio value at the moment it
was written. The value is copied, never linked, so later trades do not
change what an old post shows.
"""

from __future__ import annotations

from typing import Any, Mapping, Union

from coincraze.portfolio.ledger import Ledger
from coincraze.types import PortfolioValueSnapshot


def attach_portfolio_value(
    post: Mapping[str, Any],
    source: Union[Ledger, PortfolioValueSnapshot],
    *,
    show_value: bool = True,
) -> dict[str, Any]:
    """Return a copy of ``post`` with a ``portfolio_value`` entry.

    Args:
        post: Post or comment payload authored by the user
        source: Ledger to snapshot now, or an already captured snapshot
        show_value: Whether the feed should render the value

    Returns:
        New dict; the input mapping is not modified
    """
    snapshot = source.snapshot() if isinstance(source, Ledger) else source
    result = dict(post)
    result["portfolio_value"] = {
        "total_value": str(snapshot.total_value),
        "show_value": show_value,
        "captured_at": snapshot.captured_at.isoformat(),
    }
    return result
