#!/usr/bin/env python3
"""One-shot price check against the configured endpoints.

Runs a single oracle refresh (no retries) and prints either the sample or
every endpoint error.

Usage:
  python scripts/price_check.py [--timeout SECONDS] [--source NAME ...]

Exit codes:
  0 = a price was fetched
  1 = every endpoint failed
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from coincraze.config import OracleConfig  # noqa: E402
from coincraze.logging_setup import configure_logging  # noqa: E402
from coincraze.market_data import PriceOracle, default_sources  # noqa: E402
from coincraze.types import PriceSample  # noqa: E402


async def _check(timeout: float, names: list[str]) -> int:
    sources = [s for s in default_sources() if not names or s.name in names]
    if not sources:
        print(f"No known sources among: {', '.join(names)}", file=sys.stderr)
        return 1

    oracle = PriceOracle(sources, config=OracleConfig(request_timeout_seconds=timeout, max_retries=0))
    try:
        outcome = await oracle.refresh_price()
    finally:
        await oracle.aclose()

    if isinstance(outcome, PriceSample):
        print(f"OK {outcome.value} from {outcome.source} at {outcome.observed_at.isoformat()}")
        return 0

    print("FAILED: every price endpoint failed", file=sys.stderr)
    for error in outcome.errors if outcome is not None else ():
        print(f"  - {error}", file=sys.stderr)
    return 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Fetch the current price once.")
    parser.add_argument("--timeout", type=float, default=5.0, help="Per-endpoint timeout in seconds")
    parser.add_argument(
        "--source",
        action="append",
        default=[],
        help="Only query this source (coingecko, binance, kraken); repeatable",
    )
    parser.add_argument("--verbose", action="store_true", help="Log every endpoint attempt")
    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else "WARNING")
    return asyncio.run(_check(args.timeout, args.source))


if __name__ == "__main__":
    sys.exit(main())
