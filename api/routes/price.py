"""API routes for the price feed."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Request

from coincraze.types import MarketStats, PriceFailure, PriceSample

router = APIRouter(prefix="/price", tags=["price"])


def sample_to_dict(sample: Optional[PriceSample]) -> Optional[dict[str, Any]]:
    if sample is None:
        return None
    return {
        "value": str(sample.value),
        "source": sample.source,
        "observed_at": sample.observed_at.isoformat(),
    }


def market_to_dict(stats: Optional[MarketStats]) -> Optional[dict[str, Any]]:
    if stats is None:
        return None
    return {
        "market_cap": str(stats.market_cap),
        "market_cap_display": stats.formatted_market_cap,
        "change_24h": str(stats.change_24h),
        "observed_at": stats.observed_at.isoformat(),
    }


@router.get("")
async def get_price(request: Request) -> dict[str, Any]:
    """Effective price plus the oracle state behind it and the latest market stats."""
    services = request.app.state.services
    oracle = services.oracle
    state = oracle.state
    return {
        "effective_price": str(oracle.effective_price(seed_price=services.ledger.reference_price)),
        "fresh": oracle.is_fresh(state.current),
        "current": sample_to_dict(state.current),
        "last_known_good": sample_to_dict(state.last_known_good),
        "consecutive_failures": state.consecutive_failures,
        "last_error": state.last_error,
        "market": market_to_dict(services.market.latest),
    }


@router.post("/refresh")
async def refresh_price(request: Request) -> dict[str, Any]:
    """Refresh now. Dropped if a refresh is already in flight."""
    services = request.app.state.services
    outcome = await services.oracle.refresh_price(seed_price=services.ledger.reference_price)

    if outcome is None:
        return {"status": "dropped"}
    if isinstance(outcome, PriceFailure):
        return {
            "status": "failed",
            "attempt": outcome.attempt,
            "errors": list(outcome.errors),
            "fallback": sample_to_dict(outcome.fallback),
        }
    return {"status": "ok", "sample": sample_to_dict(outcome)}


@router.post("/market/refresh")
async def refresh_market(request: Request) -> dict[str, Any]:
    """Fetch market cap and 24h change now."""
    market = request.app.state.services.market
    stats = await market.refresh()
    if stats is None:
        return {"status": "failed", "last_error": market.last_error, "market": market_to_dict(market.latest)}
    return {"status": "ok", "market": market_to_dict(stats)}
