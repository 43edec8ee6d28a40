"""API routes for the wallet ledger."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from coincraze.portfolio import Ledger
from coincraze.types import TradeResult

router = APIRouter(prefix="/wallet", tags=["wallet"])


class BuyRequest(BaseModel):
    cash_amount: Decimal


class SellRequest(BaseModel):
    asset_amount: Decimal


class SellPercentRequest(BaseModel):
    percentage: Decimal


def _ledger(request: Request) -> Ledger:
    return request.app.state.services.ledger


def _fmt(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def trade_to_dict(result: TradeResult) -> dict[str, Any]:
    state = result.state
    return {
        "accepted": result.accepted,
        "reason": result.reason,
        "side": result.side,
        "amount": _fmt(result.amount),
        "price": _fmt(result.price),
        "units": _fmt(result.units),
        "cash_delta": str(result.cash_delta),
        "memo": result.memo,
        "state": (
            {
                "cash_balance": str(state.cash_balance),
                "owned_quantity": str(state.owned_quantity),
                "invested_cost": str(state.invested_cost),
            }
            if state is not None
            else None
        ),
    }


def _respond(result: TradeResult) -> dict[str, Any]:
    """Rejected operations become 422 with the rejection reason."""
    payload = trade_to_dict(result)
    if not result.accepted:
        raise HTTPException(status_code=422, detail=payload)
    return payload


@router.get("")
async def get_wallet(request: Request) -> dict[str, Any]:
    """Ledger state and valuation at the effective price."""
    return _ledger(request).summary()


@router.post("/buy")
async def buy(body: BuyRequest, request: Request) -> dict[str, Any]:
    return _respond(_ledger(request).buy(body.cash_amount))


@router.post("/sell")
async def sell(body: SellRequest, request: Request) -> dict[str, Any]:
    return _respond(_ledger(request).sell(body.asset_amount))


@router.post("/sell-percent")
async def sell_percent(body: SellPercentRequest, request: Request) -> dict[str, Any]:
    """Sell a percentage of the position; 100 sells everything held."""
    return _respond(_ledger(request).sell_percent(body.percentage))


@router.post("/reset")
async def reset(request: Request) -> dict[str, Any]:
    ledger = _ledger(request)
    ledger.reset()
    return ledger.summary()


@router.post("/features/{name}")
async def charge_feature(name: str, request: Request) -> dict[str, Any]:
    """Pay for a feature such as account verification."""
    result = _ledger(request).charge_feature(name)
    if result.reason == "unknown_feature":
        raise HTTPException(status_code=404, detail=f"Unknown feature: {name}")
    return _respond(result)


@router.get("/snapshot")
async def snapshot(request: Request) -> dict[str, Any]:
    """Point-in-time portfolio value, for attaching to a post or comment."""
    return _ledger(request).snapshot().to_dict()
