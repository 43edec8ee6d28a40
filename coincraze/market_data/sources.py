"""Public price endpoints for the traded asset.

Each endpoint has its own response shape, so every source carries its own
extraction rule. A rule either returns a strictly positive Decimal or raises
``PriceSourceError``; the oracle then moves on to the next source.

Response formats:
- CoinGecko: {"solana": {"usd": 142.17}}
- Binance:   {"symbol": "SOLUSDT", "price": "142.17000000"}
- Kraken:    {"error": [], "result": {"SOLUSD": {"c": ["142.17000", "0.5"], ...}}}
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

import httpx

from coincraze.errors import PriceSourceError
from coincraze.types import ZERO, MarketStats


async def get_json(client: httpx.AsyncClient, name: str, url: str, params: Mapping[str, str]) -> Any:
    """GET a JSON document, mapping every failure to ``PriceSourceError``."""
    try:
        response = await client.get(url, params=dict(params))
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as exc:
        raise PriceSourceError(name, f"HTTP {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        raise PriceSourceError(name, f"request failed: {exc.__class__.__name__}") from exc
    except ValueError as exc:
        raise PriceSourceError(name, "response is not valid JSON") from exc


def _positive_decimal(source: str, raw: Any) -> Decimal:
    if raw is None or isinstance(raw, bool):
        raise PriceSourceError(source, f"missing price (got {raw!r})")
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise PriceSourceError(source, f"price is not a number: {raw!r}") from exc
    if not value.is_finite() or value <= 0:
        raise PriceSourceError(source, f"price must be a positive finite number, got {raw!r}")
    return value


class PriceSource(ABC):
    """One HTTP JSON price endpoint."""

    name: str
    url: str

    @property
    def params(self) -> Mapping[str, str]:
        return {}

    @abstractmethod
    def extract_price(self, payload: Any) -> Decimal:
        """Pull the price out of a decoded JSON payload."""

    async def fetch(self, client: httpx.AsyncClient) -> Decimal:
        """Request the endpoint and extract a price.

        Raises:
            PriceSourceError: On transport errors, non-2xx status or unusable payload
        """
        payload = await get_json(client, self.name, self.url, self.params)
        return self.extract_price(payload)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class CoinGeckoSource(PriceSource):
    """Direct numeric field: ``data[coin_id][vs_currency]``."""

    def __init__(self, coin_id: str = "solana", vs_currency: str = "usd") -> None:
        self.name = "coingecko"
        self.url = "https://api.coingecko.com/api/v3/simple/price"
        self.coin_id = coin_id
        self.vs_currency = vs_currency

    @property
    def params(self) -> Mapping[str, str]:
        return {"ids": self.coin_id, "vs_currencies": self.vs_currency}

    def extract_price(self, payload: Any) -> Decimal:
        if not isinstance(payload, dict):
            raise PriceSourceError(self.name, f"unexpected response format: {type(payload).__name__}")
        coin = payload.get(self.coin_id)
        if not isinstance(coin, dict):
            raise PriceSourceError(self.name, f"no entry for {self.coin_id}")
        raw = coin.get(self.vs_currency)
        if not isinstance(raw, (int, float)) or isinstance(raw, bool):
            raise PriceSourceError(self.name, f"non-numeric price: {raw!r}")
        return _positive_decimal(self.name, raw)


class BinanceSource(PriceSource):
    """String field cast to a number: ``data["price"]``."""

    def __init__(self, symbol: str = "SOLUSDT") -> None:
        self.name = "binance"
        self.url = "https://api.binance.com/api/v3/ticker/price"
        self.symbol = symbol.strip().upper()

    @property
    def params(self) -> Mapping[str, str]:
        return {"symbol": self.symbol}

    def extract_price(self, payload: Any) -> Decimal:
        if not isinstance(payload, dict):
            raise PriceSourceError(self.name, f"unexpected response format: {type(payload).__name__}")
        if "code" in payload and "price" not in payload:
            raise PriceSourceError(self.name, f"API error {payload.get('code')}: {payload.get('msg', '')}")
        return _positive_decimal(self.name, payload.get("price"))


class KrakenSource(PriceSource):
    """Nested array access: ``data["result"][pair]["c"][0]`` (last trade price)."""

    def __init__(self, pair: str = "SOLUSD") -> None:
        self.name = "kraken"
        self.url = "https://api.kraken.com/0/public/Ticker"
        self.pair = pair.strip().upper()

    @property
    def params(self) -> Mapping[str, str]:
        return {"pair": self.pair}

    def extract_price(self, payload: Any) -> Decimal:
        if not isinstance(payload, dict):
            raise PriceSourceError(self.name, f"unexpected response format: {type(payload).__name__}")
        errors = payload.get("error") or []
        if errors:
            raise PriceSourceError(self.name, f"API error: {', '.join(map(str, errors))}")

        result = payload.get("result")
        ticker = result.get(self.pair) if isinstance(result, dict) else None
        last_trade = ticker.get("c") if isinstance(ticker, dict) else None
        if not isinstance(last_trade, list) or not last_trade:
            raise PriceSourceError(self.name, f"no last-trade price for {self.pair}")
        return _positive_decimal(self.name, last_trade[0])


class CoinGeckoMarketSource:
    """Market cap and 24h change from CoinGecko simple/price.

    Response format:
        {"solana": {"usd": 142.17, "usd_market_cap": 82345678901.2, "usd_24h_change": -2.41}}
    """

    def __init__(self, coin_id: str = "solana", vs_currency: str = "usd") -> None:
        self.name = "coingecko-market"
        self.url = "https://api.coingecko.com/api/v3/simple/price"
        self.coin_id = coin_id
        self.vs_currency = vs_currency

    @property
    def params(self) -> Mapping[str, str]:
        return {
            "ids": self.coin_id,
            "vs_currencies": self.vs_currency,
            "include_market_cap": "true",
            "include_24hr_change": "true",
        }

    def extract_stats(self, payload: Any, observed_at: datetime) -> MarketStats:
        coin = payload.get(self.coin_id) if isinstance(payload, dict) else None
        if not isinstance(coin, dict):
            raise PriceSourceError(self.name, f"no entry for {self.coin_id}")

        market_cap = _positive_decimal(self.name, coin.get(f"{self.vs_currency}_market_cap"))
        raw_change = coin.get(f"{self.vs_currency}_24h_change")
        # CoinGecko omits or nulls the change for fresh listings
        change = ZERO
        if raw_change is not None:
            try:
                change = Decimal(str(raw_change))
            except InvalidOperation as exc:
                raise PriceSourceError(self.name, f"24h change is not a number: {raw_change!r}") from exc
            if not change.is_finite():
                raise PriceSourceError(self.name, f"24h change must be finite, got {raw_change!r}")

        return MarketStats(market_cap=market_cap, change_24h=change, observed_at=observed_at)

    async def fetch(self, client: httpx.AsyncClient, observed_at: datetime) -> MarketStats:
        payload = await get_json(client, self.name, self.url, self.params)
        return self.extract_stats(payload, observed_at)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(coin_id={self.coin_id!r})"


def default_sources() -> list[PriceSource]:
    """Endpoints in priority order."""
    return [CoinGeckoSource(), BinanceSource(), KrakenSource()]
