"""Market data: price sources, oracle, poller and market stats."""

from .interfaces import PriceFeed, StaticPriceFeed
from .market_stats import MarketStatsFeed
from .oracle import PriceOracle
from .poller import PricePoller
from .sources import (
    BinanceSource,
    CoinGeckoMarketSource,
    CoinGeckoSource,
    KrakenSource,
    PriceSource,
    default_sources,
)

__all__ = [
    "BinanceSource",
    "CoinGeckoMarketSource",
    "CoinGeckoSource",
    "KrakenSource",
    "MarketStatsFeed",
    "PriceFeed",
    "PriceOracle",
    "PricePoller",
    "PriceSource",
    "StaticPriceFeed",
    "default_sources",
]
