"""FastAPI application for the simulated wallet and its price feed.

This module provides a minimal HTTP API service for:
- GET /health - Price feed and poller status
- GET /price - Effective price, oracle state, market cap and 24h change
- POST /price/refresh - Refresh the price now
- POST /price/market/refresh - Refresh market cap and 24h change now
- GET /wallet - Ledger summary
- POST /wallet/buy, /wallet/sell, /wallet/sell-percent, /wallet/reset - Ledger operations
- POST /wallet/features/{name} - Pay for a feature (e.g. verification)
- GET /wallet/snapshot - Point-in-time portfolio value
- POST /signals/visibility, /signals/online - Host view signals for the poller

Configuration comes from COINCRAZE_* environment variables (see coincraze.config).
No authentication (single local user).
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request

from api.routes import price, signals, wallet
from coincraze.config import AppConfig
from coincraze.logging_setup import configure_logging
from coincraze.market_data import MarketStatsFeed, PriceOracle, PricePoller
from coincraze.persistence import KeyValueStore, LedgerPersistence
from coincraze.portfolio import Ledger
from coincraze.signals import HostSignals
from coincraze.storage import build_store

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    """Everything the routes need, owned by the application lifespan."""

    config: AppConfig
    persistence: LedgerPersistence
    oracle: PriceOracle
    ledger: Ledger
    signals: HostSignals
    poller: PricePoller
    market: MarketStatsFeed
    started_at: float = 0.0

    async def start(self) -> None:
        self.started_at = time.time()
        await self.poller.start(initial_refresh=self.config.poller.refresh_on_start)
        await self.market.start(initial_refresh=self.config.poller.refresh_on_start)

    async def stop(self) -> None:
        await self.poller.stop()
        await self.market.aclose()
        await self.oracle.aclose()


def build_services(
    config: AppConfig,
    *,
    store: Optional[KeyValueStore] = None,
    oracle: Optional[PriceOracle] = None,
    market: Optional[MarketStatsFeed] = None,
) -> AppServices:
    """Wire store, oracle, ledger, poller and market feed together."""
    persistence = LedgerPersistence(store if store is not None else build_store(config.store_url))
    oracle = oracle or PriceOracle(config=config.oracle, persistence=persistence)
    ledger = Ledger.restore(config.ledger, persistence=persistence, price_feed=oracle)
    host_signals = HostSignals(visible=True)
    poller = PricePoller(
        oracle,
        signals=host_signals,
        persistence=persistence,
        config=config.poller,
        seed_provider=lambda: ledger.reference_price,
    )
    return AppServices(
        config=config,
        persistence=persistence,
        oracle=oracle,
        ledger=ledger,
        signals=host_signals,
        poller=poller,
        market=market or MarketStatsFeed(config=config.market),
    )


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """Create the API application.

    Args:
        services: Pre-built services (tests); built from the environment otherwise
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        active = services
        if active is None:
            config = AppConfig.from_env()
            configure_logging(config.log_level)
            active = build_services(config)

        app.state.services = active
        await active.start()
        logger.info("CoinCraze API started")
        try:
            yield
        finally:
            await active.stop()
            logger.info("CoinCraze API stopped")

    app = FastAPI(
        title="CoinCraze Wallet API",
        description="Simulated single-asset wallet with a resilient price feed",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(wallet.router)
    app.include_router(price.router)
    app.include_router(signals.router)

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Health check endpoint.

        Price feed failures degrade the status, they never fail the request.
        """
        active: AppServices = request.app.state.services
        state = active.oracle.state
        fresh = active.oracle.is_fresh(state.current)
        if fresh:
            status = "ok"
        elif state.last_known_good is not None:
            status = "degraded"
        else:
            status = "error"

        return {
            "status": status,
            "uptime_seconds": int(time.time() - active.started_at),
            "price": {
                "fresh": fresh,
                "consecutive_failures": state.consecutive_failures,
                "last_error": state.last_error,
                "retry_pending": active.oracle.retry_pending,
            },
            "poller": {
                "running": active.poller.running,
                "active_timers": active.poller.active_timers,
                "visible": active.signals.visible,
            },
            "market": {
                "running": active.market.running,
                "consecutive_failures": active.market.consecutive_failures,
                "retry_pending": active.market.retry_pending,
            },
            "persistence": {"write_failures": active.persistence.write_failures},
        }

    return app


app = create_app()
