"""Market cap and 24h change feed.

Polled on its own cadence, independently of the price oracle. A failed
fetch is retried with capped exponential backoff; the last good stats stay
published until a newer fetch succeeds.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

import httpx

from coincraze.config import MarketDataConfig
from coincraze.errors import PriceSourceError
from coincraze.market_data.sources import CoinGeckoMarketSource
from coincraze.scheduling import ScheduledTask, TaskScope
from coincraze.types import MarketStats, utc_now

logger = logging.getLogger(__name__)


class MarketStatsFeed:
    def __init__(
        self,
        source: Optional[CoinGeckoMarketSource] = None,
        *,
        config: Optional[MarketDataConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the feed.

        Args:
            source: Market data endpoint (defaults to CoinGecko)
            config: Cadence, timeout and retry settings
            client: Shared HTTP client; created lazily (and owned) when omitted
            clock: Returns the current UTC datetime
        """
        self._source = source or CoinGeckoMarketSource()
        self._config = config or MarketDataConfig()
        self._client = client
        self._owns_client = client is None
        self._clock = clock

        self._latest: Optional[MarketStats] = None
        self._in_flight = False
        self._retry: Optional[ScheduledTask] = None
        self._scope: Optional[TaskScope] = None

        self.consecutive_failures = 0
        self.last_error: Optional[str] = None

    @property
    def latest(self) -> Optional[MarketStats]:
        return self._latest

    @property
    def running(self) -> bool:
        return self._scope is not None

    @property
    def retry_pending(self) -> bool:
        return self._retry is not None and self._retry.active

    # ========== Refresh ==========

    async def refresh(self, attempt: int = 0) -> Optional[MarketStats]:
        """Fetch once; on failure schedule the next attempt unless retries are spent.

        Returns:
            The new stats, or None when the fetch failed or another one is in flight
        """
        if self._in_flight:
            logger.debug("Market data refresh already in flight, dropping request")
            return None

        self._in_flight = True
        observed_at = self._clock()
        timeout = self._config.request_timeout_seconds
        try:
            stats = await asyncio.wait_for(self._source.fetch(self._get_client(), observed_at), timeout=timeout)
        except asyncio.TimeoutError:
            self._handle_failure(attempt, f"{self._source.name}: timed out after {timeout:g}s")
            return None
        except PriceSourceError as exc:
            self._handle_failure(attempt, str(exc))
            return None
        finally:
            self._in_flight = False

        self._latest = stats
        self.consecutive_failures = 0
        self.last_error = None
        self.cancel_retry()
        logger.debug("Market cap %s, 24h change %s%%", stats.formatted_market_cap, stats.change_24h)
        return stats

    def _handle_failure(self, attempt: int, message: str) -> None:
        self.consecutive_failures += 1
        self.last_error = message
        logger.error("Error fetching market data (attempt %d): %s", attempt, message)

        if attempt >= self._config.max_retries:
            return
        delay = self._config.backoff_seconds(attempt)
        self.cancel_retry()
        logger.info("Retrying market data fetch in %.1fs (attempt %d)", delay, attempt + 1)
        self._retry = ScheduledTask.after(
            delay, lambda: self.refresh(attempt + 1), name=f"market-retry-{attempt + 1}"
        )

    def cancel_retry(self) -> None:
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None

    # ========== Lifecycle ==========

    async def start(self, *, initial_refresh: bool = True) -> None:
        if self.running:
            return
        self._scope = TaskScope("market-stats")
        self._scope.every(self._config.interval_seconds, self.refresh, name="interval")
        if initial_refresh:
            self._scope.after(0, self.refresh, name="startup")
        logger.info("Market data feed started (every %gs)", self._config.interval_seconds)

    async def stop(self) -> None:
        """Cancel the cadence and any pending retry. Idempotent."""
        scope, self._scope = self._scope, None
        if scope is not None:
            await scope.aclose()
            logger.info("Market data feed stopped")

        retry = self._retry
        self.cancel_retry()
        if retry is not None:
            await retry.wait()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._config.request_timeout_seconds,
                headers={"Accept": "application/json", "User-Agent": "coincraze/1.0"},
            )
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        await self.stop()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
