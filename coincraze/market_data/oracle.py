"""Price oracle with endpoint fallback, retry and last-known-good tracking.

One refresh tries every source in priority order and keeps the first usable
price. When all of them fail the oracle keeps serving the best price it
knows, in this order:

1. the in-memory last known good sample
2. the persisted last known good sample
3. a seed price supplied by the caller (e.g. the position's entry price)
4. nothing (effective price is zero)

Failed refreshes are retried with capped exponential backoff; after the
last retry the oracle waits for the next scheduled poll.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional, Union

import httpx

from coincraze.config import OracleConfig
from coincraze.errors import OracleUnavailable, PriceSourceError
from coincraze.market_data.sources import PriceSource, default_sources
from coincraze.persistence.adapter import LedgerPersistence
from coincraze.scheduling import ScheduledTask
from coincraze.types import ZERO, OracleState, PriceFailure, PriceSample, utc_now

logger = logging.getLogger(__name__)

SEED_SOURCE = "seed"

PriceListener = Callable[[PriceSample], None]
RefreshOutcome = Union[PriceSample, PriceFailure, None]


class PriceOracle:
    """Freshest known price for the traded asset.

    At most one refresh is in flight at a time; a refresh requested while
    another is running is dropped, not queued.
    """

    def __init__(
        self,
        sources: Optional[Iterable[PriceSource]] = None,
        *,
        config: Optional[OracleConfig] = None,
        persistence: Optional[LedgerPersistence] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the oracle.

        Args:
            sources: Price endpoints in priority order (defaults to CoinGecko, Binance, Kraken)
            config: Timeouts, retry and staleness settings
            persistence: Where the last known good price is stored across sessions
            client: Shared HTTP client; created lazily (and owned) when omitted
            clock: Returns the current UTC datetime
        """
        self._sources: list[PriceSource] = list(sources) if sources is not None else default_sources()
        if not self._sources:
            raise ValueError("PriceOracle needs at least one price source")

        self._config = config or OracleConfig()
        self._persistence = persistence
        self._client = client
        self._owns_client = client is None
        self._clock = clock

        self._state = OracleState()
        self._in_flight = False
        self._retry: Optional[ScheduledTask] = None
        self._listeners: list[PriceListener] = []

        self.requests_made = 0
        self.dropped_refreshes = 0

    # ========== Sources ==========

    @property
    def sources(self) -> tuple[PriceSource, ...]:
        return tuple(self._sources)

    def add_source(self, source: PriceSource, *, index: Optional[int] = None) -> None:
        if index is None:
            self._sources.append(source)
        else:
            self._sources.insert(index, source)

    def remove_source(self, name: str) -> bool:
        remaining = [s for s in self._sources if s.name != name]
        if len(remaining) == len(self._sources):
            return False
        if not remaining:
            raise ValueError("Cannot remove the last price source")
        self._sources = remaining
        return True

    # ========== State ==========

    @property
    def config(self) -> OracleConfig:
        return self._config

    @property
    def state(self) -> OracleState:
        """Copy of the current oracle state."""
        return self._state.copy()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def retry_pending(self) -> bool:
        return self._retry is not None and self._retry.active

    def is_fresh(self, sample: Optional[PriceSample]) -> bool:
        if sample is None:
            return False
        return sample.age_seconds(self._clock()) <= self._config.stale_after_seconds

    def add_listener(self, callback: PriceListener) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: PriceListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    # ========== Pricing ==========

    def effective_price(self, seed_price: Optional[Decimal] = None) -> Decimal:
        """Price to value and trade at right now.

        Fresh current sample, else the fallback chain, else zero.
        """
        if self.is_fresh(self._state.current):
            assert self._state.current is not None
            return self._state.current.value

        fallback = self._resolve_fallback(seed_price)
        return fallback.value if fallback is not None else ZERO

    def accept_sample(self, sample: PriceSample) -> bool:
        """Adopt a new sample unless it is older than the one already held.

        Ordering is by observation time, not arrival order, so a slow
        response can never overwrite a newer price.
        """
        if not sample.value.is_finite() or sample.value <= 0:
            logger.warning("Rejecting non-positive price %s from %s", sample.value, sample.source)
            return False

        current = self._state.current
        if current is not None and not sample.is_newer_than(current):
            logger.debug(
                "Ignoring stale sample from %s (%s < %s)",
                sample.source,
                sample.observed_at.isoformat(),
                current.observed_at.isoformat(),
            )
            return False

        self._state.current = sample
        if sample.is_newer_than(self._state.last_known_good):
            self._state.last_known_good = sample
            if self._persistence is not None:
                self._persistence.save_last_known_good(sample)

        for callback in list(self._listeners):
            try:
                callback(sample)
            except Exception:
                logger.exception("Price listener failed")
        return True

    # ========== Refresh ==========

    async def refresh_price(self, attempt: int = 0, *, seed_price: Optional[Decimal] = None) -> RefreshOutcome:
        """Query the sources once.

        Args:
            attempt: Retry number (0 for a fresh request); drives the backoff delay
            seed_price: Last-resort fallback when no price has ever been observed

        Returns:
            The new PriceSample on success, a PriceFailure (with the fallback
            sample, if any) when every source failed, or None when dropped
            because another refresh is already in flight or the new sample
            was rejected as older than the held one.
        """
        if self._in_flight:
            self.dropped_refreshes += 1
            logger.debug("Price refresh already in flight, dropping request")
            return None

        self._in_flight = True
        try:
            sample = await self._query_sources()
        except OracleUnavailable as exc:
            return self._handle_failure(attempt, exc, seed_price)
        finally:
            self._in_flight = False

        if not self.accept_sample(sample):
            # The held price stays authoritative; failure count and retry are untouched
            self.dropped_refreshes += 1
            return None

        self._state.consecutive_failures = 0
        self._state.last_error = None
        self.cancel_retry()
        logger.debug("Price %s from %s", sample.value, sample.source)
        return sample

    async def _query_sources(self) -> PriceSample:
        client = self._get_client()
        timeout = self._config.request_timeout_seconds
        errors: list[str] = []

        for source in list(self._sources):
            # Timestamped at request time so a slow response sorts before later requests
            requested_at = self._clock()
            self.requests_made += 1
            try:
                value = await asyncio.wait_for(source.fetch(client), timeout=timeout)
            except asyncio.TimeoutError:
                message = f"{source.name}: timed out after {timeout:g}s"
            except PriceSourceError as exc:
                message = str(exc)
            else:
                return PriceSample(value=value, source=source.name, observed_at=requested_at)

            errors.append(message)
            logger.warning("Price source failed: %s", message)

        raise OracleUnavailable(errors)

    def _handle_failure(
        self, attempt: int, exc: OracleUnavailable, seed_price: Optional[Decimal]
    ) -> PriceFailure:
        self._state.consecutive_failures += 1
        self._state.last_error = "; ".join(exc.errors) or str(exc)
        logger.error(
            "Error fetching price (attempt %d, %d consecutive failures): %s",
            attempt,
            self._state.consecutive_failures,
            self._state.last_error,
        )

        fallback = self._resolve_fallback(seed_price)
        if fallback is not None:
            logger.info("Using fallback price %s (%s)", fallback.value, fallback.source)

        if attempt < self._config.max_retries:
            self._schedule_retry(attempt + 1, self._config.backoff_seconds(attempt), seed_price)
        else:
            logger.warning("Price retries exhausted after %d attempts, waiting for next poll", attempt + 1)

        return PriceFailure(attempt=attempt, errors=exc.errors, fallback=fallback)

    def _resolve_fallback(self, seed_price: Optional[Decimal]) -> Optional[PriceSample]:
        if self._state.last_known_good is not None:
            return self._state.last_known_good

        if self._persistence is not None:
            persisted = self._persistence.load_last_known_good()
            if persisted is not None:
                # A previously successful sample; restores memory, never replaces it
                self._state.last_known_good = persisted
                return persisted

        if seed_price is not None and seed_price.is_finite() and seed_price > 0:
            return PriceSample(value=seed_price, source=SEED_SOURCE, observed_at=self._clock())

        return None

    def _schedule_retry(self, attempt: int, delay: float, seed_price: Optional[Decimal]) -> None:
        self.cancel_retry()
        logger.info("Retrying price fetch in %.1fs (attempt %d)", delay, attempt)
        self._retry = ScheduledTask.after(
            delay,
            lambda: self.refresh_price(attempt, seed_price=seed_price),
            name=f"price-retry-{attempt}",
        )

    def cancel_retry(self) -> None:
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None

    # ========== Lifecycle ==========

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._config.request_timeout_seconds,
                headers={"Accept": "application/json", "User-Agent": "coincraze/1.0"},
            )
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        """Cancel any pending retry and close the HTTP client if we own it."""
        retry = self._retry
        self.cancel_retry()
        if retry is not None:
            await retry.wait()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
