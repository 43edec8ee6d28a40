"""Recurring price refreshes.

Two overlapping cadences plus event triggers:

- fast: every ``fast_interval_seconds`` while the host view is visible
- slow: every ``slow_interval_seconds`` regardless of visibility, skipped
  when a successful update already happened within that interval
- "became visible" and "back online" signals, each rate-limited against the
  last successful update

Every timer lives in one TaskScope and every listener is detached in
``stop()``, so nothing keeps firing after teardown.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from decimal import Decimal
from typing import Callable, Optional

from coincraze.config import PollerConfig
from coincraze.market_data.oracle import PriceOracle
from coincraze.persistence.adapter import LedgerPersistence
from coincraze.scheduling import ScheduledTask, TaskScope
from coincraze.signals import ONLINE, VISIBILITY_CHANGED, HostSignals

logger = logging.getLogger(__name__)


class PricePoller:
    def __init__(
        self,
        oracle: PriceOracle,
        *,
        signals: Optional[HostSignals] = None,
        persistence: Optional[LedgerPersistence] = None,
        config: Optional[PollerConfig] = None,
        seed_provider: Optional[Callable[[], Optional[Decimal]]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the poller.

        Args:
            oracle: Oracle to refresh
            signals: Host visibility/connectivity signals (a private one is created if omitted)
            persistence: Source of the persisted last-update timestamp
            config: Cadences and rate-limit gaps
            seed_provider: Returns the seed price for the oracle fallback chain
            clock: Returns the current time in epoch seconds
        """
        self._oracle = oracle
        self._signals = signals or HostSignals()
        self._persistence = persistence
        self._config = config or PollerConfig()
        self._seed_provider = seed_provider
        self._clock = clock

        self._scope: Optional[TaskScope] = None
        self._refresh_task: Optional[ScheduledTask] = None
        self._unsubscribers: list[Callable[[], None]] = []
        self.fired: Counter[str] = Counter()
        self.skipped: Counter[str] = Counter()

    @property
    def running(self) -> bool:
        return self._scope is not None

    @property
    def signals(self) -> HostSignals:
        return self._signals

    @property
    def active_timers(self) -> int:
        return len(self._scope) if self._scope is not None else 0

    # ========== Lifecycle ==========

    async def start(self, *, initial_refresh: bool = True) -> None:
        if self.running:
            return

        self._scope = TaskScope("price-poller")
        self._scope.every(self._config.fast_interval_seconds, self._fast_tick, name="fast")
        self._scope.every(self._config.slow_interval_seconds, self._slow_tick, name="slow")
        self._unsubscribers = [
            self._signals.subscribe(VISIBILITY_CHANGED, self._on_visibility_changed),
            self._signals.subscribe(ONLINE, self._on_online),
        ]
        logger.info(
            "Price poller started (fast=%gs, slow=%gs)",
            self._config.fast_interval_seconds,
            self._config.slow_interval_seconds,
        )

        if initial_refresh:
            self.trigger("startup")

    async def stop(self) -> None:
        """Cancel all timers, the running refresh and any oracle retry. Idempotent."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        scope, self._scope = self._scope, None
        self._refresh_task = None
        if scope is not None:
            await scope.aclose()
            logger.info("Price poller stopped")

        self._oracle.cancel_retry()

    # ========== Triggers ==========

    def trigger(self, reason: str) -> bool:
        """Start a refresh now unless one is already running.

        Returns:
            True if a refresh was started
        """
        if self._scope is None:
            return False
        if self._refresh_task is not None and self._refresh_task.active:
            self.skipped[reason] += 1
            logger.debug("Refresh (%s) skipped: previous refresh still running", reason)
            return False

        self.fired[reason] += 1
        self._refresh_task = self._scope.after(0, self._refresh, name=f"refresh-{reason}")
        return True

    async def _refresh(self) -> None:
        seed = self._seed_provider() if self._seed_provider is not None else None
        await self._oracle.refresh_price(seed_price=seed)

    async def _fast_tick(self) -> None:
        if self._signals.visible:
            self.trigger("fast")

    async def _slow_tick(self) -> None:
        if self.updated_within(self._config.slow_interval_seconds):
            self.skipped["slow"] += 1
            return
        self.trigger("slow")

    def _on_visibility_changed(self, visible: bool) -> None:
        if not visible:
            return
        if self.updated_within(self._config.visibility_min_gap_seconds):
            self.skipped["visible"] += 1
            return
        self.trigger("visible")

    def _on_online(self) -> None:
        if self.updated_within(self._config.online_min_gap_seconds):
            self.skipped["online"] += 1
            return
        self.trigger("online")

    # ========== Freshness ==========

    def last_update_ms(self) -> Optional[int]:
        """Latest of the persisted update time and the in-memory last known good."""
        candidates: list[int] = []
        if self._persistence is not None:
            persisted = self._persistence.last_update_ms()
            if persisted is not None:
                candidates.append(persisted)

        # A failed write leaves the persisted time behind the in-memory sample
        sample = self._oracle.state.last_known_good
        if sample is not None:
            candidates.append(int(sample.observed_at.timestamp() * 1000))

        return max(candidates) if candidates else None

    def updated_within(self, seconds: float) -> bool:
        last = self.last_update_ms()
        if last is None:
            return False
        return (self._clock() * 1000) - last <= seconds * 1000
