"""Tests for the price poller (cadences, signal triggers and teardown)."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from coincraze.config import OracleConfig, PollerConfig
from coincraze.errors import PersistenceUnavailable
from coincraze.market_data import PricePoller
from coincraze.persistence import LedgerPersistence, StorageKeys
from coincraze.signals import ONLINE, VISIBILITY_CHANGED, HostSignals
from coincraze.storage import InMemoryStore
from price_stubs import COINGECKO_HOST, coingecko_ok

QUIET = PollerConfig(fast_interval_seconds=60, slow_interval_seconds=60)


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_start_refreshes_immediately(make_oracle, persistence):
    oracle, handler = make_oracle({COINGECKO_HOST: coingecko_ok()}, persistence=persistence)
    poller = PricePoller(oracle, persistence=persistence, config=QUIET)

    await poller.start()
    try:
        await _wait_until(lambda: oracle.state.current is not None)
        assert poller.running is True
        assert poller.active_timers == 2
        assert poller.fired["startup"] == 1
        assert poller.last_update_ms() is not None
    finally:
        await poller.stop()


@pytest.mark.asyncio
async def test_stop_cancels_timers_and_listeners(make_oracle):
    oracle, _ = make_oracle({COINGECKO_HOST: coingecko_ok()})
    signals = HostSignals()
    poller = PricePoller(oracle, signals=signals, config=QUIET)

    await poller.start(initial_refresh=False)
    assert signals.listener_count(VISIBILITY_CHANGED) == 1
    assert signals.listener_count(ONLINE) == 1

    await poller.stop()

    assert poller.running is False
    assert poller.active_timers == 0
    assert signals.listener_count(VISIBILITY_CHANGED) == 0
    assert signals.listener_count(ONLINE) == 0

    # Signals after teardown start nothing
    signals.notify_online()
    assert poller.fired["online"] == 0

    # Idempotent
    await poller.stop()


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_refresh(make_oracle):
    gate = asyncio.Event()

    async def never(request: httpx.Request) -> httpx.Response:
        await gate.wait()
        return coingecko_ok()

    oracle, _ = make_oracle({COINGECKO_HOST: never}, config=OracleConfig(request_timeout_seconds=10, max_retries=0))
    poller = PricePoller(oracle, config=QUIET)

    await poller.start()
    await _wait_until(lambda: oracle.in_flight)
    await poller.stop()

    assert oracle.in_flight is False
    assert oracle.state.current is None


@pytest.mark.asyncio
async def test_stop_cancels_pending_retry(make_oracle):
    oracle, _ = make_oracle(
        {COINGECKO_HOST: httpx.Response(500)},
        config=OracleConfig(max_retries=3, backoff_base_ms=1000, request_timeout_seconds=0.5),
    )
    poller = PricePoller(oracle, config=QUIET)

    await poller.start()
    await _wait_until(lambda: oracle.retry_pending)
    await poller.stop()

    assert oracle.retry_pending is False


@pytest.mark.asyncio
async def test_trigger_skipped_while_refresh_running(make_oracle):
    gate = asyncio.Event()

    async def gated(request: httpx.Request) -> httpx.Response:
        await gate.wait()
        return coingecko_ok()

    oracle, handler = make_oracle({COINGECKO_HOST: gated})
    poller = PricePoller(oracle, config=QUIET)
    await poller.start(initial_refresh=False)
    try:
        assert poller.trigger("manual") is True
        assert poller.trigger("manual") is False
        assert poller.skipped["manual"] == 1

        gate.set()
        await _wait_until(lambda: oracle.state.current is not None)
        assert handler.calls == [COINGECKO_HOST]
    finally:
        await poller.stop()


@pytest.mark.asyncio
async def test_trigger_before_start_does_nothing(make_oracle):
    oracle, _ = make_oracle({COINGECKO_HOST: coingecko_ok()})
    poller = PricePoller(oracle, config=QUIET)

    assert poller.trigger("manual") is False


@pytest.mark.asyncio
async def test_fast_cadence_only_while_visible(make_oracle):
    oracle, _ = make_oracle({COINGECKO_HOST: coingecko_ok()})
    signals = HostSignals(visible=False)
    config = PollerConfig(fast_interval_seconds=0.02, slow_interval_seconds=60, visibility_min_gap_seconds=0)
    poller = PricePoller(oracle, signals=signals, config=config)

    await poller.start(initial_refresh=False)
    try:
        await asyncio.sleep(0.1)
        assert poller.fired["fast"] == 0

        signals.set_visible(True)
        await _wait_until(lambda: poller.fired["fast"] >= 2)
        assert poller.fired["visible"] == 1
    finally:
        await poller.stop()


@pytest.mark.asyncio
async def test_slow_cadence_skips_after_recent_update(make_oracle, persistence, clock):
    oracle, handler = make_oracle({COINGECKO_HOST: coingecko_ok()}, persistence=persistence, clock=clock)
    signals = HostSignals(visible=False)
    config = PollerConfig(fast_interval_seconds=60, slow_interval_seconds=0.05)
    poller = PricePoller(oracle, signals=signals, persistence=persistence, config=config, clock=clock.epoch)

    await poller.start(initial_refresh=False)
    try:
        # Nothing observed yet, so the slow cadence refreshes
        await _wait_until(lambda: oracle.state.current is not None)
        assert poller.fired["slow"] == 1

        # The clock stands still, so every later tick sees a fresh update
        await _wait_until(lambda: poller.skipped["slow"] >= 2)
        assert poller.fired["slow"] == 1
        assert handler.calls == [COINGECKO_HOST]
    finally:
        await poller.stop()


@pytest.mark.asyncio
async def test_visibility_trigger_is_rate_limited(make_oracle):
    oracle, handler = make_oracle({COINGECKO_HOST: coingecko_ok()})
    signals = HostSignals(visible=True)
    poller = PricePoller(oracle, signals=signals, config=QUIET)

    await poller.start()
    try:
        await _wait_until(lambda: oracle.state.current is not None)

        signals.set_visible(False)
        signals.set_visible(True)

        assert poller.skipped["visible"] == 1
        assert poller.fired["visible"] == 0
    finally:
        await poller.stop()


@pytest.mark.asyncio
async def test_online_trigger(make_oracle):
    oracle, handler = make_oracle({COINGECKO_HOST: coingecko_ok()})
    signals = HostSignals()
    poller = PricePoller(oracle, signals=signals, config=QUIET)

    await poller.start(initial_refresh=False)
    try:
        signals.notify_online()
        assert poller.fired["online"] == 1
        await _wait_until(lambda: oracle.state.current is not None)

        # Back online again right after a successful update
        signals.notify_online()
        assert poller.skipped["online"] == 1
    finally:
        await poller.stop()


@pytest.mark.asyncio
async def test_refresh_passes_seed_price(make_oracle):
    oracle, _ = make_oracle({COINGECKO_HOST: httpx.Response(500)})
    poller = PricePoller(oracle, config=QUIET, seed_provider=lambda: Decimal("20"))

    with patch.object(oracle, "refresh_price", AsyncMock(return_value=None)) as refresh:
        await poller.start()
        try:
            await _wait_until(lambda: refresh.await_count == 1)
        finally:
            await poller.stop()

    refresh.assert_awaited_once_with(seed_price=Decimal("20"))


def test_updated_within_uses_persisted_timestamp(persistence, make_oracle):
    oracle, _ = make_oracle()
    persistence.store.set(StorageKeys.LAST_PRICE_UPDATE_TIME, "1000000")
    poller = PricePoller(oracle, persistence=persistence, clock=lambda: 1003.0)

    assert poller.last_update_ms() == 1000000
    assert poller.updated_within(5) is True
    assert poller.updated_within(2) is False


class ReadOnlyStore(InMemoryStore):
    """Store that still reads but rejects every write."""

    def set(self, key: str, value: str) -> None:
        raise PersistenceUnavailable("read-only file system")

    def delete(self, key: str) -> None:
        raise PersistenceUnavailable("read-only file system")


@pytest.mark.asyncio
async def test_in_memory_update_wins_over_older_persisted_time(make_oracle, clock):
    hour_ago_ms = int((clock.epoch() - 3600) * 1000)
    persistence = LedgerPersistence(ReadOnlyStore({StorageKeys.LAST_PRICE_UPDATE_TIME: str(hour_ago_ms)}))
    oracle, _ = make_oracle({COINGECKO_HOST: coingecko_ok(150)}, persistence=persistence, clock=clock)
    poller = PricePoller(oracle, persistence=persistence, config=QUIET, clock=clock.epoch)

    await oracle.refresh_price()

    assert persistence.write_failures == 1
    assert persistence.last_update_ms() == hour_ago_ms
    assert poller.last_update_ms() == int(clock.epoch() * 1000)
    assert poller.updated_within(30) is True
