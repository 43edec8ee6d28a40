"""Tests for the price oracle (endpoint fallback, retry, last known good)."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from coincraze.config import OracleConfig
from coincraze.market_data import CoinGeckoSource, PriceOracle, PriceSource
from coincraze.persistence import StorageKeys
from coincraze.types import PriceFailure, PriceSample
from price_stubs import (
    BINANCE_HOST,
    COINGECKO_HOST,
    KRAKEN_HOST,
    binance_ok,
    coingecko_ok,
    kraken_ok,
)

ALL_DOWN = {
    COINGECKO_HOST: httpx.Response(500),
    BINANCE_HOST: httpx.Response(502),
    KRAKEN_HOST: httpx.Response(200, json={"error": ["EService:Unavailable"]}),
}


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def test_requires_a_source():
    with pytest.raises(ValueError):
        PriceOracle([])


def test_cannot_remove_last_source():
    oracle = PriceOracle([CoinGeckoSource()])

    assert oracle.remove_source("binance") is False
    with pytest.raises(ValueError):
        oracle.remove_source("coingecko")


def test_backoff_is_capped():
    config = OracleConfig()

    assert [config.backoff_seconds(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


# ============================================================================
# Endpoint fallback
# ============================================================================


@pytest.mark.asyncio
async def test_first_endpoint_wins(make_oracle):
    oracle, handler = make_oracle(
        {COINGECKO_HOST: coingecko_ok(), BINANCE_HOST: binance_ok(), KRAKEN_HOST: kraken_ok()}
    )

    sample = await oracle.refresh_price()

    assert isinstance(sample, PriceSample)
    assert sample.source == "coingecko"
    assert sample.value == Decimal("142.17")
    assert handler.calls == [COINGECKO_HOST]


@pytest.mark.asyncio
async def test_endpoints_tried_in_priority_order(make_oracle):
    oracle, handler = make_oracle(
        {COINGECKO_HOST: httpx.Response(429), BINANCE_HOST: binance_ok("150.5"), KRAKEN_HOST: kraken_ok()}
    )

    sample = await oracle.refresh_price()

    assert sample.source == "binance"
    assert sample.value == Decimal("150.5")
    assert handler.calls == [COINGECKO_HOST, BINANCE_HOST]
    assert oracle.requests_made == 2


@pytest.mark.asyncio
async def test_slow_endpoint_times_out(make_oracle):
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1.0)
        return coingecko_ok()

    oracle, handler = make_oracle(
        {COINGECKO_HOST: slow, BINANCE_HOST: httpx.Response(500), KRAKEN_HOST: kraken_ok("140")},
        config=OracleConfig(request_timeout_seconds=0.05, max_retries=0),
    )

    sample = await oracle.refresh_price()

    assert sample.source == "kraken"
    assert sample.value == Decimal("140")
    assert handler.calls == [COINGECKO_HOST, BINANCE_HOST, KRAKEN_HOST]


@pytest.mark.asyncio
async def test_timeout_reported_in_errors(make_oracle):
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1.0)
        return coingecko_ok()

    oracle, _ = make_oracle(
        {COINGECKO_HOST: slow, BINANCE_HOST: slow, KRAKEN_HOST: slow},
        config=OracleConfig(request_timeout_seconds=0.02, max_retries=0),
    )

    failure = await oracle.refresh_price()

    assert isinstance(failure, PriceFailure)
    assert len(failure.errors) == 3
    assert all("timed out" in error for error in failure.errors)


# ============================================================================
# Failure handling and fallback chain
# ============================================================================


@pytest.mark.asyncio
async def test_all_endpoints_fail_without_fallback(make_oracle):
    oracle, handler = make_oracle(ALL_DOWN)

    failure = await oracle.refresh_price()

    assert isinstance(failure, PriceFailure)
    assert failure.fallback is None
    assert len(failure.errors) == 3
    assert handler.calls == [COINGECKO_HOST, BINANCE_HOST, KRAKEN_HOST]
    assert oracle.effective_price() == 0
    state = oracle.state
    assert state.consecutive_failures == 1
    assert "kraken" in state.last_error


@pytest.mark.asyncio
async def test_effective_price_pinned_to_last_known_good(make_oracle, clock):
    """Three failed refreshes in a row keep serving the last observed price."""
    routes = {COINGECKO_HOST: coingecko_ok(), BINANCE_HOST: binance_ok(), KRAKEN_HOST: kraken_ok()}
    oracle, handler = make_oracle(routes, clock=clock)
    await oracle.refresh_price()

    handler.routes.update(ALL_DOWN)
    for _ in range(3):
        clock.advance(60)
        failure = await oracle.refresh_price()
        assert isinstance(failure, PriceFailure)
        assert failure.fallback.value == Decimal("142.17")

    assert oracle.is_fresh(oracle.state.current) is False
    assert oracle.effective_price() == Decimal("142.17")
    assert oracle.state.consecutive_failures == 3


@pytest.mark.asyncio
async def test_success_resets_failure_count(make_oracle):
    oracle, handler = make_oracle(dict(ALL_DOWN))
    await oracle.refresh_price()
    await oracle.refresh_price()

    handler.routes[KRAKEN_HOST] = kraken_ok("141")
    sample = await oracle.refresh_price()

    assert sample.value == Decimal("141")
    assert oracle.state.consecutive_failures == 0
    assert oracle.state.last_error is None


@pytest.mark.asyncio
async def test_memory_fallback_preferred_over_persisted(make_oracle, store, persistence, clock):
    oracle, handler = make_oracle({COINGECKO_HOST: coingecko_ok()}, persistence=persistence, clock=clock)
    await oracle.refresh_price()
    store.set(StorageKeys.LAST_SUCCESSFUL_PRICE, "999")

    handler.routes[COINGECKO_HOST] = httpx.Response(500)
    clock.advance(60)
    failure = await oracle.refresh_price()

    assert failure.fallback.value == Decimal("142.17")
    assert oracle.effective_price() == Decimal("142.17")


@pytest.mark.asyncio
async def test_persisted_fallback_preferred_over_seed(make_oracle, store, persistence):
    store.set(StorageKeys.LAST_SUCCESSFUL_PRICE, "150")
    store.set(StorageKeys.LAST_PRICE_SOURCE, "binance")
    store.set(StorageKeys.LAST_PRICE_UPDATE_TIME, "1704067200000")
    oracle, _ = make_oracle(ALL_DOWN, persistence=persistence)

    failure = await oracle.refresh_price(seed_price=Decimal("20"))

    assert failure.fallback.value == Decimal("150")
    assert failure.fallback.source == "binance"
    assert failure.fallback.observed_at.year == 2024
    # Hydrated into memory
    assert oracle.state.last_known_good == failure.fallback


@pytest.mark.asyncio
async def test_seed_price_is_last_resort(make_oracle, persistence):
    oracle, _ = make_oracle(ALL_DOWN, persistence=persistence)

    failure = await oracle.refresh_price(seed_price=Decimal("20"))

    assert failure.fallback.source == "seed"
    assert failure.fallback.value == Decimal("20")
    assert oracle.effective_price(seed_price=Decimal("20")) == Decimal("20")
    # A seed is never recorded as a successful observation
    assert oracle.state.last_known_good is None
    assert persistence.load_last_known_good() is None


@pytest.mark.asyncio
async def test_success_persists_last_known_good(make_oracle, store, persistence, clock):
    oracle, _ = make_oracle({COINGECKO_HOST: coingecko_ok()}, persistence=persistence, clock=clock)

    await oracle.refresh_price()

    saved = store.snapshot()
    assert saved[StorageKeys.LAST_SUCCESSFUL_PRICE] == "142.17"
    assert saved[StorageKeys.LAST_PRICE_SOURCE] == "coingecko"
    assert saved[StorageKeys.LAST_PRICE_UPDATE_TIME] == str(int(clock.epoch() * 1000))


# ============================================================================
# Ordering and concurrency
# ============================================================================


def test_older_sample_never_overwrites_newer(clock):
    oracle = PriceOracle([CoinGeckoSource()], clock=clock)
    newer = PriceSample(Decimal("150"), "binance", clock.now)
    older = PriceSample(Decimal("140"), "coingecko", clock.now - timedelta(seconds=5))

    assert oracle.accept_sample(newer) is True
    assert oracle.accept_sample(older) is False

    assert oracle.state.current == newer
    assert oracle.state.last_known_good == newer


def test_non_positive_sample_rejected(clock):
    oracle = PriceOracle([CoinGeckoSource()], clock=clock)

    assert oracle.accept_sample(PriceSample(Decimal("0"), "binance", clock.now)) is False
    assert oracle.state.current is None


def test_listeners_notified_on_accept(clock):
    oracle = PriceOracle([CoinGeckoSource()], clock=clock)
    received = []
    oracle.add_listener(received.append)

    def broken(sample: PriceSample) -> None:
        raise RuntimeError("listener bug")

    oracle.add_listener(broken)
    sample = PriceSample(Decimal("150"), "binance", clock.now)

    assert oracle.accept_sample(sample) is True
    assert received == [sample]

    oracle.remove_listener(received.append)
    oracle.accept_sample(PriceSample(Decimal("151"), "binance", clock.advance(1)))
    assert received == [sample]


@pytest.mark.asyncio
async def test_concurrent_refresh_is_dropped(make_oracle):
    gate = asyncio.Event()

    async def gated(request: httpx.Request) -> httpx.Response:
        await gate.wait()
        return coingecko_ok()

    oracle, handler = make_oracle({COINGECKO_HOST: gated})
    first = asyncio.create_task(oracle.refresh_price())
    await _wait_until(lambda: oracle.in_flight)

    second = await oracle.refresh_price()

    assert second is None
    assert oracle.dropped_refreshes == 1
    gate.set()
    sample = await first
    assert sample.value == Decimal("142.17")
    assert oracle.in_flight is False
    assert handler.calls == [COINGECKO_HOST]


# ============================================================================
# Retry with backoff
# ============================================================================


@pytest.mark.asyncio
async def test_retries_until_exhausted(make_oracle):
    config = OracleConfig(max_retries=2, backoff_base_ms=10, backoff_cap_ms=20, request_timeout_seconds=0.5)
    oracle, handler = make_oracle(ALL_DOWN, config=config)

    await oracle.refresh_price()
    assert oracle.retry_pending is True

    await _wait_until(lambda: oracle.state.consecutive_failures == 3)
    await _wait_until(lambda: not oracle.retry_pending)

    assert len(handler.calls) == 9
    await asyncio.sleep(0.05)
    assert len(handler.calls) == 9


@pytest.mark.asyncio
async def test_successful_retry_stops_retrying(make_oracle):
    config = OracleConfig(max_retries=3, backoff_base_ms=10, backoff_cap_ms=10, request_timeout_seconds=0.5)
    oracle, handler = make_oracle(dict(ALL_DOWN), config=config)

    await oracle.refresh_price(seed_price=Decimal("20"))
    handler.routes[COINGECKO_HOST] = coingecko_ok(130)

    await _wait_until(lambda: oracle.state.current is not None)
    await _wait_until(lambda: not oracle.retry_pending)

    assert oracle.state.current.value == Decimal("130")
    assert oracle.state.consecutive_failures == 0


@pytest.mark.asyncio
async def test_cancel_retry(make_oracle):
    config = OracleConfig(max_retries=3, backoff_base_ms=1000, request_timeout_seconds=0.5)
    oracle, handler = make_oracle(ALL_DOWN, config=config)

    await oracle.refresh_price()
    assert oracle.retry_pending is True

    oracle.cancel_retry()
    await asyncio.sleep(0.01)

    assert oracle.retry_pending is False
    assert len(handler.calls) == 3


@pytest.mark.asyncio
async def test_aclose_cancels_pending_retry():
    oracle = PriceOracle(config=OracleConfig(max_retries=3, backoff_base_ms=1000))
    oracle._schedule_retry(1, 10.0, None)

    await oracle.aclose()

    assert oracle.retry_pending is False


@pytest.mark.asyncio
async def test_refresh_with_older_sample_keeps_held_price(make_oracle, clock):
    oracle, handler = make_oracle({COINGECKO_HOST: coingecko_ok(150)}, clock=clock)
    held = await oracle.refresh_price()

    handler.routes[COINGECKO_HOST] = httpx.Response(500)
    clock.advance(-10)
    await oracle.refresh_price()

    handler.routes[COINGECKO_HOST] = coingecko_ok(140)
    outcome = await oracle.refresh_price()

    assert outcome is None
    assert oracle.dropped_refreshes == 1
    assert oracle.state.current == held
    assert oracle.state.consecutive_failures == 1
    assert oracle.state.last_error is not None


# ============================================================================
# Runtime source changes
# ============================================================================


class BackupSource(PriceSource):
    def __init__(self) -> None:
        self.name = "backup"
        self.url = "https://prices.backup.test/sol"

    def extract_price(self, payload):
        return Decimal(str(payload["price"]))


@pytest.mark.asyncio
async def test_added_source_takes_requested_priority(make_oracle):
    oracle, handler = make_oracle(
        {"prices.backup.test": httpx.Response(200, json={"price": "138.5"}), COINGECKO_HOST: coingecko_ok()}
    )

    oracle.add_source(BackupSource(), index=0)

    assert [s.name for s in oracle.sources] == ["backup", "coingecko", "binance", "kraken"]
    sample = await oracle.refresh_price()
    assert sample.source == "backup"
    assert sample.value == Decimal("138.5")
    assert handler.calls == ["prices.backup.test"]


@pytest.mark.asyncio
async def test_removed_source_is_skipped(make_oracle):
    oracle, handler = make_oracle({COINGECKO_HOST: coingecko_ok(), BINANCE_HOST: binance_ok("141")})

    assert oracle.remove_source("coingecko") is True
    sample = await oracle.refresh_price()

    assert sample.source == "binance"
    assert handler.calls == [BINANCE_HOST]
