"""Shared test fixtures for pytest.

Provides stores, a controllable clock and an oracle factory whose price
endpoints are stubbed with httpx.MockTransport.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional

import httpx
import pytest

from coincraze.config import OracleConfig
from coincraze.market_data import PriceOracle
from coincraze.persistence import LedgerPersistence
from coincraze.storage import InMemoryStore
from price_stubs import FakeClock, RoutedHandler


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def persistence(store: InMemoryStore) -> LedgerPersistence:
    return LedgerPersistence(store)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_oracle() -> Callable[..., tuple[PriceOracle, RoutedHandler]]:
    """Factory for an oracle whose endpoints are stubbed per host.

    Retries are off unless a config says otherwise.
    """

    def _make(
        routes: Optional[dict[str, Any]] = None,
        *,
        config: Optional[OracleConfig] = None,
        persistence: Optional[LedgerPersistence] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> tuple[PriceOracle, RoutedHandler]:
        handler = RoutedHandler(routes)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        kwargs: dict[str, Any] = {}
        if clock is not None:
            kwargs["clock"] = clock
        oracle = PriceOracle(
            config=config or OracleConfig(max_retries=0, request_timeout_seconds=0.5),
            persistence=persistence,
            client=client,
            **kwargs,
        )
        return oracle, handler

    return _make
