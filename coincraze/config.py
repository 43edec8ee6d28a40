"""Runtime configuration.

All knobs have defaults that match the product behaviour; ``AppConfig.from_env``
overrides them from ``COINCRAZE_*`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

ENV_PREFIX = "COINCRAZE_"


def capped_backoff_seconds(attempt: int, base_ms: int, cap_ms: int) -> float:
    """Exponential delay in seconds: ``min(base_ms * 2**attempt, cap_ms)``."""
    return min(base_ms * (2**attempt), cap_ms) / 1000.0


def _default_feature_costs() -> dict[str, Decimal]:
    return {"verification": Decimal("200")}


@dataclass
class LedgerConfig:
    """Ledger business constants."""

    starting_balance: Decimal = Decimal("1000")
    dust_threshold: Decimal = Decimal("0.01")  # residual value treated as a full exit
    feature_costs: dict[str, Decimal] = field(default_factory=_default_feature_costs)


@dataclass
class OracleConfig:
    request_timeout_seconds: float = 5.0
    max_retries: int = 3
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 5000
    stale_after_seconds: float = 30.0

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1``."""
        return capped_backoff_seconds(attempt, self.backoff_base_ms, self.backoff_cap_ms)


@dataclass
class PollerConfig:
    fast_interval_seconds: float = 10.0
    slow_interval_seconds: float = 30.0
    visibility_min_gap_seconds: float = 5.0
    online_min_gap_seconds: float = 5.0
    refresh_on_start: bool = True


@dataclass
class MarketDataConfig:
    """Market cap and 24h change feed."""

    interval_seconds: float = 30.0
    request_timeout_seconds: float = 5.0
    max_retries: int = 5
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 10000

    def backoff_seconds(self, attempt: int) -> float:
        return capped_backoff_seconds(attempt, self.backoff_base_ms, self.backoff_cap_ms)


@dataclass
class AppConfig:
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    market: MarketDataConfig = field(default_factory=MarketDataConfig)
    store_url: str = "memory://"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
        """Build configuration from environment variables.

        Raises:
            ValueError: If a variable is set but cannot be parsed
        """
        env = os.environ if environ is None else environ
        ledger = LedgerConfig()
        oracle = OracleConfig()
        poller = PollerConfig()
        market = MarketDataConfig()

        ledger.starting_balance = _decimal(env, "STARTING_BALANCE", ledger.starting_balance)
        ledger.dust_threshold = _decimal(env, "DUST_THRESHOLD", ledger.dust_threshold)
        ledger.feature_costs["verification"] = _decimal(
            env, "VERIFICATION_COST", ledger.feature_costs["verification"]
        )

        oracle.request_timeout_seconds = _float(env, "REQUEST_TIMEOUT", oracle.request_timeout_seconds)
        oracle.max_retries = _int(env, "MAX_RETRIES", oracle.max_retries)
        oracle.backoff_cap_ms = _int(env, "BACKOFF_CAP_MS", oracle.backoff_cap_ms)
        oracle.stale_after_seconds = _float(env, "STALE_AFTER", oracle.stale_after_seconds)

        poller.fast_interval_seconds = _float(env, "FAST_INTERVAL", poller.fast_interval_seconds)
        poller.slow_interval_seconds = _float(env, "SLOW_INTERVAL", poller.slow_interval_seconds)
        market.interval_seconds = _float(env, "MARKET_INTERVAL", market.interval_seconds)

        if ledger.starting_balance < 0:
            raise ValueError(f"{ENV_PREFIX}STARTING_BALANCE must be >= 0")
        if oracle.max_retries < 0:
            raise ValueError(f"{ENV_PREFIX}MAX_RETRIES must be >= 0")
        if min(poller.fast_interval_seconds, poller.slow_interval_seconds, market.interval_seconds) <= 0:
            raise ValueError("Poll intervals must be positive")

        return cls(
            ledger=ledger,
            oracle=oracle,
            poller=poller,
            market=market,
            store_url=env.get(f"{ENV_PREFIX}STORE_URL", "memory://"),
            log_level=env.get(f"{ENV_PREFIX}LOG_LEVEL", "INFO").upper(),
        )


def _raw(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(f"{ENV_PREFIX}{name}", "").strip()
    return value or None


def _decimal(env: Mapping[str, str], name: str, default: Decimal) -> Decimal:
    raw = _raw(env, name)
    if raw is None:
        return default
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"{ENV_PREFIX}{name} is not a number: {raw!r}") from exc
    if not value.is_finite():
        raise ValueError(f"{ENV_PREFIX}{name} must be finite")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _raw(env, name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} is not a number: {raw!r}") from exc


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _raw(env, name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} is not an integer: {raw!r}") from exc
