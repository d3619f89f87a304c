"""Per-symbol market snapshot and its concurrent collection."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, TypeVar

import pandas as pd  # type: ignore[import-untyped]
import structlog

from signal_trader.errors import FetchFailure
from signal_trader.strategy.coin_config import CoinConfig
from signal_trader.types import (
    LiquidationBucket,
    LiquiditySample,
    LongShortPoint,
    ModuleName,
    OpenInterestPoint,
)
from signal_trader.utils.logging import get_logger

T = TypeVar("T")


class MarketDataSource(Protocol):
    """Blocking market data feeds; every method may raise FetchFailure."""

    def fetch_ohlcv(self, symbol: str, interval: str, limit: int) -> pd.DataFrame: ...

    def fetch_last_price(self, symbol: str) -> float: ...

    def fetch_liquidity(self, symbol: str, window: int) -> list[LiquiditySample]: ...

    def fetch_liquidations(self, symbol: str, limit: int) -> list[LiquidationBucket]: ...

    def fetch_open_interest_hist(self, symbol: str, limit: int) -> list[OpenInterestPoint]: ...

    def fetch_long_short(self, symbol: str, limit: int) -> list[LongShortPoint]: ...

    def fetch_funding_rates(self, symbol: str, limit: int) -> list[float]: ...


@dataclass(slots=True)
class MarketSnapshot:
    """Everything the modules read for one symbol in one cycle; ``None`` marks a missing feed."""

    symbol: str
    fetched_at: datetime
    candles: pd.DataFrame | None = None
    higher_candles: pd.DataFrame | None = None
    chop_candles: pd.DataFrame | None = None
    last_price: float | None = None
    liquidity: list[LiquiditySample] | None = None
    liquidations: list[LiquidationBucket] | None = None
    open_interest: list[OpenInterestPoint] | None = None
    long_short: list[LongShortPoint] | None = None
    funding_rates: list[float] | None = None
    failed_feeds: list[str] = field(default_factory=list)

    @property
    def price(self) -> float | None:
        """Last traded price, falling back to the latest candle close."""
        if self.last_price is not None:
            return self.last_price
        if self.candles is not None and not self.candles.empty:
            return float(self.candles["close"].iloc[-1])
        return None


_MODULE_FEEDS: dict[ModuleName, tuple[str, ...]] = {
    ModuleName.TREND: ("candles",),
    ModuleName.VOLATILITY: ("candles",),
    ModuleName.TREND_REGIME: ("candles",),
    ModuleName.RSI_VOL_TREND: ("candles",),
    ModuleName.LIQUIDITY: ("liquidity", "last_price"),
    ModuleName.LIQUIDATIONS: ("liquidations",),
    ModuleName.OPEN_INTEREST: ("open_interest",),
    ModuleName.LONG_SHORT: ("long_short",),
    ModuleName.HIGHER_MA: ("higher_candles",),
    ModuleName.FUNDING: ("funding_rates",),
    ModuleName.CHOPPINESS: ("chop_candles",),
}


def feeds_for(modules: Iterable[ModuleName]) -> set[str]:
    """Feeds needed by ``modules``; candles and price are always fetched for exits."""
    feeds = {"candles", "last_price"}
    for name in modules:
        feeds.update(_MODULE_FEEDS[name])
    return feeds


async def _fetch(
    name: str,
    call: Callable[[], T],
    *,
    symbol: str,
    timeout_sec: float,
    logger: structlog.stdlib.BoundLogger,
) -> T | None:
    try:
        return await asyncio.wait_for(asyncio.to_thread(call), timeout=timeout_sec)
    except asyncio.TimeoutError:
        logger.warning("feed_timeout", symbol=symbol, feed=name, timeout_sec=timeout_sec)
    except FetchFailure as exc:
        logger.warning("feed_failed", symbol=symbol, feed=name, error=str(exc))
    return None


async def collect_snapshot(
    source: MarketDataSource,
    cfg: CoinConfig,
    modules: Iterable[ModuleName],
    *,
    timeout_sec: float,
    logger: structlog.stdlib.BoundLogger | None = None,
) -> MarketSnapshot:
    """Fetch every needed feed concurrently; a failed or slow feed becomes ``None``."""
    logger = logger or get_logger("signal_trader.data.snapshot")
    symbol = cfg.symbol
    ac = cfg.analysis_config
    feeds = feeds_for(modules)

    calls: dict[str, Callable[[], Any]] = {
        "candles": lambda: source.fetch_ohlcv(symbol, ac.candle_timeframe, ac.candle_limit),
        "higher_candles": lambda: source.fetch_ohlcv(
            symbol, ac.higher_ma.timeframe, max(ac.higher_ma.ma_long + 20, 200)
        ),
        "chop_candles": lambda: source.fetch_ohlcv(
            symbol, ac.choppiness.timeframe, ac.choppiness.period + 1
        ),
        "last_price": lambda: source.fetch_last_price(symbol),
        "liquidity": lambda: source.fetch_liquidity(symbol, ac.liquidity_window),
        "liquidations": lambda: source.fetch_liquidations(symbol, ac.liq_window),
        "open_interest": lambda: source.fetch_open_interest_hist(symbol, ac.oi_window),
        "long_short": lambda: source.fetch_long_short(symbol, ac.long_short_window),
        "funding_rates": lambda: source.fetch_funding_rates(symbol, ac.funding_window),
    }
    names = [name for name in calls if name in feeds]
    values = await asyncio.gather(
        *(
            _fetch(name, calls[name], symbol=symbol, timeout_sec=timeout_sec, logger=logger)
            for name in names
        )
    )

    snapshot = MarketSnapshot(symbol=symbol, fetched_at=datetime.now(timezone.utc))
    for name, value in zip(names, values):
        if value is None:
            snapshot.failed_feeds.append(name)
            continue
        setattr(snapshot, name, value)
    return snapshot
