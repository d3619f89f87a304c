"""Analysis module registry.

Each scorer is a pure function of a market snapshot slice and fixed
parameters. ``run_modules`` dispatches on ``ModuleName`` and isolates failures
so one broken scorer only marks itself unavailable for the cycle.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import structlog

from signal_trader.data.snapshot import MarketSnapshot
from signal_trader.modules import (
    choppiness,
    funding,
    higher_ma,
    liquidations,
    liquidity,
    long_short,
    open_interest,
    rsi_vol_trend,
    trend,
    trend_regime,
    volatility,
)
from signal_trader.strategy.coin_config import CoinConfig
from signal_trader.types import ModuleName, ModuleResult, ModuleResults
from signal_trader.utils.logging import get_logger, log_module_result

ModuleRunner = Callable[[MarketSnapshot, CoinConfig, datetime], ModuleResult | None]


def _run_trend(snap: MarketSnapshot, cfg: CoinConfig, now: datetime) -> ModuleResult | None:
    return trend.analyze(snap.symbol, snap.candles)


def _run_volatility(snap: MarketSnapshot, cfg: CoinConfig, now: datetime) -> ModuleResult | None:
    vf = cfg.strategy.volatility_filter
    return volatility.analyze(
        snap.symbol,
        snap.candles,
        window=cfg.analysis_config.vol_window,
        dead_below=vf.dead_below,
        extreme_above=vf.extreme_above,
    )


def _run_trend_regime(snap: MarketSnapshot, cfg: CoinConfig, now: datetime) -> ModuleResult | None:
    ac = cfg.analysis_config
    return trend_regime.analyze(
        snap.symbol,
        snap.candles,
        period=ac.trend_regime.period,
        adx_max_for_scale=ac.trend_regime.adx_max_for_scale,
        adx_signal_min=ac.trend_regime.adx_signal_min,
    )


def _run_liquidity(snap: MarketSnapshot, cfg: CoinConfig, now: datetime) -> ModuleResult | None:
    return liquidity.analyze(
        snap.symbol,
        snap.liquidity,
        snap.last_price,
        window=cfg.analysis_config.liquidity_window,
    )


def _run_liquidations(snap: MarketSnapshot, cfg: CoinConfig, now: datetime) -> ModuleResult | None:
    lf = cfg.strategy.liquidations_filter
    return liquidations.analyze(
        snap.symbol,
        snap.liquidations,
        history_limit=cfg.analysis_config.liq_window,
        sent_window=cfg.analysis_config.liq_sent_window,
        min_total=lf.min_threshold,
        max_total=lf.max_threshold,
        now=now,
    )


def _run_open_interest(snap: MarketSnapshot, cfg: CoinConfig, now: datetime) -> ModuleResult | None:
    return open_interest.analyze(snap.symbol, snap.open_interest, window=cfg.analysis_config.oi_window)


def _run_long_short(snap: MarketSnapshot, cfg: CoinConfig, now: datetime) -> ModuleResult | None:
    return long_short.analyze(
        snap.symbol, snap.long_short, window=cfg.analysis_config.long_short_window
    )


def _run_higher_ma(snap: MarketSnapshot, cfg: CoinConfig, now: datetime) -> ModuleResult | None:
    return higher_ma.analyze(snap.symbol, snap.higher_candles, cfg.analysis_config.higher_ma)


def _run_rsi_vol_trend(snap: MarketSnapshot, cfg: CoinConfig, now: datetime) -> ModuleResult | None:
    return rsi_vol_trend.analyze(snap.symbol, snap.candles)


def _run_funding(snap: MarketSnapshot, cfg: CoinConfig, now: datetime) -> ModuleResult | None:
    return funding.analyze(snap.symbol, snap.funding_rates, window=cfg.analysis_config.funding_window)


def _run_choppiness(snap: MarketSnapshot, cfg: CoinConfig, now: datetime) -> ModuleResult | None:
    return choppiness.analyze(snap.symbol, snap.chop_candles, period=cfg.analysis_config.choppiness.period)


REGISTRY: dict[ModuleName, ModuleRunner] = {
    ModuleName.TREND: _run_trend,
    ModuleName.VOLATILITY: _run_volatility,
    ModuleName.TREND_REGIME: _run_trend_regime,
    ModuleName.LIQUIDITY: _run_liquidity,
    ModuleName.LIQUIDATIONS: _run_liquidations,
    ModuleName.OPEN_INTEREST: _run_open_interest,
    ModuleName.LONG_SHORT: _run_long_short,
    ModuleName.HIGHER_MA: _run_higher_ma,
    ModuleName.RSI_VOL_TREND: _run_rsi_vol_trend,
    ModuleName.FUNDING: _run_funding,
    ModuleName.CHOPPINESS: _run_choppiness,
}


def modules_to_run(cfg: CoinConfig) -> list[ModuleName]:
    """Weighted modules plus the ones the filters and exits read from.

    Volatility is always evaluated (regime filter, ATR stops); funding is
    evaluated whenever the funding-extreme filter is configured, choppiness
    whenever its regime filter is.
    """
    names = list(cfg.analysis_config.configured_modules)
    if ModuleName.VOLATILITY not in names:
        names.append(ModuleName.VOLATILITY)
    if cfg.strategy.entry.avoid_when.funding_extreme is not None and ModuleName.FUNDING not in names:
        names.append(ModuleName.FUNDING)
    if cfg.strategy.entry.avoid_when.choppiness is not None and ModuleName.CHOPPINESS not in names:
        names.append(ModuleName.CHOPPINESS)
    return names


def run_modules(
    snapshot: MarketSnapshot,
    cfg: CoinConfig,
    *,
    now: datetime | None = None,
    logger: structlog.stdlib.BoundLogger | None = None,
) -> ModuleResults:
    """Evaluate every needed module against one snapshot."""
    logger = logger or get_logger("signal_trader.modules")
    now = now or snapshot.fetched_at
    results: ModuleResults = {}
    for name in modules_to_run(cfg):
        try:
            result = REGISTRY[name](snapshot, cfg, now)
        except Exception as exc:  # noqa: BLE001 - a failing scorer is just unavailable.
            logger.warning("module_failed", symbol=snapshot.symbol, module=name.value, error=str(exc))
            result = None
        results[name] = result
        log_module_result(
            logger,
            symbol=snapshot.symbol,
            module=name.value,
            signal=None if result is None else result.signal,
            strength=None if result is None else result.strength,
        )
    return results


__all__ = ["REGISTRY", "ModuleRunner", "modules_to_run", "run_modules"]
