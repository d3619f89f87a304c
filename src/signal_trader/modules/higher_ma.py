"""Higher-timeframe moving average spread filter."""

from __future__ import annotations

import math

import pandas as pd  # type: ignore[import-untyped]

from signal_trader.features.indicators import ema, scale_gap_to_strength, sma
from signal_trader.types import HigherMAMeta, ModuleName, ModuleResult, Signal
from signal_trader.strategy.coin_config import HigherMAConfig

DISAGREEMENT_PENALTY = 0.8


def analyze(
    symbol: str,
    candles: pd.DataFrame | None,
    cfg: HigherMAConfig,
) -> ModuleResult | None:
    if candles is None or len(candles) < cfg.ma_long:
        return None

    close = candles["close"].astype(float)
    if cfg.ma_type == "EMA":
        ma_short = float(ema(close, cfg.ma_short, seed=cfg.ema_seed).iloc[-1])
        ma_long = float(ema(close, cfg.ma_long, seed=cfg.ema_seed).iloc[-1])
    else:
        ma_short = float(sma(close, cfg.ma_short).iloc[-1])
        ma_long = float(sma(close, cfg.ma_long).iloc[-1])
    price = float(close.iloc[-1])
    if math.isnan(ma_short) or math.isnan(ma_long) or ma_long == 0:
        return None

    delta_pct = (ma_short - ma_long) / ma_long * 100
    price_vs_long = price - ma_long
    price_disagrees = (delta_pct > 0 and price_vs_long < 0) or (delta_pct < 0 and price_vs_long > 0)

    strength = scale_gap_to_strength(delta_pct, cfg.scale, dead_zone=cfg.threshold_pct)
    signal: Signal = "NEUTRAL"
    if strength > 0:
        signal = "LONG" if delta_pct > 0 else "SHORT"
        if price_disagrees:
            strength *= DISAGREEMENT_PENALTY

    return ModuleResult(
        module=ModuleName.HIGHER_MA,
        symbol=symbol,
        signal=signal,
        strength=strength,
        long_score=strength if signal == "LONG" else 0.0,
        short_score=strength if signal == "SHORT" else 0.0,
        meta=HigherMAMeta(
            timeframe=cfg.timeframe,
            ma_type=cfg.ma_type,
            ma_short=ma_short,
            ma_long=ma_long,
            delta_pct=delta_pct,
            price=price,
            price_disagrees=price_disagrees,
        ),
    )
