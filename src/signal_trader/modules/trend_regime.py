"""ADX / DI trend-strength scorer."""

from __future__ import annotations

import math

import pandas as pd  # type: ignore[import-untyped]

from signal_trader.features.indicators import adx, clamp
from signal_trader.types import ModuleName, ModuleResult, Signal, TrendRegimeMeta


def analyze(
    symbol: str,
    candles: pd.DataFrame | None,
    *,
    period: int,
    adx_max_for_scale: float,
    adx_signal_min: float,
) -> ModuleResult | None:
    if candles is None or len(candles) < 2 * period:
        return None

    last = adx(candles, period).iloc[-1]
    adx_value = float(last["adx"])
    plus_di = float(last["plus_di"])
    minus_di = float(last["minus_di"])
    if math.isnan(adx_value) or math.isnan(plus_di) or math.isnan(minus_di):
        return None

    separation = plus_di - minus_di
    signal: Signal = "NEUTRAL"
    strength = 0.0
    if abs(separation) > adx_signal_min:
        signal = "LONG" if separation > 0 else "SHORT"
        strength = clamp(adx_value / adx_max_for_scale * 100)

    return ModuleResult(
        module=ModuleName.TREND_REGIME,
        symbol=symbol,
        signal=signal,
        strength=strength,
        long_score=strength if signal == "LONG" else 0.0,
        short_score=strength if signal == "SHORT" else 0.0,
        meta=TrendRegimeMeta(adx=adx_value, plus_di=plus_di, minus_di=minus_di, period=period),
    )
