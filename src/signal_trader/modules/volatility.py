"""ATR% volatility regime classifier (non-directional)."""

from __future__ import annotations

import pandas as pd  # type: ignore[import-untyped]

from signal_trader.features.indicators import clamp, true_range
from signal_trader.types import ModuleName, ModuleResult, VolatilityMeta, VolatilityRegime


def analyze(
    symbol: str,
    candles: pd.DataFrame | None,
    *,
    window: int,
    dead_below: float,
    extreme_above: float,
) -> ModuleResult | None:
    """Classify mean true range of the last ``window`` bars as DEAD, NORMAL or EXTREME."""
    if candles is None or len(candles) < window + 1:
        return None

    last_close = float(candles["close"].iloc[-1])
    if last_close <= 0:
        return None

    atr_abs = float(true_range(candles).iloc[-window:].mean())
    atr_pct = atr_abs / last_close * 100

    regime: VolatilityRegime
    if atr_pct < dead_below:
        regime, strength = "DEAD", 0.0
    elif atr_pct > extreme_above:
        regime, strength = "EXTREME", 100.0
    else:
        regime, strength = "NORMAL", clamp(atr_pct * 50)

    return ModuleResult(
        module=ModuleName.VOLATILITY,
        symbol=symbol,
        signal="NEUTRAL",
        strength=strength,
        long_score=0.0,
        short_score=0.0,
        meta=VolatilityMeta(regime=regime, atr_abs=atr_abs, atr_pct=atr_pct, window=window),
    )
