"""RSI + volume + MA trend composite.

Three checks per side (trend alignment, volume above its recent average, RSI
on the side of 50) are counted and mapped to a score. An RSI outside the
30..70 band vetoes the module entirely.
"""

from __future__ import annotations

import math
from dataclasses import replace

import pandas as pd  # type: ignore[import-untyped]

from signal_trader.features.indicators import rsi_wilder
from signal_trader.types import ModuleName, ModuleResult, RsiVolTrendMeta, Signal

RSI_PERIOD = 50
RSI_WARMUP = 100
MA_SHORT = 7
MA_LONG = 25
VOL_LOOKBACK = 10
RSI_OVERBOUGHT = 70.0
RSI_OVERSOLD = 30.0
DEAD_ZONE = 5.0
NEED_BARS = max(RSI_WARMUP + RSI_PERIOD + 5, MA_LONG + VOL_LOOKBACK + 5)

_CHECK_SCORES = {0: 0.0, 1: 33.0, 2: 66.0, 3: 100.0}


def _neutral_zero(symbol: str, meta: RsiVolTrendMeta) -> ModuleResult:
    return ModuleResult(
        module=ModuleName.RSI_VOL_TREND,
        symbol=symbol,
        signal="NEUTRAL",
        strength=0.0,
        long_score=0.0,
        short_score=0.0,
        meta=meta,
    )


def analyze(symbol: str, candles: pd.DataFrame | None) -> ModuleResult:
    """Never returns ``None``: short history yields a neutral-zero result."""
    candles_used = 0 if candles is None else len(candles)
    if candles is None or candles_used < NEED_BARS:
        return _neutral_zero(symbol, RsiVolTrendMeta(candles_used=candles_used))

    close = candles["close"].astype(float)
    volume = candles["volume"].astype(float)
    price = float(close.iloc[-1])
    ma_short = float(close.iloc[-MA_SHORT:].mean())
    ma_long = float(close.iloc[-MA_LONG:].mean())
    last_volume = float(volume.iloc[-1])
    avg_volume = float(volume.iloc[-VOL_LOOKBACK - 1 : -1].mean())

    rsi = float(rsi_wilder(close.iloc[-(RSI_WARMUP + RSI_PERIOD) :], RSI_PERIOD).iloc[-1])
    if math.isnan(rsi):
        return _neutral_zero(symbol, RsiVolTrendMeta(candles_used=candles_used))

    meta = RsiVolTrendMeta(
        candles_used=candles_used,
        rsi=rsi,
        ma_short=ma_short,
        ma_long=ma_long,
        volume=last_volume,
        avg_volume=avg_volume,
    )
    if rsi > RSI_OVERBOUGHT or rsi < RSI_OVERSOLD:
        return _neutral_zero(symbol, replace(meta, vetoed=True))

    volume_ok = avg_volume > 0 and last_volume > avg_volume
    long_checks = sum([price > ma_short > ma_long, volume_ok, rsi > 50])
    short_checks = sum([price < ma_short < ma_long, volume_ok, rsi < 50])
    long_score = _CHECK_SCORES[long_checks]
    short_score = _CHECK_SCORES[short_checks]

    signal: Signal = "NEUTRAL"
    if abs(long_score - short_score) > DEAD_ZONE:
        signal = "LONG" if long_score > short_score else "SHORT"

    return ModuleResult(
        module=ModuleName.RSI_VOL_TREND,
        symbol=symbol,
        signal=signal,
        strength=max(long_score, short_score),
        long_score=long_score,
        short_score=short_score,
        meta=meta,
    )
