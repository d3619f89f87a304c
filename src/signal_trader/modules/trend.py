"""EMA gap plus RSI trend scorer."""

from __future__ import annotations

import math

import pandas as pd  # type: ignore[import-untyped]

from signal_trader.features.indicators import clamp, ema, rsi_wilder
from signal_trader.types import ModuleName, ModuleResult, Signal, TrendMeta

EMA_FAST = 9
EMA_SLOW = 21
RSI_PERIOD = 14
MIN_CANDLES = EMA_SLOW + 1
GAP_DEAD_ZONE_PCT = 0.1
MAX_GAP_SHIFT = 30.0
MAX_RSI_SHIFT = 20.0


def analyze(symbol: str, candles: pd.DataFrame | None) -> ModuleResult | None:
    """Score both sides from 50, shifting by the EMA9/EMA21 gap and RSI distance from 50."""
    if candles is None or len(candles) < MIN_CANDLES:
        return None

    close = candles["close"].astype(float)
    ema_fast = float(ema(close, EMA_FAST).iloc[-1])
    ema_slow = float(ema(close, EMA_SLOW).iloc[-1])
    rsi = float(rsi_wilder(close, RSI_PERIOD).iloc[-1])
    if math.isnan(ema_fast) or math.isnan(ema_slow) or math.isnan(rsi) or ema_slow <= 0:
        return None

    gap_pct = (ema_fast - ema_slow) / ema_slow * 100
    if abs(gap_pct) < GAP_DEAD_ZONE_PCT:
        gap_pct = 0.0

    long_score = 50.0
    short_score = 50.0

    gap_shift = min(MAX_GAP_SHIFT, 5 * abs(gap_pct))
    if gap_pct > 0:
        long_score += gap_shift
        short_score -= gap_shift
    elif gap_pct < 0:
        long_score -= gap_shift
        short_score += gap_shift

    rsi_shift = min(MAX_RSI_SHIFT, abs(rsi - 50))
    if rsi > 50:
        long_score += rsi_shift
        short_score -= rsi_shift
    elif rsi < 50:
        long_score -= rsi_shift
        short_score += rsi_shift

    long_score = clamp(long_score)
    short_score = clamp(short_score)

    signal: Signal = "NEUTRAL"
    if long_score > short_score:
        signal = "LONG"
    elif short_score > long_score:
        signal = "SHORT"

    return ModuleResult(
        module=ModuleName.TREND,
        symbol=symbol,
        signal=signal,
        strength=max(long_score, short_score),
        long_score=long_score,
        short_score=short_score,
        meta=TrendMeta(
            ema_fast=ema_fast,
            ema_slow=ema_slow,
            gap_pct=gap_pct,
            rsi=rsi,
            candles_used=len(candles),
        ),
    )
