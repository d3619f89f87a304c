"""Choppiness Index scorer (non-directional).

CHOP = 100 * log10(sum TR / (max high - min low)) / log10(period). Low values
mean a clean trend, high values a flat or whipsawing market. The score is the
inverted index, so a trending market scores high.
"""

from __future__ import annotations

import math

import pandas as pd  # type: ignore[import-untyped]

from signal_trader.features.indicators import clamp, true_range
from signal_trader.types import ChoppinessMeta, ChoppinessRegime, ModuleName, ModuleResult

TRENDING_MAX = 30.0
MIXED_MAX = 60.0
ACTIVE_MIN = 70.0
INACTIVE_MAX = 30.0


def invert_chop(chop: float) -> float:
    """Map CHOP to a 0..100 tradability score: 100 up to 30, 50 at 60, 0 at 100."""
    if chop <= TRENDING_MAX:
        return 100.0
    if chop <= MIXED_MAX:
        return 100.0 - (chop - TRENDING_MAX) / 30.0 * 50.0
    return clamp(50.0 - (chop - MIXED_MAX) / 40.0 * 50.0)


def _result(symbol: str, strength: float, meta: ChoppinessMeta) -> ModuleResult:
    return ModuleResult(
        module=ModuleName.CHOPPINESS,
        symbol=symbol,
        signal="NEUTRAL",
        strength=strength,
        long_score=strength,
        short_score=strength,
        meta=meta,
    )


def analyze(symbol: str, candles: pd.DataFrame | None, *, period: int) -> ModuleResult | None:
    if candles is None or len(candles) < period + 1:
        return None

    recent = candles.iloc[-(period + 1) :]
    # the first row only seeds the previous close of the first TR
    tr_sum = float(true_range(recent).iloc[1:].sum())
    window = recent.iloc[1:]
    high_low = float(window["high"].astype(float).max() - window["low"].astype(float).min())

    if tr_sum <= 0 or high_low <= 0:
        return _result(
            symbol,
            0.0,
            ChoppinessMeta(chop=None, regime="INVALID", activity="NONE", candles_used=period, period=period),
        )

    chop = 100.0 * math.log10(tr_sum / high_low) / math.log10(period)
    strength = round(invert_chop(chop), 2)

    regime: ChoppinessRegime
    if chop <= TRENDING_MAX:
        regime = "TRENDING"
    elif chop <= MIXED_MAX:
        regime = "MIXED"
    else:
        regime = "CHOPPY"

    if strength >= ACTIVE_MIN:
        activity = "ACTIVE"
    elif strength <= INACTIVE_MAX:
        activity = "NONE"
    else:
        activity = "NEUTRAL"

    return _result(
        symbol,
        strength,
        ChoppinessMeta(
            chop=chop,
            regime=regime,
            activity=activity,  # type: ignore[arg-type]
            candles_used=period,
            period=period,
        ),
    )
