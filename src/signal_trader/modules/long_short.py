"""Long/short account ratio scorer."""

from __future__ import annotations

from collections.abc import Sequence

from signal_trader.features.indicators import clamp
from signal_trader.types import LongShortMeta, LongShortPoint, ModuleName, ModuleResult, Signal

MIN_DIFF = 5.0


def analyze(
    symbol: str,
    points: Sequence[LongShortPoint] | None,
    *,
    window: int,
) -> ModuleResult | None:
    if not points or len(points) < window:
        return None

    recent = list(points)[-window:]
    avg_long = sum(p.long_pct for p in recent) / len(recent)
    avg_short = sum(p.short_pct for p in recent) / len(recent)
    total = avg_long + avg_short
    long_pct = avg_long / total * 100 if total > 0 else 50.0
    short_pct = avg_short / total * 100 if total > 0 else 50.0

    diff = abs(long_pct - short_pct)
    signal: Signal = "NEUTRAL"
    if diff > MIN_DIFF:
        signal = "LONG" if long_pct > short_pct else "SHORT"

    return ModuleResult(
        module=ModuleName.LONG_SHORT,
        symbol=symbol,
        signal=signal,
        strength=clamp(diff),
        long_score=long_pct,
        short_score=short_pct,
        meta=LongShortMeta(long_pct=long_pct, short_pct=short_pct, diff=diff, points=len(recent)),
    )
