"""Funding rate crowding scorer."""

from __future__ import annotations

from collections.abc import Sequence

from signal_trader.types import FundingMeta, ModuleName, ModuleResult, Signal

FUNDING_EPS = 0.00002


def analyze(symbol: str, rates: Sequence[float] | None, *, window: int) -> ModuleResult | None:
    """Positive funding means crowded longs, which favours SHORT."""
    if not rates or len(rates) < window:
        return None

    recent = list(rates)[-window:]
    avg_funding = sum(recent) / len(recent)

    long_score = 50.0
    short_score = 50.0
    if abs(avg_funding) > FUNDING_EPS:
        if avg_funding > 0:
            short_score = min(100.0, 50 + avg_funding * 1000)
            long_score = 100 - short_score
        else:
            long_score = min(100.0, 50 + abs(avg_funding) * 1000)
            short_score = 100 - long_score

    long_score = float(round(long_score))
    short_score = float(round(short_score))
    signal: Signal = "NEUTRAL"
    if long_score != short_score:
        signal = "LONG" if long_score > short_score else "SHORT"

    return ModuleResult(
        module=ModuleName.FUNDING,
        symbol=symbol,
        signal=signal,
        strength=max(long_score, short_score),
        long_score=long_score,
        short_score=short_score,
        meta=FundingMeta(avg_funding=avg_funding, points=len(recent)),
    )
