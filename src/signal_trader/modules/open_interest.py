"""Open interest vs price change scorer."""

from __future__ import annotations

from collections.abc import Sequence

from signal_trader.features.indicators import logistic
from signal_trader.types import ModuleName, ModuleResult, OpenInterestMeta, OpenInterestPoint, Signal

LOGISTIC_K = 0.35
MIN_MAGNITUDE = 0.05
NEUTRAL_GAP = 5


def _pct_change(end: float, start: float) -> float:
    if start == 0:
        return 0.0
    return (end - start) / start * 100


def analyze(
    symbol: str,
    points: Sequence[OpenInterestPoint] | None,
    *,
    window: int,
) -> ModuleResult | None:
    """OI and price moving together favour LONG; OI against price favours SHORT."""
    if not points or len(points) < window:
        return None

    recent = list(points)[-window:]
    first, last = recent[0], recent[-1]
    oi_change = _pct_change(last.open_interest, first.open_interest)
    price_change = _pct_change(last.close, first.close)

    same_direction = (oi_change >= 0 and price_change >= 0) or (oi_change < 0 and price_change < 0)
    sign = 1 if same_direction else -1
    magnitude = 0.6 * abs(oi_change) + 0.4 * abs(price_change)
    divergence = oi_change > 0 and price_change <= 0

    meta = OpenInterestMeta(
        oi_change_pct=oi_change,
        price_change_pct=price_change,
        magnitude=magnitude,
        divergence=divergence,
        points=len(recent),
    )
    if magnitude < MIN_MAGNITUDE:
        return ModuleResult(
            module=ModuleName.OPEN_INTEREST,
            symbol=symbol,
            signal="NEUTRAL",
            strength=0.0,
            long_score=50.0,
            short_score=50.0,
            meta=meta,
        )

    long_score = float(round(logistic(LOGISTIC_K * sign * magnitude) * 100))
    short_score = 100.0 - long_score

    signal: Signal = "LONG" if long_score >= short_score else "SHORT"
    if abs(long_score - short_score) < NEUTRAL_GAP:
        signal = "NEUTRAL"

    return ModuleResult(
        module=ModuleName.OPEN_INTEREST,
        symbol=symbol,
        signal=signal,
        strength=max(long_score, short_score),
        long_score=long_score,
        short_score=short_score,
        meta=meta,
    )
