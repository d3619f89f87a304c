"""Order-book imbalance scorer."""

from __future__ import annotations

from collections.abc import Sequence

from signal_trader.features.indicators import clamp
from signal_trader.types import LiquidityMeta, LiquiditySample, ModuleName, ModuleResult, Signal

BIAS_DEAD_ZONE = 0.05


def analyze(
    symbol: str,
    samples: Sequence[LiquiditySample] | None,
    last_price: float | None,
    *,
    window: int,
) -> ModuleResult | None:
    """Average imbalance and spread over the newest ``window`` samples.

    Without samples or a price the spread percentage is undefined, so the
    module is unavailable rather than neutral.
    """
    if not samples or last_price is None or last_price <= 0:
        return None

    recent = list(samples)[-window:]
    imbalance = sum(s.imbalance for s in recent) / len(recent)
    spread_abs = sum(s.spread_abs for s in recent) / len(recent)
    spread_pct = spread_abs / last_price * 100

    clamped = min(1.0, max(0.0, imbalance))
    bias = (clamped - 0.5) * 2
    strength = clamp(abs(bias) * 100)

    signal: Signal = "NEUTRAL"
    if bias > BIAS_DEAD_ZONE:
        signal = "LONG"
    elif bias < -BIAS_DEAD_ZONE:
        signal = "SHORT"

    return ModuleResult(
        module=ModuleName.LIQUIDITY,
        symbol=symbol,
        signal=signal,
        strength=strength,
        long_score=clamped * 100,
        short_score=(1 - clamped) * 100,
        meta=LiquidityMeta(
            imbalance=imbalance,
            spread_abs=spread_abs,
            spread_pct=spread_pct,
            bias=bias,
            samples=len(recent),
        ),
    )
