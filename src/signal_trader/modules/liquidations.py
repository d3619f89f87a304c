"""Liquidation flow scorer with cascade detection."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

import numpy as np

from signal_trader.features.indicators import clamp
from signal_trader.types import (
    LiquidationBucket,
    LiquidationsMeta,
    ModuleName,
    ModuleResult,
    Signal,
)

DEFAULT_SENT_WINDOW = 24
MAX_AGE = timedelta(minutes=30)
DOMINANCE_MIN_PCT = 5.0


def _neutral_zero(symbol: str, regime: str, buckets_used: int = 0) -> ModuleResult:
    return ModuleResult(
        module=ModuleName.LIQUIDATIONS,
        symbol=symbol,
        signal="NEUTRAL",
        strength=0.0,
        long_score=0.0,
        short_score=0.0,
        meta=LiquidationsMeta(
            regime=regime,  # type: ignore[arg-type]
            buy_pct=0.0,
            sell_pct=0.0,
            current_total=0.0,
            cascade_threshold=0.0,
            buckets_used=buckets_used,
        ),
    )


def cascade_threshold(totals_history: Sequence[float], totals_recent: Sequence[float]) -> float:
    """max(p90 of the history, mean + 2 sigma of the recent window)."""
    history = np.asarray(totals_history, dtype=float)
    recent = np.asarray(totals_recent, dtype=float)
    p90 = float(np.percentile(history, 90))
    rolling = float(recent.mean() + 2 * recent.std())
    return max(p90, rolling)


def analyze(
    symbol: str,
    buckets: Sequence[LiquidationBucket] | None,
    *,
    history_limit: int = 100,
    sent_window: int = DEFAULT_SENT_WINDOW,
    min_total: float = 0.0,
    max_total: float | None = None,
    now: datetime | None = None,
) -> ModuleResult:
    """Compare buy-side against sell-side liquidations over the newest buckets.

    Empty or stale input yields a neutral-zero result instead of ``None``;
    a missing liquidation feed is an expected state for most symbols.
    A window averaging under ``min_total`` USD is too thin to read (THIN); a
    newest bucket above ``max_total`` counts as a cascade regardless of history.
    """
    if not buckets:
        return _neutral_zero(symbol, "EMPTY")

    ordered = sorted(buckets, key=lambda b: b.time, reverse=True)[:history_limit]
    current = ordered[:sent_window]

    now = now or datetime.now(timezone.utc)
    if now - current[0].time > MAX_AGE:
        return _neutral_zero(symbol, "STALE")

    avg_buy = sum(b.buys_value for b in current) / len(current)
    avg_sell = sum(b.sells_value for b in current) / len(current)
    current_total = avg_buy + avg_sell
    buy_pct = avg_buy / current_total * 100 if current_total > 0 else 50.0
    sell_pct = avg_sell / current_total * 100 if current_total > 0 else 50.0
    if current_total < min_total:
        return _neutral_zero(symbol, "THIN", len(current))

    latest_total = current[0].buys_value + current[0].sells_value
    threshold = cascade_threshold(
        [b.buys_value + b.sells_value for b in ordered],
        [b.buys_value + b.sells_value for b in current],
    )

    # Cascade is judged on the newest bucket, not the window average.
    if latest_total > threshold or (max_total is not None and latest_total > max_total):
        return ModuleResult(
            module=ModuleName.LIQUIDATIONS,
            symbol=symbol,
            signal="NEUTRAL",
            strength=0.0,
            long_score=0.0,
            short_score=0.0,
            meta=LiquidationsMeta(
                regime="CASCADE",
                buy_pct=buy_pct,
                sell_pct=sell_pct,
                current_total=current_total,
                cascade_threshold=threshold,
                buckets_used=len(current),
                latest_total=latest_total,
            ),
        )

    gap = buy_pct - sell_pct
    signal: Signal = "NEUTRAL"
    # Buy-side liquidations are forced short covers.
    if gap > DOMINANCE_MIN_PCT:
        signal = "LONG"
    elif gap < -DOMINANCE_MIN_PCT:
        signal = "SHORT"

    return ModuleResult(
        module=ModuleName.LIQUIDATIONS,
        symbol=symbol,
        signal=signal,
        strength=clamp(abs(gap)),
        long_score=buy_pct,
        short_score=sell_pct,
        meta=LiquidationsMeta(
            regime="NORMAL",
            buy_pct=buy_pct,
            sell_pct=sell_pct,
            current_total=current_total,
            cascade_threshold=threshold,
            buckets_used=len(current),
            latest_total=latest_total,
        ),
    )
