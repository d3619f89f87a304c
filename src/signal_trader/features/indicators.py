"""Indicator primitives shared by the analysis modules."""

from __future__ import annotations

import math
from typing import Literal

import numpy as np
import pandas as pd  # type: ignore[import-untyped]

EmaSeed = Literal["sma", "first"]


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    if math.isnan(value):
        return low
    return max(low, min(high, value))


def logistic(x: float) -> float:
    return 1.0 / (1.0 + math.exp(-x))


def scale_gap_to_strength(gap_pct: float, scale: float, dead_zone: float = 0.0) -> float:
    """Map a percentage gap linearly to a 0..100 strength; gaps inside ``dead_zone`` map to 0."""
    magnitude = abs(gap_pct)
    if magnitude <= dead_zone:
        return 0.0
    return clamp(magnitude * scale)


def sma(series: pd.Series, period: int) -> pd.Series:
    return series.astype(float).rolling(window=period, min_periods=period).mean()


def ema(series: pd.Series, period: int, seed: EmaSeed = "sma") -> pd.Series:
    """Exponential moving average with ``k = 2 / (period + 1)``.

    ``seed="first"`` starts the recursion from the first value, so every row is
    defined. ``seed="sma"`` starts from the simple average of the first
    ``period`` values; rows before that are NaN. The two differ during warm-up,
    so callers must pick the seed that matches their config.
    """
    values = series.astype(float)
    if seed == "first":
        return values.ewm(span=period, adjust=False).mean()
    if seed != "sma":
        raise ValueError(f"unsupported_ema_seed: {seed}")

    out = pd.Series(np.nan, index=values.index, dtype=float)
    if len(values) < period:
        return out
    seeded = pd.concat(
        [pd.Series([values.iloc[:period].mean()]), values.iloc[period:].reset_index(drop=True)],
        ignore_index=True,
    )
    out.iloc[period - 1 :] = seeded.ewm(span=period, adjust=False).mean().to_numpy()
    return out


def _wilder_smooth(values: pd.Series, period: int) -> pd.Series:
    """Wilder's running average seeded by the SMA of the first ``period`` values.

    ``values`` may start with NaN rows; smoothing begins at the first valid row.
    """
    out = pd.Series(np.nan, index=values.index, dtype=float)
    valid = values.dropna()
    if len(valid) < period:
        return out
    seeded = pd.concat(
        [pd.Series([valid.iloc[:period].mean()]), valid.iloc[period:].reset_index(drop=True)],
        ignore_index=True,
    )
    smoothed = seeded.ewm(alpha=1.0 / period, adjust=False).mean().to_numpy()
    out.loc[valid.index[period - 1 :]] = smoothed
    return out


def rsi_wilder(series: pd.Series, period: int = 14) -> pd.Series:
    """Wilder RSI series; the first defined value sits at row ``period``."""
    close = series.astype(float)
    delta = close.diff()
    gains = delta.clip(lower=0.0)
    losses = (-delta).clip(lower=0.0)
    avg_gain = _wilder_smooth(gains, period)
    avg_loss = _wilder_smooth(losses, period)

    rs = avg_gain / avg_loss.replace(0.0, np.nan)
    rsi = 100.0 - 100.0 / (1.0 + rs)
    # No losses in the window: 100, or 50 for a perfectly flat window.
    flat = (avg_loss == 0.0) & (avg_gain == 0.0)
    only_gains = (avg_loss == 0.0) & (avg_gain > 0.0)
    rsi = rsi.mask(only_gains, 100.0).mask(flat, 50.0)
    return rsi


def true_range(df: pd.DataFrame) -> pd.Series:
    high = df["high"].astype(float)
    low = df["low"].astype(float)
    close = df["close"].astype(float)
    prev_close = close.shift(1)
    tr_components = pd.concat(
        [
            (high - low).abs(),
            (high - prev_close).abs(),
            (low - prev_close).abs(),
        ],
        axis=1,
    )
    return tr_components.max(axis=1)


def atr(df: pd.DataFrame, period: int = 14) -> pd.Series:
    """Simple-average ATR over ``period`` true ranges (first bar excluded)."""
    tr = true_range(df)
    tr.iloc[0] = np.nan
    return tr.rolling(window=period, min_periods=period).mean()


def adx(df: pd.DataFrame, period: int = 14) -> pd.DataFrame:
    """ADX, +DI and -DI with Wilder smoothing.

    The ADX column is first defined at row ``2 * period - 1``, so callers need
    at least ``2 * period`` candles for a value.
    """
    high = df["high"].astype(float)
    low = df["low"].astype(float)

    up_move = high.diff()
    down_move = -low.diff()
    plus_dm = up_move.where((up_move > down_move) & (up_move > 0), 0.0)
    minus_dm = down_move.where((down_move > up_move) & (down_move > 0), 0.0)
    plus_dm.iloc[0] = np.nan
    minus_dm.iloc[0] = np.nan

    tr = true_range(df)
    tr.iloc[0] = np.nan

    smoothed_tr = _wilder_smooth(tr, period)
    plus_di = 100.0 * _wilder_smooth(plus_dm, period) / smoothed_tr.replace(0.0, np.nan)
    minus_di = 100.0 * _wilder_smooth(minus_dm, period) / smoothed_tr.replace(0.0, np.nan)

    di_sum = (plus_di + minus_di).replace(0.0, np.nan)
    dx = 100.0 * (plus_di - minus_di).abs() / di_sum
    adx_series = _wilder_smooth(dx, period)

    return pd.DataFrame({"adx": adx_series, "plus_di": plus_di, "minus_di": minus_di})


def is_time_ascending(df: pd.DataFrame) -> bool:
    open_time = df.get("open_time")
    if open_time is None:
        return False
    return bool(pd.Series(open_time).is_monotonic_increasing)
