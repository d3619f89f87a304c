from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pandas as pd

from signal_trader.modules import rsi_vol_trend
from signal_trader.modules.rsi_vol_trend import NEED_BARS


def _zigzag(rows: int, up: float, down: float, last_volume: float = 2000.0) -> pd.DataFrame:
    """Closes alternate ``+up`` and ``-down`` so the last bar is an ``up`` bar."""
    closes = [100.0]
    for k in range(1, rows):
        closes.append(closes[-1] + (up if k % 2 == 1 else -down))
    start = datetime(2024, 1, 1, tzinfo=UTC)
    times = [start + timedelta(minutes=15 * i) for i in range(rows)]
    volumes = [1000.0] * (rows - 1) + [last_volume]
    return pd.DataFrame(
        {
            "open_time": times,
            "open": closes,
            "high": [c + 0.5 for c in closes],
            "low": [c - 0.5 for c in closes],
            "close": closes,
            "volume": volumes,
            "close_time": [t + timedelta(minutes=15) for t in times],
        }
    )


def test_need_bars_constant() -> None:
    assert NEED_BARS == 155


def test_short_history_is_neutral_zero() -> None:
    candles = _zigzag(NEED_BARS - 1, up=2.0, down=1.0)
    result = rsi_vol_trend.analyze("ETHUSDT", candles)
    assert result.signal == "NEUTRAL"
    assert result.strength == 0.0
    assert result.long_score == result.short_score == 0.0
    assert result.meta.candles_used == NEED_BARS - 1
    assert result.meta.rsi is None


def test_overbought_rsi_vetoes_everything() -> None:
    candles = _zigzag(200, up=3.0, down=0.0)
    result = rsi_vol_trend.analyze("ETHUSDT", candles)
    assert result.meta.rsi is not None and result.meta.rsi > 70
    assert result.meta.vetoed
    # vetoed results still carry the inputs that were measured
    assert result.meta.ma_short is not None and result.meta.ma_short > result.meta.ma_long
    assert result.meta.volume == 2000.0
    assert result.meta.candles_used == 200
    assert result.signal == "NEUTRAL"
    assert result.long_score == result.short_score == 0.0


def test_all_long_checks_pass() -> None:
    result = rsi_vol_trend.analyze("ETHUSDT", _zigzag(200, up=2.0, down=1.0))
    assert result.meta.rsi is not None and 50 < result.meta.rsi < 70
    assert not result.meta.vetoed
    assert result.long_score == 100.0
    assert result.short_score == 33.0
    assert result.signal == "LONG"
    assert result.strength == 100.0


def test_falling_market_scores_short() -> None:
    result = rsi_vol_trend.analyze("ETHUSDT", _zigzag(200, up=-2.0, down=-1.0))
    assert result.meta.rsi is not None and 30 < result.meta.rsi < 50
    assert result.short_score == 100.0
    assert result.signal == "SHORT"


def test_quiet_volume_drops_one_check() -> None:
    result = rsi_vol_trend.analyze("ETHUSDT", _zigzag(200, up=2.0, down=1.0, last_volume=500.0))
    assert result.long_score == 66.0
    assert result.short_score == 0.0
    assert result.signal == "LONG"
