from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta

import numpy as np
import pandas as pd
import pytest

from signal_trader.data.snapshot import MarketSnapshot
from signal_trader.features.indicators import scale_gap_to_strength
from signal_trader.modules import choppiness, funding, higher_ma, liquidations, liquidity, long_short, open_interest
from signal_trader.modules import run_modules, trend, trend_regime, volatility
from signal_trader.strategy.aggregator import contributes
from signal_trader.strategy.coin_config import CoinConfig, HigherMAConfig, parse_coin_config
from signal_trader.types import (
    LiquidationBucket,
    LiquiditySample,
    LongShortPoint,
    ModuleName,
    OpenInterestPoint,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _build_ohlcv(closes: list[float], spread: float = 1.0, step_minutes: int = 15) -> pd.DataFrame:
    times = [NOW - timedelta(minutes=step_minutes * (len(closes) - i)) for i in range(len(closes))]
    return pd.DataFrame(
        {
            "open_time": times,
            "open": closes,
            "high": [c + spread for c in closes],
            "low": [c - spread for c in closes],
            "close": closes,
            "volume": [1000.0 for _ in closes],
            "close_time": [t + timedelta(minutes=step_minutes) for t in times],
        }
    )


def _assert_bounded(result: object) -> None:
    assert result is not None
    assert 0.0 <= result.strength <= 100.0  # type: ignore[attr-defined]
    assert result.signal in ("LONG", "SHORT", "NEUTRAL")  # type: ignore[attr-defined]


def test_trend_long_on_rising_market() -> None:
    result = trend.analyze("BTCUSDT", _build_ohlcv([100.0 + i for i in range(40)]))
    _assert_bounded(result)
    assert result is not None
    assert result.module == ModuleName.TREND
    assert result.signal == "LONG"
    assert result.long_score > result.short_score
    assert result.meta.gap_pct > 0


def test_trend_short_on_falling_market() -> None:
    result = trend.analyze("BTCUSDT", _build_ohlcv([200.0 - i for i in range(40)]))
    assert result is not None
    assert result.signal == "SHORT"
    assert result.short_score > result.long_score


def test_trend_needs_slow_ema_history() -> None:
    assert trend.analyze("BTCUSDT", _build_ohlcv([100.0] * 21)) is None
    assert trend.analyze("BTCUSDT", None) is None


@pytest.mark.parametrize(
    ("spread", "regime"),
    [(0.1, "DEAD"), (1.0, "NORMAL"), (2.0, "EXTREME")],
)
def test_volatility_regimes(spread: float, regime: str) -> None:
    result = volatility.analyze(
        "BTCUSDT",
        _build_ohlcv([100.0] * 30, spread=spread),
        window=14,
        dead_below=0.25,
        extreme_above=2.5,
    )
    _assert_bounded(result)
    assert result is not None
    assert result.signal == "NEUTRAL"
    assert result.long_score == result.short_score == 0.0
    assert result.meta.regime == regime
    assert result.meta.atr_abs == pytest.approx(2 * spread)


def test_trend_regime_direction_from_di() -> None:
    up = trend_regime.analyze(
        "BTCUSDT",
        _build_ohlcv([100.0 + 2 * i for i in range(60)]),
        period=14,
        adx_max_for_scale=50.0,
        adx_signal_min=10.0,
    )
    _assert_bounded(up)
    assert up is not None
    assert up.signal == "LONG"
    assert up.strength == 100.0
    assert trend_regime.analyze("BTCUSDT", _build_ohlcv([100.0] * 20), period=14,
                                adx_max_for_scale=50.0, adx_signal_min=10.0) is None


def test_liquidity_imbalance_and_spread() -> None:
    samples = [LiquiditySample(time=NOW, imbalance=0.8, spread_abs=0.5) for _ in range(5)]
    result = liquidity.analyze("BTCUSDT", samples, 100.0, window=20)
    _assert_bounded(result)
    assert result is not None
    assert result.signal == "LONG"
    assert result.strength == pytest.approx(60.0)
    assert result.long_score == pytest.approx(80.0)
    assert result.meta.spread_pct == pytest.approx(0.5)


def test_liquidity_without_book_is_unavailable() -> None:
    assert liquidity.analyze("BTCUSDT", [], 100.0, window=20) is None
    samples = [LiquiditySample(time=NOW, imbalance=0.5, spread_abs=0.1)]
    assert liquidity.analyze("BTCUSDT", samples, None, window=20) is None


def _buckets(values: list[tuple[float, float]]) -> list[LiquidationBucket]:
    return [
        LiquidationBucket(time=NOW - timedelta(minutes=i), buys_value=b, sells_value=s)
        for i, (b, s) in enumerate(values)
    ]


def test_liquidations_buy_dominance_is_long() -> None:
    result = liquidations.analyze("BTCUSDT", _buckets([(70.0, 30.0)] * 30), now=NOW)
    _assert_bounded(result)
    assert result.signal == "LONG"
    assert result.strength == pytest.approx(40.0)
    assert result.meta.regime == "NORMAL"


def test_liquidations_cascade_is_neutral() -> None:
    values = [(9000.0, 1000.0)] + [(60.0, 40.0)] * 23
    result = liquidations.analyze("BTCUSDT", _buckets(values), now=NOW)
    assert result.signal == "NEUTRAL"
    assert result.strength == 0.0
    assert result.meta.regime == "CASCADE"
    assert result.meta.latest_total > result.meta.cascade_threshold


def test_liquidations_empty_and_stale() -> None:
    empty = liquidations.analyze("BTCUSDT", [], now=NOW)
    assert empty.meta.regime == "EMPTY"
    assert empty.long_score == empty.short_score == 0.0

    stale = [LiquidationBucket(time=NOW - timedelta(minutes=31), buys_value=90.0, sells_value=10.0)]
    result = liquidations.analyze("BTCUSDT", stale, now=NOW)
    assert result.meta.regime == "STALE"
    assert result.signal == "NEUTRAL"


def _oi_points(oi: list[float], closes: list[float]) -> list[OpenInterestPoint]:
    return [
        OpenInterestPoint(time=NOW - timedelta(minutes=5 * (len(oi) - i)), open_interest=o,
                          open_interest_value=o * c, close=c)
        for i, (o, c) in enumerate(zip(oi, closes))
    ]


def test_open_interest_confirmation_and_divergence() -> None:
    confirm = open_interest.analyze("BTCUSDT", _oi_points([100.0, 105.0, 110.0], [100.0, 101.0, 102.0]), window=3)
    _assert_bounded(confirm)
    assert confirm is not None
    assert confirm.signal == "LONG"
    assert confirm.long_score == 92.0
    assert not confirm.meta.divergence

    diverge = open_interest.analyze("BTCUSDT", _oi_points([100.0, 105.0, 110.0], [100.0, 99.0, 98.0]), window=3)
    assert diverge is not None
    assert diverge.signal == "SHORT"
    assert diverge.meta.divergence
    assert diverge.long_score + diverge.short_score == 100.0


def test_open_interest_needs_full_window() -> None:
    assert open_interest.analyze("BTCUSDT", _oi_points([1.0, 2.0], [1.0, 2.0]), window=3) is None


def test_long_short_dead_zone() -> None:
    crowded = [LongShortPoint(time=NOW, long_pct=60.0, short_pct=40.0)] * 10
    result = long_short.analyze("BTCUSDT", crowded, window=10)
    _assert_bounded(result)
    assert result is not None
    assert result.signal == "LONG"
    assert result.strength == pytest.approx(20.0)

    balanced = [LongShortPoint(time=NOW, long_pct=52.0, short_pct=48.0)] * 10
    flat = long_short.analyze("BTCUSDT", balanced, window=10)
    assert flat is not None
    assert flat.signal == "NEUTRAL"


def test_funding_crowding() -> None:
    positive = funding.analyze("BTCUSDT", [0.01] * 8, window=8)
    assert positive is not None
    assert positive.signal == "SHORT"
    assert positive.short_score == 60.0
    assert positive.long_score == 40.0

    negative = funding.analyze("BTCUSDT", [-0.01] * 8, window=8)
    assert negative is not None
    assert negative.signal == "LONG"

    quiet = funding.analyze("BTCUSDT", [0.00001] * 8, window=8)
    assert quiet is not None
    assert quiet.signal == "NEUTRAL"
    assert quiet.long_score == quiet.short_score == 50.0


def test_higher_ma_sma_cross() -> None:
    cfg = HigherMAConfig(timeframe="1d", ma_short=7, ma_long=14, ma_type="SMA")
    result = higher_ma.analyze("BTCUSDT", _build_ohlcv([100.0 + i for i in range(30)], step_minutes=1440), cfg)
    _assert_bounded(result)
    assert result is not None
    assert result.signal == "LONG"
    assert not result.meta.price_disagrees
    assert result.strength == pytest.approx(scale_gap_to_strength(result.meta.delta_pct, 12.0, 0.2))


def test_higher_ma_penalises_price_disagreement() -> None:
    cfg = HigherMAConfig(timeframe="1d", ma_short=7, ma_long=14, ma_type="SMA")
    closes = [100.0 + i for i in range(29)] + [119.0]
    result = higher_ma.analyze("BTCUSDT", _build_ohlcv(closes, step_minutes=1440), cfg)
    assert result is not None
    assert result.signal == "LONG"
    assert result.meta.price_disagrees
    assert result.strength == pytest.approx(min(100.0, abs(result.meta.delta_pct) * 12.0) * 0.8)


def test_higher_ma_ema_seed_changes_warmup() -> None:
    closes = [100.0 + (i % 5) * 3 for i in range(16)]
    df = _build_ohlcv(closes, step_minutes=1440)
    sma_seeded = higher_ma.analyze("BTCUSDT", df, HigherMAConfig(ma_type="EMA", ema_seed="sma"))
    first_seeded = higher_ma.analyze("BTCUSDT", df, HigherMAConfig(ma_type="EMA", ema_seed="first"))
    assert sma_seeded is not None and first_seeded is not None
    assert sma_seeded.meta.ma_long != pytest.approx(first_seeded.meta.ma_long)


def _regime_config(threshold: float, **trend_regime: float) -> CoinConfig:
    return parse_coin_config(
        {
            "symbol": "BTCUSDT",
            "analysisConfig": {
                "weights": {"trendRegime": 1.0},
                "moduleThresholds": {"trendRegime": threshold},
                "trendRegime": {"period": 14, "adxMaxForScale": 135, **trend_regime},
            },
            "strategy": {"entry": {"minModules": 1}},
        }
    )


def test_trend_regime_threshold_does_not_gate_di_separation() -> None:
    # +DI 50, -DI 0, ADX 100 -> strength 100/135
    snapshot = MarketSnapshot(
        symbol="BTCUSDT", fetched_at=NOW, candles=_build_ohlcv([100.0 + i for i in range(60)])
    )
    cfg = _regime_config(60)
    assert cfg.analysis_config.trend_regime.adx_signal_min == 7.0

    result = run_modules(snapshot, cfg, now=NOW)[ModuleName.TREND_REGIME]
    assert result is not None
    assert result.signal == "LONG"
    assert result.strength == pytest.approx(100 / 135 * 100)
    assert contributes(result, cfg)

    strict = _regime_config(60, adxSignalMin=55)
    gated = run_modules(snapshot, strict, now=NOW)[ModuleName.TREND_REGIME]
    assert gated is not None
    assert gated.signal == "NEUTRAL"
    assert not contributes(gated, strict)


def test_liquidations_filter_bounds() -> None:
    thin = liquidations.analyze("BTCUSDT", _buckets([(70.0, 30.0)] * 30), min_total=500.0, now=NOW)
    assert thin.meta.regime == "THIN"
    assert thin.signal == "NEUTRAL"
    assert thin.strength == 0.0

    steady = _buckets([(600.0, 400.0)] * 30)
    assert liquidations.analyze("BTCUSDT", steady, now=NOW).meta.regime == "NORMAL"
    capped = liquidations.analyze("BTCUSDT", steady, max_total=800.0, now=NOW)
    assert capped.meta.regime == "CASCADE"
    assert capped.strength == 0.0


def test_liquidations_sentiment_window() -> None:
    values = [(90.0, 10.0)] * 5 + [(10.0, 90.0)] * 25
    assert liquidations.analyze("BTCUSDT", _buckets(values), now=NOW).signal == "SHORT"
    short_window = liquidations.analyze("BTCUSDT", _buckets(values), sent_window=5, now=NOW)
    assert short_window.signal == "LONG"
    assert short_window.meta.buckets_used == 5


def test_choppiness_trending_and_flat() -> None:
    # TR 2 per bar over 10 bars against an 11 point range
    trending = choppiness.analyze("BTCUSDT", _build_ohlcv([100.0 + i for i in range(30)], step_minutes=1), period=10)
    _assert_bounded(trending)
    assert trending is not None
    assert trending.signal == "NEUTRAL"
    assert trending.meta.chop == pytest.approx(100 * math.log10(20 / 11))
    assert trending.meta.regime == "TRENDING"
    assert trending.meta.activity == "ACTIVE"
    assert trending.strength == 100.0

    flat = choppiness.analyze("BTCUSDT", _build_ohlcv([100.0] * 30, step_minutes=1), period=10)
    assert flat is not None
    assert flat.meta.chop == pytest.approx(100.0)
    assert flat.meta.regime == "CHOPPY"
    assert flat.meta.activity == "NONE"
    assert flat.strength == 0.0


def test_choppiness_edges() -> None:
    assert choppiness.analyze("BTCUSDT", _build_ohlcv([100.0] * 10), period=10) is None
    frozen = choppiness.analyze("BTCUSDT", _build_ohlcv([100.0] * 11, spread=0.0), period=10)
    assert frozen is not None
    assert frozen.meta.regime == "INVALID"
    assert frozen.strength == 0.0
    assert choppiness.invert_chop(45.0) == pytest.approx(75.0)
    assert choppiness.invert_chop(60.0) == pytest.approx(50.0)
    assert choppiness.invert_chop(80.0) == pytest.approx(25.0)


def _every_module_config() -> CoinConfig:
    names = [name.value for name in ModuleName]
    return parse_coin_config(
        {
            "symbol": "BTCUSDT",
            "analysisConfig": {
                "weights": {name: 1.0 for name in names},
                "moduleThresholds": {name: 0 for name in names},
                "choppiness": {"period": 14},
            },
        }
    )


def _random_snapshot(seed: int) -> MarketSnapshot:
    rng = np.random.default_rng(seed)
    closes = list(100.0 * np.exp(np.cumsum(rng.normal(0.0, 0.02, 220))))
    candles = _build_ohlcv(closes, spread=float(rng.uniform(0.05, 4.0)))
    candles["volume"] = rng.uniform(10.0, 5000.0, len(closes))
    oi = rng.uniform(1_000.0, 50_000.0, 30)
    return MarketSnapshot(
        symbol="BTCUSDT",
        fetched_at=NOW,
        candles=candles,
        higher_candles=_build_ohlcv(closes[-40:], spread=2.0, step_minutes=1440),
        chop_candles=_build_ohlcv(closes[-30:], spread=float(rng.uniform(0.01, 3.0)), step_minutes=1),
        last_price=closes[-1],
        liquidity=[
            LiquiditySample(time=NOW, imbalance=float(i), spread_abs=float(s))
            for i, s in zip(rng.uniform(0.0, 1.0, 20), rng.uniform(0.0, 2.0, 20))
        ],
        liquidations=_buckets([(float(b), float(s)) for b, s in rng.uniform(0.0, 10_000.0, (40, 2))]),
        open_interest=_oi_points(list(oi), closes[-30:]),
        long_short=[
            LongShortPoint(time=NOW, long_pct=float(p), short_pct=float(100.0 - p))
            for p in rng.uniform(20.0, 80.0, 12)
        ],
        funding_rates=list(rng.normal(0.0, 0.001, 10)),
    )


@pytest.mark.parametrize("seed", range(12))
def test_every_module_scores_random_markets_in_range(seed: int) -> None:
    results = run_modules(_random_snapshot(seed), _every_module_config(), now=NOW)
    assert set(results) == set(ModuleName)
    for name, result in results.items():
        # a scorer that raised would have been recorded as None
        assert result is not None, name
        _assert_bounded(result)
        assert 0.0 <= result.long_score <= 100.0
        assert 0.0 <= result.short_score <= 100.0
