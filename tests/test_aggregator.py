from __future__ import annotations

from typing import Any

import pytest

from signal_trader.strategy.aggregator import aggregate, contributes, is_ambiguous
from signal_trader.strategy.coin_config import CoinConfig, parse_coin_config
from signal_trader.types import (
    ChoppinessMeta,
    FundingMeta,
    LiquidityMeta,
    ModuleName,
    ModuleResult,
    Signal,
    TrendMeta,
    VolatilityMeta,
)

TIME = "2024-05-01T12:00:00+00:00"


def _config(weights: dict[str, float] | None = None, **entry: Any) -> CoinConfig:
    weights = weights or {"trend": 0.6, "liquidity": 0.4}
    return parse_coin_config(
        {
            "symbol": "BTCUSDT",
            "analysisConfig": {
                "weights": weights,
                "moduleThresholds": {name: 0 for name in weights},
            },
            "strategy": {"entry": {"minModules": 2, "minScore": {"LONG": 55, "SHORT": 55}, **entry}},
        }
    )


def _trend(signal: Signal, strength: float) -> ModuleResult:
    long_score = strength if signal == "LONG" else 100 - strength
    return ModuleResult(
        module=ModuleName.TREND,
        symbol="BTCUSDT",
        signal=signal,
        strength=strength,
        long_score=long_score,
        short_score=100 - long_score,
        meta=TrendMeta(ema_fast=101.0, ema_slow=100.0, gap_pct=1.0, rsi=55.0, candles_used=200),
    )


def _liquidity(signal: Signal, strength: float) -> ModuleResult:
    return ModuleResult(
        module=ModuleName.LIQUIDITY,
        symbol="BTCUSDT",
        signal=signal,
        strength=strength,
        long_score=50.0,
        short_score=50.0,
        meta=LiquidityMeta(imbalance=0.3, spread_abs=0.1, spread_pct=0.01, bias=0.3, samples=20),
    )


def test_weighted_scores_pick_long() -> None:
    modules = {ModuleName.TREND: _trend("LONG", 80), ModuleName.LIQUIDITY: _liquidity("LONG", 60)}
    analysis = aggregate("BTCUSDT", modules, _config(), time=TIME)
    assert analysis.scores["LONG"] == pytest.approx(72.0)
    assert analysis.scores["SHORT"] == 0.0
    assert analysis.coverage == 1.0
    assert analysis.contributing == (ModuleName.TREND, ModuleName.LIQUIDITY)
    assert analysis.bias == "LONG"
    assert analysis.decision == "LONG"
    assert analysis.reasons == ()
    assert analysis.time == TIME


def test_below_min_score_is_no_trade() -> None:
    modules = {ModuleName.TREND: _trend("LONG", 70), ModuleName.LIQUIDITY: _liquidity("LONG", 20)}
    analysis = aggregate("BTCUSDT", modules, _config(), time=TIME)
    assert analysis.bias == "LONG"
    assert analysis.decision == "NO_TRADE"
    assert analysis.reasons[0].startswith("min_score_not_met")


def test_module_below_threshold_does_not_contribute() -> None:
    cfg = parse_coin_config(
        {
            "symbol": "BTCUSDT",
            "analysisConfig": {
                "weights": {"trend": 0.6, "liquidity": 0.4},
                "moduleThresholds": {"trend": 50, "liquidity": 70},
            },
            "strategy": {"entry": {"minModules": 1}},
        }
    )
    weak = _liquidity("SHORT", 60)
    assert not contributes(weak, cfg)
    assert not contributes(None, cfg)
    analysis = aggregate("BTCUSDT", {ModuleName.TREND: _trend("LONG", 100), ModuleName.LIQUIDITY: weak}, cfg)
    assert analysis.contributing == (ModuleName.TREND,)
    assert analysis.coverage == 0.5
    assert analysis.scores == {"LONG": pytest.approx(60.0), "SHORT": 0.0}
    assert analysis.decision == "LONG"


def test_gap_equal_to_tolerance_depends_on_boundary() -> None:
    weights = {"trend": 0.5, "liquidity": 0.5}
    modules = {ModuleName.TREND: _trend("LONG", 70), ModuleName.LIQUIDITY: _liquidity("SHORT", 60)}
    min_score = {"LONG": 30, "SHORT": 30}

    inclusive = aggregate("BTCUSDT", modules, _config(weights, minScore=min_score), time=TIME)
    assert inclusive.bias == "NEUTRAL"
    assert inclusive.decision == "NEUTRAL"
    assert inclusive.reasons[0].startswith("side_bias_ambiguous")

    strict = aggregate(
        "BTCUSDT", modules, _config(weights, minScore=min_score, sideBiasBoundary="strict"), time=TIME
    )
    assert strict.bias == "LONG"
    assert strict.decision == "LONG"

    assert is_ambiguous(5.0, 5.0, "inclusive")
    assert not is_ambiguous(5.0, 5.0, "strict")


def test_missing_required_module_forces_neutral() -> None:
    modules = {ModuleName.TREND: _trend("LONG", 90), ModuleName.LIQUIDITY: None}
    analysis = aggregate("BTCUSDT", modules, _config(minModules=1, requiredModules=["liquidity"]), time=TIME)
    assert analysis.decision == "NEUTRAL"
    assert "required_module_missing: liquidity" in analysis.reasons
    assert analysis.scores["LONG"] == pytest.approx(54.0)


def test_min_modules_not_met() -> None:
    modules = {ModuleName.TREND: _trend("LONG", 90), ModuleName.LIQUIDITY: _liquidity("NEUTRAL", 0)}
    analysis = aggregate("BTCUSDT", modules, _config(), time=TIME)
    assert analysis.decision == "NEUTRAL"
    assert analysis.reasons == ("min_modules_not_met: 1<2",)


def test_avoid_when_filters() -> None:
    volatility = ModuleResult(
        module=ModuleName.VOLATILITY,
        symbol="BTCUSDT",
        signal="NEUTRAL",
        strength=0.0,
        long_score=0.0,
        short_score=0.0,
        meta=VolatilityMeta(regime="EXTREME", atr_abs=5.0, atr_pct=3.0, window=14),
    )
    funding = ModuleResult(
        module=ModuleName.FUNDING,
        symbol="BTCUSDT",
        signal="SHORT",
        strength=40.0,
        long_score=30.0,
        short_score=70.0,
        meta=FundingMeta(avg_funding=0.002, points=8),
    )
    modules = {
        ModuleName.TREND: _trend("LONG", 80),
        ModuleName.LIQUIDITY: _liquidity("LONG", 60),
        ModuleName.VOLATILITY: volatility,
        ModuleName.FUNDING: funding,
    }
    cfg = _config(avoidWhen={"volatility": "EXTREME", "fundingExtreme": {"absOver": 0.001}})
    analysis = aggregate("BTCUSDT", modules, cfg, time=TIME)
    assert analysis.decision == "NEUTRAL"
    assert any(r.startswith("avoid_volatility") for r in analysis.reasons)
    assert any(r.startswith("funding_extreme") for r in analysis.reasons)
    # unweighted modules are kept for reference but never scored
    assert analysis.scores["LONG"] == pytest.approx(72.0)
    assert analysis.module(ModuleName.FUNDING) is funding


def test_avoid_choppy_market() -> None:
    chop = ModuleResult(
        module=ModuleName.CHOPPINESS,
        symbol="BTCUSDT",
        signal="NEUTRAL",
        strength=10.0,
        long_score=10.0,
        short_score=10.0,
        meta=ChoppinessMeta(chop=72.0, regime="CHOPPY", activity="NONE", candles_used=21, period=21),
    )
    modules = {
        ModuleName.TREND: _trend("LONG", 80),
        ModuleName.LIQUIDITY: _liquidity("LONG", 60),
        ModuleName.CHOPPINESS: chop,
    }
    blocked = aggregate("BTCUSDT", modules, _config(avoidWhen={"choppiness": "CHOPPY"}), time=TIME)
    assert blocked.decision == "NEUTRAL"
    assert "avoid_choppiness: CHOPPY" in blocked.reasons

    allowed = aggregate("BTCUSDT", modules, _config(avoidWhen={"choppiness": "MIXED"}), time=TIME)
    assert allowed.decision == "LONG"
