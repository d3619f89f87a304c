"""Weighted aggregation of module results into one Analysis."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog

from signal_trader.strategy.coin_config import CoinConfig
from signal_trader.types import (
    Analysis,
    Bias,
    ChoppinessMeta,
    Decision,
    FundingMeta,
    ModuleName,
    ModuleResult,
    ModuleResults,
    Side,
    VolatilityMeta,
)
from signal_trader.utils.logging import get_logger, log_decision


def contributes(result: ModuleResult | None, cfg: CoinConfig) -> bool:
    """A module counts when present, directional, weighted and at/above its threshold."""
    if result is None or result.signal == "NEUTRAL":
        return False
    weights = cfg.analysis_config.weights
    if result.module not in weights:
        return False
    threshold = cfg.analysis_config.module_thresholds[result.module]
    return result.strength >= threshold


def is_ambiguous(gap: float, tolerance: float, boundary: str) -> bool:
    """Side-bias tie test; ``inclusive`` treats a gap equal to the tolerance as ambiguous."""
    if boundary == "strict":
        return gap < tolerance
    return gap <= tolerance


def aggregate(
    symbol: str,
    modules: ModuleResults,
    cfg: CoinConfig,
    *,
    time: str | None = None,
    logger: structlog.stdlib.BoundLogger | None = None,
) -> Analysis:
    """Combine module results into scores, bias and decision."""
    logger = logger or get_logger("signal_trader.strategy.aggregator")
    entry = cfg.strategy.entry
    weights = cfg.analysis_config.weights

    scores: dict[Side, float] = {"LONG": 0.0, "SHORT": 0.0}
    contributing: list[ModuleName] = []
    for name in weights:
        result = modules.get(name)
        if result is None or not contributes(result, cfg):
            continue
        scores[result.signal] += weights[name] * result.strength  # type: ignore[index]
        contributing.append(name)

    coverage = len(contributing) / len(weights) if weights else 0.0

    reasons: list[str] = []
    if len(contributing) < entry.min_modules:
        reasons.append(f"min_modules_not_met: {len(contributing)}<{entry.min_modules}")
    for name in entry.required_modules:
        if name not in contributing:
            reasons.append(f"required_module_missing: {name.value}")

    volatility = modules.get(ModuleName.VOLATILITY)
    avoid = entry.avoid_when
    if (
        avoid.volatility is not None
        and volatility is not None
        and isinstance(volatility.meta, VolatilityMeta)
        and volatility.meta.regime == avoid.volatility
    ):
        reasons.append(f"avoid_volatility: {volatility.meta.regime}")

    funding = modules.get(ModuleName.FUNDING)
    if (
        avoid.funding_extreme is not None
        and funding is not None
        and isinstance(funding.meta, FundingMeta)
        and abs(funding.meta.avg_funding) > avoid.funding_extreme.abs_over
    ):
        reasons.append(f"funding_extreme: {funding.meta.avg_funding:.6f}")

    chop = modules.get(ModuleName.CHOPPINESS)
    if (
        avoid.choppiness is not None
        and chop is not None
        and isinstance(chop.meta, ChoppinessMeta)
        and chop.meta.regime == avoid.choppiness
    ):
        reasons.append(f"avoid_choppiness: {chop.meta.regime}")

    bias: Bias
    decision: Decision
    if reasons:
        bias, decision = "NEUTRAL", "NEUTRAL"
    else:
        bias = "LONG" if scores["LONG"] >= scores["SHORT"] else "SHORT"
        gap = abs(scores["LONG"] - scores["SHORT"])
        if is_ambiguous(gap, entry.side_bias_tolerance, entry.side_bias_boundary):
            reasons.append(f"side_bias_ambiguous: gap={gap:.2f}")
            bias, decision = "NEUTRAL", "NEUTRAL"
        elif scores[bias] >= entry.min_score[bias]:
            decision = bias
        else:
            reasons.append(f"min_score_not_met: {bias} {scores[bias]:.2f}<{entry.min_score[bias]}")
            decision = "NO_TRADE"

    analysis = Analysis(
        time=time or datetime.now(timezone.utc).isoformat(),
        symbol=symbol,
        timeframe=cfg.analysis_config.candle_timeframe,
        modules=dict(modules),
        scores=scores,
        coverage=coverage,
        contributing=tuple(contributing),
        bias=bias,
        decision=decision,
        reasons=tuple(reasons),
    )
    log_decision(
        logger,
        symbol=symbol,
        bias=bias,
        decision=decision,
        score_long=scores["LONG"],
        score_short=scores["SHORT"],
        coverage=round(coverage, 3),
        reasons=list(reasons),
    )
    return analysis
