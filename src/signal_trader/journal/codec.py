"""Dict codecs for persisted analyses and positions."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from signal_trader.types import (
    AddRecord,
    Adjustment,
    Analysis,
    AnalysisRef,
    ChoppinessMeta,
    FundingMeta,
    HigherMAMeta,
    LiquidationsMeta,
    LiquidityMeta,
    LongShortMeta,
    ModuleName,
    ModuleResult,
    OpenInterestMeta,
    Position,
    PositionMeta,
    RsiVolTrendMeta,
    TakeProfit,
    TpFill,
    TrailingState,
    TrendMeta,
    TrendRegimeMeta,
    VolatilityMeta,
)

_META_TYPES: dict[ModuleName, type] = {
    ModuleName.TREND: TrendMeta,
    ModuleName.VOLATILITY: VolatilityMeta,
    ModuleName.TREND_REGIME: TrendRegimeMeta,
    ModuleName.LIQUIDITY: LiquidityMeta,
    ModuleName.LIQUIDATIONS: LiquidationsMeta,
    ModuleName.OPEN_INTEREST: OpenInterestMeta,
    ModuleName.LONG_SHORT: LongShortMeta,
    ModuleName.HIGHER_MA: HigherMAMeta,
    ModuleName.RSI_VOL_TREND: RsiVolTrendMeta,
    ModuleName.FUNDING: FundingMeta,
    ModuleName.CHOPPINESS: ChoppinessMeta,
}


def module_result_to_dict(result: ModuleResult) -> dict[str, Any]:
    return {
        "module": result.module.value,
        "symbol": result.symbol,
        "signal": result.signal,
        "strength": result.strength,
        "long_score": result.long_score,
        "short_score": result.short_score,
        "meta": asdict(result.meta),
    }


def module_result_from_dict(payload: dict[str, Any]) -> ModuleResult:
    module = ModuleName(payload["module"])
    return ModuleResult(
        module=module,
        symbol=payload["symbol"],
        signal=payload["signal"],
        strength=float(payload["strength"]),
        long_score=float(payload["long_score"]),
        short_score=float(payload["short_score"]),
        meta=_META_TYPES[module](**payload["meta"]),
    )


def analysis_to_dict(analysis: Analysis) -> dict[str, Any]:
    return {
        "time": analysis.time,
        "symbol": analysis.symbol,
        "timeframe": analysis.timeframe,
        "modules": {
            name.value: None if result is None else module_result_to_dict(result)
            for name, result in analysis.modules.items()
        },
        "scores": dict(analysis.scores),
        "coverage": analysis.coverage,
        "contributing": [name.value for name in analysis.contributing],
        "bias": analysis.bias,
        "decision": analysis.decision,
        "reasons": list(analysis.reasons),
    }


def analysis_from_dict(payload: dict[str, Any]) -> Analysis:
    return Analysis(
        time=payload["time"],
        symbol=payload["symbol"],
        timeframe=payload["timeframe"],
        modules={
            ModuleName(name): None if raw is None else module_result_from_dict(raw)
            for name, raw in payload["modules"].items()
        },
        scores={"LONG": float(payload["scores"]["LONG"]), "SHORT": float(payload["scores"]["SHORT"])},
        coverage=float(payload["coverage"]),
        contributing=tuple(ModuleName(name) for name in payload["contributing"]),
        bias=payload["bias"],
        decision=payload["decision"],
        reasons=tuple(payload.get("reasons", [])),
    )


def position_to_dict(position: Position) -> dict[str, Any]:
    return asdict(position)


def _take_profit_from_dict(raw: dict[str, Any]) -> TakeProfit:
    return TakeProfit(
        price=float(raw["price"]),
        size_pct=float(raw["size_pct"]),
        filled=bool(raw.get("filled", False)),
        fills=[TpFill(**fill) for fill in raw.get("fills", [])],
        cum=float(raw.get("cum", 0.0)),
        order_id=raw.get("order_id"),
    )


def position_from_dict(raw: dict[str, Any]) -> Position:
    analysis_raw = raw.get("analysis")
    return Position(
        id=raw["id"],
        symbol=raw["symbol"],
        side=raw["side"],
        entry_price=float(raw["entry_price"]),
        size=float(raw["size"]),
        initial_size=float(raw["initial_size"]),
        opened_at=raw["opened_at"],
        stop_price=float(raw["stop_price"]),
        initial_stop_price=float(raw["initial_stop_price"]),
        meta=PositionMeta(**raw["meta"]),
        analysis=AnalysisRef(**analysis_raw) if analysis_raw else None,
        take_profits=[_take_profit_from_dict(tp) for tp in raw.get("take_profits", [])],
        initial_tps=[_take_profit_from_dict(tp) for tp in raw.get("initial_tps", [])],
        trailing=TrailingState(**raw.get("trailing", {})),
        adjustments=[Adjustment(**adj) for adj in raw.get("adjustments", [])],
        adds=[AddRecord(**add) for add in raw.get("adds", [])],
        status=raw.get("status", "OPEN"),
        realized_pnl=float(raw.get("realized_pnl", 0.0)),
        version=int(raw.get("version", 0)),
        closed_at=raw.get("closed_at"),
        closed_by=raw.get("closed_by"),
        final_pnl=raw.get("final_pnl"),
        exit_price=raw.get("exit_price"),
    )


def closed_notification_payload(position: Position) -> dict[str, Any]:
    """Payload sent to the notifier when a position closes."""
    return {
        "symbol": position.symbol,
        "side": position.side,
        "entryPrice": position.entry_price,
        "size": position.initial_size,
        "leverage": position.meta.leverage,
        "stopPrice": position.stop_price,
        "takeProfits": [
            {"price": tp.price, "sizePct": tp.size_pct, "filled": tp.filled, "cum": tp.cum}
            for tp in position.take_profits
        ],
        "closedBy": position.closed_by,
        "openedAt": position.opened_at,
        "closedAt": position.closed_at,
        "finalPnl": position.final_pnl,
    }
