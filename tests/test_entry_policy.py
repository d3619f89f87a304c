from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from signal_trader.risk.entry import (
    CooldownTracker,
    EntryPolicy,
    auto_take_profits,
    build_stop,
    compute_qty,
    majority_vote,
)
from signal_trader.strategy.coin_config import CoinConfig, parse_coin_config
from signal_trader.types import (
    Analysis,
    Decision,
    LiquidityMeta,
    ModuleName,
    ModuleResult,
    VolatilityMeta,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _config(*, exits: dict[str, Any] | None = None, capital: dict[str, Any] | None = None,
            **entry: Any) -> CoinConfig:
    return parse_coin_config(
        {
            "symbol": "SOLUSDT",
            "analysisConfig": {"weights": {"trend": 1.0}, "moduleThresholds": {"trend": 50}},
            "strategy": {
                "entry": entry,
                "capital": capital or {"account": 1000, "riskPerTradePct": 1, "leverage": 3},
                "exits": exits or {"sl": {"type": "hard", "hardPct": 5}},
                "sizing": {"maxAdds": 1, "addOnAdverseMovePct": 1, "addMultiplier": 1},
            },
        }
    )


def _analysis(decision: Decision = "LONG", *, spread_pct: float = 0.01, atr: float | None = None,
              minutes_ago: int = 0) -> Analysis:
    modules: dict[ModuleName, ModuleResult | None] = {
        ModuleName.LIQUIDITY: ModuleResult(
            module=ModuleName.LIQUIDITY,
            symbol="SOLUSDT",
            signal="NEUTRAL",
            strength=0.0,
            long_score=50.0,
            short_score=50.0,
            meta=LiquidityMeta(imbalance=0.0, spread_abs=0.01, spread_pct=spread_pct, bias=0.0, samples=20),
        )
    }
    if atr is not None:
        modules[ModuleName.VOLATILITY] = ModuleResult(
            module=ModuleName.VOLATILITY,
            symbol="SOLUSDT",
            signal="NEUTRAL",
            strength=0.0,
            long_score=0.0,
            short_score=0.0,
            meta=VolatilityMeta(regime="NORMAL", atr_abs=atr, atr_pct=atr, window=14),
        )
    bias = decision if decision in ("LONG", "SHORT") else "LONG"
    return Analysis(
        time=(NOW - timedelta(minutes=minutes_ago)).isoformat(),
        symbol="SOLUSDT",
        timeframe="15m",
        modules=modules,
        scores={"LONG": 70.0, "SHORT": 10.0},
        coverage=1.0,
        contributing=(ModuleName.TREND,),
        bias=bias,  # type: ignore[arg-type]
        decision=decision,
    )


@pytest.mark.parametrize(
    ("biases", "expected"),
    [
        ([], "NEUTRAL"),
        (["LONG"], "LONG"),
        (["LONG", "SHORT", "LONG"], "LONG"),
        (["LONG", "SHORT"], "NEUTRAL"),
        (["SHORT", "LONG", "LONG", "SHORT"], "NEUTRAL"),
        (["NEUTRAL", "SHORT", "SHORT"], "SHORT"),
    ],
)
def test_majority_vote(biases: list[str], expected: str) -> None:
    assert majority_vote(biases) == expected  # type: ignore[arg-type]


def test_entry_gates_run_in_order() -> None:
    cfg = _config(lookback=2, maxSpreadPct=0.05, cooldownMin=10, capital={"maxConcurrentPositions": 1})
    policy = EntryPolicy()
    current = _analysis()
    history = [current, _analysis(minutes_ago=15)]

    def check(analysis: Analysis = current, recent: list[Analysis] = history, **kwargs: Any) -> list[str]:
        params = {"has_open_position": False, "open_count": 0, "now": NOW, **kwargs}
        return policy.check(analysis, cfg, recent=recent, **params).reasons

    assert check(has_open_position=True) == ["position_already_open"]

    policy.cooldowns.mark("SOLUSDT", NOW - timedelta(minutes=5))
    assert check() == ["cooldown_active: 5.0m"]
    policy.cooldowns.mark("SOLUSDT", NOW - timedelta(minutes=11))

    assert check(analysis=_analysis("NO_TRADE")) == ["decision_not_tradeable: NO_TRADE"]
    assert check(recent=[current]) == ["insufficient_history: 1<2"]
    assert check(recent=[current, _analysis("SHORT", minutes_ago=15)]) == ["majority_mismatch: NEUTRAL"]

    wide = _analysis(spread_pct=0.1)
    assert check(analysis=wide, recent=[wide, current])[0].startswith("spread_too_wide")
    assert check(open_count=1) == ["max_concurrent_positions: 1>=1"]

    allowed = policy.check(current, cfg, has_open_position=False, recent=history, open_count=0, now=NOW)
    assert allowed.allowed
    assert allowed.side == "LONG"


def test_cooldown_tracker_remaining() -> None:
    tracker = CooldownTracker()
    assert tracker.remaining_min("SOLUSDT", 10, NOW) == 0.0
    tracker.mark("SOLUSDT", NOW - timedelta(minutes=4))
    assert tracker.remaining_min("SOLUSDT", 10, NOW) == pytest.approx(6.0)
    assert tracker.remaining_min("SOLUSDT", 0, NOW) == 0.0


def test_build_stop_models() -> None:
    hard = build_stop("LONG", 100.0, _config(), atr=None)
    assert hard is not None
    assert hard[0] == pytest.approx(95.0)
    assert hard[1] == "hard"

    roi = _config(exits={"pctBasis": "roi", "sl": {"type": "hard", "hardPct": 10}}, capital={"leverage": 5})
    assert build_stop("SHORT", 100.0, roi, atr=None)[0] == pytest.approx(102.0)  # type: ignore[index]

    atr_cfg = _config(exits={"sl": {"type": "atr", "atrMult": 2}})
    assert build_stop("SHORT", 100.0, atr_cfg, atr=1.5) == (pytest.approx(103.0), "atr")
    # no ATR and no hard fallback configured
    assert build_stop("LONG", 100.0, atr_cfg, atr=None) is None


def test_compute_qty_modes_and_caps() -> None:
    assert compute_qty(100.0, 95.0, _config()) == pytest.approx(2.0)
    margin = _config(capital={"account": 1000, "riskPerTradePct": 1, "leverage": 3, "sizingMode": "margin"})
    assert compute_qty(100.0, 95.0, margin) == pytest.approx(0.3)
    capped = _config(capital={"account": 1000, "riskPerTradePct": 1, "leverage": 3, "maxPositionUsd": 100})
    assert compute_qty(100.0, 95.0, capped) == pytest.approx(1.0)
    assert compute_qty(100.0, 100.0, _config()) == 0.0


def test_auto_take_profits() -> None:
    by_atr = auto_take_profits("LONG", 100.0, atr=2.0, stop_price=95.0, regime="NORMAL")
    assert [tp.price for tp in by_atr] == [pytest.approx(102.4), pytest.approx(104.0)]
    assert [tp.size_pct for tp in by_atr] == [50.0, 50.0]

    by_risk = auto_take_profits("SHORT", 100.0, atr=None, stop_price=105.0, regime=None)
    assert len(by_risk) == 1
    assert by_risk[0].price == pytest.approx(90.0)
    assert by_risk[0].size_pct == 100.0


def test_build_position_uses_tp_grid() -> None:
    cfg = _config(exits={"sl": {"type": "hard", "hardPct": 5}, "tp": {"tpGridPct": [2, 4], "tpGridSizePct": [40, 60]}})
    analysis = _analysis(atr=1.0)
    position = EntryPolicy().build_position(analysis, cfg, "LONG", entry_price=100.0, now=NOW)
    assert position is not None
    assert position.status == "OPEN"
    assert position.size == position.initial_size == pytest.approx(2.0)
    assert position.stop_price == pytest.approx(95.0)
    assert [tp.price for tp in position.take_profits] == [pytest.approx(102.0), pytest.approx(104.0)]
    assert position.initial_tps[1].size_pct == 60.0
    assert position.meta.atr == 1.0
    assert position.analysis is not None and position.analysis.time == analysis.time


def test_maybe_add_after_adverse_move() -> None:
    cfg = _config()
    policy = EntryPolicy()
    position = policy.build_position(_analysis(), cfg, "LONG", entry_price=100.0, now=NOW)
    assert position is not None

    assert policy.maybe_add(position, cfg, 99.5, NOW) is None
    record = policy.maybe_add(position, cfg, 98.9, NOW)
    assert record is not None
    assert record.qty == pytest.approx(2.0)
    assert position.size == pytest.approx(4.0)
    assert position.initial_size == pytest.approx(4.0)
    assert position.entry_price == pytest.approx(99.45)
    assert position.adjustments[-1].type == "ADD"
    # max adds reached
    assert policy.maybe_add(position, cfg, 90.0, NOW) is None


def test_maybe_add_stays_inside_notional_cap() -> None:
    capital = {"account": 1000, "riskPerTradePct": 1, "leverage": 3, "maxPositionUsd": 300}
    cfg = _config(capital=capital)
    policy = EntryPolicy()
    position = policy.build_position(_analysis(), cfg, "LONG", entry_price=100.0, now=NOW)
    assert position is not None

    record = policy.maybe_add(position, cfg, 98.9, NOW)
    assert record is not None
    assert record.qty == pytest.approx(300 / 98.9 - 2.0)
    assert position.size * 98.9 == pytest.approx(300.0)


def test_maybe_add_skipped_without_room() -> None:
    capital = {"account": 1000, "riskPerTradePct": 1, "leverage": 3, "maxPositionUsd": 200}
    cfg = _config(capital=capital)
    policy = EntryPolicy()
    position = policy.build_position(_analysis("SHORT"), cfg, "SHORT", entry_price=100.0, now=NOW)
    assert position is not None
    assert position.size == pytest.approx(2.0)

    # 1% against a short, but 2 units at 101.1 already exceed the 200 USD cap
    assert policy.maybe_add(position, cfg, 101.1, NOW) is None
    assert position.size == pytest.approx(2.0)
    assert position.adds == []
    assert position.entry_price == 100.0
