"""Exit rules and the position state machine.

Per cycle, an OPEN position runs through these steps in order:

1. take-profit fills (terminal for the cycle)
2. stop loss, including ATR recompute when configured
3. signal flip
4. required-module failure
5. DCA add (mutation only)
6. trailing ratchet (mutation only)
7. time exit
8. opposite-bias streak

The first closing step wins. ``final_pnl`` is written exactly once, in
``close_position``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from signal_trader.errors import PositionStateError
from signal_trader.risk.entry import EntryPolicy
from signal_trader.strategy.coin_config import CoinConfig
from signal_trader.types import (
    AddRecord,
    Adjustment,
    Analysis,
    ClosedBy,
    Position,
    TpFill,
    opposite,
)
from signal_trader.utils.logging import get_logger, log_position_event

_QTY_EPS = 1e-12


@dataclass(slots=True)
class ExitOutcome:
    """What one evaluation did to a position."""

    closed: bool = False
    closed_by: ClosedBy | None = None
    reason: str | None = None
    tp_fills: list[TpFill] = field(default_factory=list)
    adjustments: list[Adjustment] = field(default_factory=list)
    add: AddRecord | None = None

    @property
    def mutated(self) -> bool:
        return self.closed or bool(self.tp_fills) or bool(self.adjustments)


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


def close_position(
    position: Position,
    price: float,
    closed_by: ClosedBy,
    reason: str,
    now: datetime,
) -> Adjustment:
    """OPEN -> CLOSED; realizes the remainder and fixes ``final_pnl``."""
    if not position.is_open:
        raise PositionStateError(f"position_not_open: {position.id} is {position.status}")
    remainder_pnl = position.pnl_at(price)
    adjustment = Adjustment(type="CLOSE", ts=now.isoformat(), price=price, reason=reason, size=position.size)
    position.adjustments.append(adjustment)
    position.final_pnl = position.realized_pnl + remainder_pnl
    position.exit_price = price
    position.closed_at = now.isoformat()
    position.closed_by = closed_by
    position.status = "CLOSED"
    return adjustment


def cancel_position(position: Position, now: datetime, reason: str = "CANCELLED") -> Adjustment:
    """OPEN -> CANCELLED; only allowed before any take-profit fill or add."""
    if not position.is_open:
        raise PositionStateError(f"position_not_open: {position.id} is {position.status}")
    if any(tp.fills for tp in position.take_profits) or position.adds:
        raise PositionStateError(f"position_has_fills: {position.id}")
    adjustment = Adjustment(type="CANCEL", ts=now.isoformat(), price=position.entry_price, reason=reason)
    position.adjustments.append(adjustment)
    position.closed_at = now.isoformat()
    position.status = "CANCELLED"
    return adjustment


class ExitPolicy:
    """Evaluates exit rules for one OPEN position per cycle."""

    def __init__(
        self,
        entry_policy: EntryPolicy | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._logger = logger or get_logger("signal_trader.risk.exits")
        self._entry_policy = entry_policy or EntryPolicy(logger=self._logger)

    def evaluate(
        self,
        position: Position,
        cfg: CoinConfig,
        *,
        price: float,
        analysis: Analysis | None,
        recent: Sequence[Analysis] = (),
        now: datetime,
    ) -> ExitOutcome:
        """Run the exit steps; ``recent`` is ordered newest first."""
        if not position.is_open:
            raise PositionStateError(f"position_not_open: {position.id} is {position.status}")
        outcome = ExitOutcome()

        if self._fill_take_profits(position, price, now, outcome):
            return outcome
        if self._check_stop(position, cfg, price, analysis, now, outcome):
            return outcome
        if self._check_flip(position, cfg, price, analysis, now, outcome):
            return outcome
        if self._check_module_fail(position, cfg, price, analysis, now, outcome):
            return outcome

        record = self._entry_policy.maybe_add(position, cfg, price, now)
        if record is not None:
            outcome.add = record
            outcome.adjustments.append(position.adjustments[-1])
            log_position_event(
                self._logger, symbol=position.symbol, event="add", side=position.side, price=price,
                qty=record.qty, entry_price=position.entry_price,
            )

        self._ratchet_trailing(position, cfg, price, now, outcome)

        if self._check_time(position, cfg, price, now, outcome):
            return outcome
        self._check_opposite_streak(position, cfg, price, recent, now, outcome)
        return outcome

    # ---- 1. take profits ----

    def _fill_take_profits(self, position: Position, price: float, now: datetime, outcome: ExitOutcome) -> bool:
        if not position.take_profits:
            return False
        ts = now.isoformat()
        for tp in position.take_profits:
            if tp.filled:
                continue
            crossed = price >= tp.price if position.side == "LONG" else price <= tp.price
            if not crossed:
                continue
            allocation = position.initial_size * tp.size_pct / 100
            qty = min(allocation - tp.cum, position.size)
            if qty <= _QTY_EPS:
                tp.filled = True
                continue
            pnl = position.pnl_at(tp.price, qty)
            fill = TpFill(qty=qty, price=tp.price, time=ts, pnl=pnl)
            tp.fills.append(fill)
            tp.cum += qty
            tp.filled = tp.cum >= allocation - _QTY_EPS
            position.size -= qty
            position.realized_pnl += pnl
            adjustment = Adjustment(type="TP_FILL", ts=ts, price=tp.price, reason="TP", size=qty)
            position.adjustments.append(adjustment)
            outcome.tp_fills.append(fill)
            outcome.adjustments.append(adjustment)
            log_position_event(
                self._logger, symbol=position.symbol, event="tp_fill", side=position.side,
                price=tp.price, qty=qty, pnl=round(pnl, 6),
            )

        if not outcome.tp_fills:
            return False
        if all(tp.filled for tp in position.take_profits):
            self._close(position, price, "TP", "TP_GRID_COMPLETE", now, outcome)
        return True

    # ---- 2. stop loss ----

    def _check_stop(
        self,
        position: Position,
        cfg: CoinConfig,
        price: float,
        analysis: Analysis | None,
        now: datetime,
        outcome: ExitOutcome,
    ) -> bool:
        sl = cfg.strategy.exits.sl
        volatility = analysis.volatility if analysis is not None else None
        if (
            sl.type == "atr"
            and sl.atr_recompute == "each_cycle"
            and sl.atr_mult is not None
            and volatility is not None
            and volatility.atr_abs > 0
        ):
            candidate = position.entry_price - position.direction * sl.atr_mult * volatility.atr_abs
            self._tighten_stop(position, candidate, "ATR_RECOMPUTE", "SL_UPDATE", now, outcome)

        crossed = price <= position.stop_price if position.side == "LONG" else price >= position.stop_price
        if not crossed:
            return False
        closed_by: ClosedBy = "SL"
        reason = "STOP_LOSS"
        if position.trailing.active:
            reason = "TRAILING_STOP"
            if position.realized_pnl + position.pnl_at(price) > 0:
                closed_by = "TP"
        self._close(position, price, closed_by, reason, now, outcome)
        return True

    # ---- 3. flip ----

    def _check_flip(
        self,
        position: Position,
        cfg: CoinConfig,
        price: float,
        analysis: Analysis | None,
        now: datetime,
        outcome: ExitOutcome,
    ) -> bool:
        flip = cfg.strategy.exits.sl.signal_rules.flip_if
        if flip is None or analysis is None:
            return False
        held = analysis.scores[position.side]
        opp = analysis.scores[opposite(position.side)]
        if not (opp > flip.min_opp_score and opp - held > flip.score_gap):
            return False
        adjustment = Adjustment(type="SL_UPDATE", ts=now.isoformat(), price=price, reason="FLIP")
        position.adjustments.append(adjustment)
        outcome.adjustments.append(adjustment)
        self._close(position, price, "SL", "FLIP", now, outcome)
        return True

    # ---- 4. module failure ----

    def _check_module_fail(
        self,
        position: Position,
        cfg: CoinConfig,
        price: float,
        analysis: Analysis | None,
        now: datetime,
        outcome: ExitOutcome,
    ) -> bool:
        module_fail = cfg.strategy.exits.sl.signal_rules.module_fail
        if module_fail is None or not module_fail.required or analysis is None:
            return False
        thresholds = cfg.analysis_config.module_thresholds
        failed = [
            name.value
            for name in module_fail.required
            if (result := analysis.modules.get(name)) is None or result.strength < thresholds[name]
        ]
        if not failed:
            return False
        self._close(position, price, "SL", f"MODULE_FAIL: {','.join(failed)}", now, outcome)
        return True

    # ---- 6. trailing ----

    def _ratchet_trailing(
        self, position: Position, cfg: CoinConfig, price: float, now: datetime, outcome: ExitOutcome
    ) -> None:
        if not cfg.strategy.exits.trailing.use:
            return
        trailing = position.trailing
        if not trailing.active:
            start = cfg.pct_to_price_move(trailing.start_after_pct)
            if position.move_pct_at(price) < start:
                return
            trailing.active = True
            trailing.anchor = price
            log_position_event(
                self._logger, symbol=position.symbol, event="trailing_activated", side=position.side, price=price
            )
        elif trailing.anchor is None:
            trailing.anchor = price
        elif position.side == "LONG":
            trailing.anchor = max(trailing.anchor, price)
        else:
            trailing.anchor = min(trailing.anchor, price)

        step = cfg.pct_to_price_move(trailing.trail_step_pct)
        candidate = trailing.anchor * (1 - position.direction * step / 100)
        # a trailing stop never sits on the losing side of entry
        if position.side == "LONG":
            candidate = max(candidate, position.entry_price)
        else:
            candidate = min(candidate, position.entry_price)
        self._tighten_stop(position, candidate, "TRAIL", "TRAIL", now, outcome)

    # ---- 7. time ----

    def _check_time(
        self, position: Position, cfg: CoinConfig, price: float, now: datetime, outcome: ExitOutcome
    ) -> bool:
        time_cfg = cfg.strategy.exits.time
        if time_cfg.max_hold_min is None or time_cfg.no_pnl_fallback == "none":
            return False
        held_min = (now - _parse_ts(position.opened_at)).total_seconds() / 60
        if held_min < time_cfg.max_hold_min:
            return False
        if time_cfg.no_pnl_fallback == "breakeven":
            tolerance = cfg.pct_to_price_move(time_cfg.breakeven_tolerance_pct)
            if position.move_pct_at(price) < -tolerance:
                return False
            self._close(position, price, "SYSTEM", "TIME_BREAKEVEN", now, outcome)
            return True
        self._close(position, price, "SYSTEM", "TIME_FORCE_CLOSE", now, outcome)
        return True

    # ---- 8. opposite streak ----

    def _check_opposite_streak(
        self,
        position: Position,
        cfg: CoinConfig,
        price: float,
        recent: Sequence[Analysis],
        now: datetime,
        outcome: ExitOutcome,
    ) -> bool:
        count = cfg.strategy.exits.opposite_count_exit
        if count <= 0 or len(recent) < count:
            return False
        against = opposite(position.side)
        if not all(a.bias == against for a in recent[:count]):
            return False
        self._close(position, price, "SYSTEM", f"OPPOSITE_BIAS_x{count}", now, outcome)
        return True

    # ---- helpers ----

    def _tighten_stop(
        self,
        position: Position,
        candidate: float,
        reason: str,
        adjustment_type: str,
        now: datetime,
        outcome: ExitOutcome,
    ) -> None:
        tighter = candidate > position.stop_price if position.side == "LONG" else candidate < position.stop_price
        if not tighter:
            return
        position.stop_price = candidate
        adjustment = Adjustment(
            type=adjustment_type,  # type: ignore[arg-type]
            ts=now.isoformat(),
            price=candidate,
            reason=reason,
        )
        position.adjustments.append(adjustment)
        outcome.adjustments.append(adjustment)

    def _close(
        self,
        position: Position,
        price: float,
        closed_by: ClosedBy,
        reason: str,
        now: datetime,
        outcome: ExitOutcome,
    ) -> None:
        adjustment = close_position(position, price, closed_by, reason, now)
        outcome.closed = True
        outcome.closed_by = closed_by
        outcome.reason = reason
        outcome.adjustments.append(adjustment)
        log_position_event(
            self._logger,
            symbol=position.symbol,
            event="closed",
            side=position.side,
            price=price,
            closed_by=closed_by,
            reason=reason,
            final_pnl=round(position.final_pnl or 0.0, 6),
        )
