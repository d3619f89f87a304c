"""Entry gating, sizing and position construction."""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from signal_trader.strategy.coin_config import CoinConfig
from signal_trader.types import (
    AddRecord,
    Adjustment,
    Analysis,
    AnalysisRef,
    Bias,
    Position,
    PositionMeta,
    Side,
    TakeProfit,
    TrailingState,
    VolatilityRegime,
)
from signal_trader.utils.logging import get_logger, log_risk_event

# Auto take-profit ATR multipliers per volatility regime.
_AUTO_TP_MULTIPLIERS: dict[str, tuple[float, float]] = {
    "DEAD": (0.8, 1.5),
    "NORMAL": (1.2, 2.0),
    "EXTREME": (2.0, 3.0),
}
_AUTO_TP_FALLBACK_PCT = 2.0
_AUTO_TP_RR = 2.0
_MIN_ADD_QTY = 1e-12


@dataclass(slots=True)
class EntryCheck:
    """Result of entry gating for one analysis."""

    allowed: bool
    side: Side | None = None
    reasons: list[str] = field(default_factory=list)


class CooldownTracker:
    """Last close or failed entry per symbol; blocks re-entry for ``cooldownMin``."""

    def __init__(self) -> None:
        self._last: dict[str, datetime] = {}

    def mark(self, symbol: str, at: datetime) -> None:
        self._last[symbol] = at

    def last(self, symbol: str) -> datetime | None:
        return self._last.get(symbol)

    def remaining_min(self, symbol: str, cooldown_min: float, now: datetime) -> float:
        last = self._last.get(symbol)
        if last is None or cooldown_min <= 0:
            return 0.0
        elapsed_min = (now - last).total_seconds() / 60
        return max(0.0, cooldown_min - elapsed_min)


def majority_vote(biases: Sequence[Bias]) -> Bias:
    """Strict majority (> n // 2) over biases ordered oldest to newest.

    Equal counts resolve to the side seen most recently; without a strict
    majority the vote is NEUTRAL.
    """
    if not biases:
        return "NEUTRAL"
    counts: dict[Bias, int] = {}
    for bias in biases:
        counts[bias] = counts.get(bias, 0) + 1
    last_seen = {bias: idx for idx, bias in enumerate(biases)}
    best = max(counts, key=lambda b: (counts[b], last_seen[b]))
    return best if counts[best] > len(biases) // 2 else "NEUTRAL"


def build_stop(side: Side, entry_price: float, cfg: CoinConfig, atr: float | None) -> tuple[float, str] | None:
    """Initial stop price and the model that produced it."""
    sl = cfg.strategy.exits.sl
    direction = 1 if side == "LONG" else -1
    if sl.type == "atr" and sl.atr_mult is not None and atr is not None and atr > 0:
        return entry_price - direction * sl.atr_mult * atr, "atr"
    if sl.hard_pct is not None:
        move = cfg.pct_to_price_move(sl.hard_pct)
        return entry_price * (1 - direction * move / 100), "hard"
    return None


def compute_qty(entry_price: float, stop_price: float, cfg: CoinConfig) -> float:
    """Position quantity from the configured sizing mode, capped by notional limits."""
    capital = cfg.strategy.capital
    if entry_price <= 0:
        return 0.0
    budget = capital.account * capital.risk_per_trade_pct / 100
    if capital.sizing_mode == "margin":
        qty = budget * capital.leverage / entry_price
    else:
        per_unit_risk = abs(entry_price - stop_price)
        if per_unit_risk <= 0:
            return 0.0
        qty = budget / per_unit_risk

    return max(0.0, min(qty, max_notional(cfg) / entry_price))


def max_notional(cfg: CoinConfig) -> float:
    """Largest position value in USD: account times leverage, capped by ``maxPositionUsd``."""
    capital = cfg.strategy.capital
    limit = capital.account * capital.leverage
    if capital.max_position_usd is not None:
        limit = min(limit, capital.max_position_usd)
    return limit


def auto_take_profits(
    side: Side,
    entry_price: float,
    *,
    atr: float | None,
    stop_price: float | None,
    regime: VolatilityRegime | None,
) -> list[TakeProfit]:
    direction = 1 if side == "LONG" else -1
    if atr is not None and atr > 0:
        m1, m2 = _AUTO_TP_MULTIPLIERS.get(regime or "NORMAL", _AUTO_TP_MULTIPLIERS["NORMAL"])
        return [
            TakeProfit(price=entry_price + direction * atr * m1, size_pct=50.0),
            TakeProfit(price=entry_price + direction * atr * m2, size_pct=50.0),
        ]
    if stop_price is not None:
        risk = abs(entry_price - stop_price)
        return [TakeProfit(price=entry_price + direction * risk * _AUTO_TP_RR, size_pct=100.0)]
    return [TakeProfit(price=entry_price * (1 + direction * _AUTO_TP_FALLBACK_PCT / 100), size_pct=100.0)]


def build_take_profits(
    side: Side,
    entry_price: float,
    cfg: CoinConfig,
    *,
    atr: float | None,
    stop_price: float | None,
    regime: VolatilityRegime | None,
) -> list[TakeProfit]:
    tp = cfg.strategy.exits.tp
    direction = 1 if side == "LONG" else -1
    if tp.use and tp.tp_grid_pct:
        return [
            TakeProfit(
                price=entry_price * (1 + direction * cfg.pct_to_price_move(pct) / 100),
                size_pct=size_pct,
            )
            for pct, size_pct in zip(tp.tp_grid_pct, tp.tp_grid_size_pct)
        ]
    return auto_take_profits(side, entry_price, atr=atr, stop_price=stop_price, regime=regime)


class EntryPolicy:
    """Decides whether a fresh analysis opens a position, and builds it."""

    def __init__(
        self,
        cooldowns: CooldownTracker | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self.cooldowns = cooldowns or CooldownTracker()
        self._logger = logger or get_logger("signal_trader.risk.entry")

    def check(
        self,
        analysis: Analysis,
        cfg: CoinConfig,
        *,
        has_open_position: bool,
        recent: Sequence[Analysis],
        open_count: int,
        now: datetime,
    ) -> EntryCheck:
        """Run the entry gates in order; the first failing gate rejects.

        ``recent`` is ordered newest first and includes ``analysis``.
        """
        entry = cfg.strategy.entry
        symbol = analysis.symbol

        if has_open_position:
            return self._reject(symbol, "position_already_open")

        remaining = self.cooldowns.remaining_min(symbol, entry.cooldown_min, now)
        if remaining > 0:
            return self._reject(symbol, f"cooldown_active: {remaining:.1f}m")

        if analysis.decision not in ("LONG", "SHORT"):
            return self._reject(symbol, f"decision_not_tradeable: {analysis.decision}")
        side: Side = analysis.decision  # type: ignore[assignment]

        window = list(recent[: entry.lookback])
        if len(window) < entry.lookback:
            return self._reject(symbol, f"insufficient_history: {len(window)}<{entry.lookback}")
        vote = majority_vote([a.bias for a in reversed(window)])
        if vote != side:
            return self._reject(symbol, f"majority_mismatch: {vote}")

        spread_pct = analysis.spread_pct
        if entry.max_spread_pct is not None and spread_pct is not None and spread_pct > entry.max_spread_pct:
            return self._reject(symbol, f"spread_too_wide: {spread_pct:.4f}>{entry.max_spread_pct}")

        max_positions = cfg.strategy.capital.max_concurrent_positions
        if open_count >= max_positions:
            return self._reject(symbol, f"max_concurrent_positions: {open_count}>={max_positions}")

        return EntryCheck(allowed=True, side=side)

    def build_position(
        self,
        analysis: Analysis,
        cfg: CoinConfig,
        side: Side,
        *,
        entry_price: float,
        now: datetime,
    ) -> Position | None:
        """Construct a new OPEN position, or ``None`` when no valid stop or size exists."""
        volatility = analysis.volatility
        atr = volatility.atr_abs if volatility is not None else None
        regime = volatility.regime if volatility is not None else None

        stop = build_stop(side, entry_price, cfg, atr)
        if stop is None:
            log_risk_event(self._logger, event_type="stop_unavailable", action="skip_entry", symbol=analysis.symbol)
            return None
        stop_price, stop_model = stop

        qty = compute_qty(entry_price, stop_price, cfg)
        if qty <= 0:
            log_risk_event(self._logger, event_type="qty_zero", action="skip_entry", symbol=analysis.symbol)
            return None

        take_profits = build_take_profits(
            side, entry_price, cfg, atr=atr, stop_price=stop_price, regime=regime
        )
        trailing_cfg = cfg.strategy.exits.trailing
        opened_at = now.isoformat()
        return Position(
            id=uuid.uuid4().hex,
            symbol=analysis.symbol,
            side=side,
            entry_price=entry_price,
            size=qty,
            initial_size=qty,
            opened_at=opened_at,
            stop_price=stop_price,
            initial_stop_price=stop_price,
            meta=PositionMeta(
                leverage=cfg.strategy.capital.leverage,
                risk_pct=cfg.strategy.capital.risk_per_trade_pct,
                stop_model=stop_model,  # type: ignore[arg-type]
                atr=atr,
            ),
            analysis=AnalysisRef(time=analysis.time, bias=analysis.bias, scores=dict(analysis.scores)),
            take_profits=take_profits,
            initial_tps=[TakeProfit(price=tp.price, size_pct=tp.size_pct) for tp in take_profits],
            trailing=TrailingState(
                active=False,
                start_after_pct=trailing_cfg.start_after_pct,
                trail_step_pct=trailing_cfg.trail_step_pct,
            ),
        )

    def maybe_add(self, position: Position, cfg: CoinConfig, price: float, now: datetime) -> AddRecord | None:
        """DCA: add one slice after an adverse move past the last fill price."""
        sizing = cfg.strategy.sizing
        if not position.is_open or len(position.adds) >= sizing.max_adds:
            return None
        reference = position.adds[-1].price if position.adds else position.entry_price
        if reference <= 0:
            return None
        adverse_pct = (price - reference) / reference * 100 * position.direction
        if adverse_pct > -cfg.pct_to_price_move(sizing.add_on_adverse_move_pct):
            return None

        # the grown position stays inside the same notional cap as a fresh entry
        room = max_notional(cfg) / price - position.size
        add_qty = min(sizing.add_multiplier * position.size, room)
        if add_qty <= _MIN_ADD_QTY:
            log_risk_event(
                self._logger,
                event_type="add_skipped",
                action="notional_cap",
                symbol=position.symbol,
                size=position.size,
                price=price,
            )
            return None
        total = position.size + add_qty
        position.entry_price = (position.entry_price * position.size + price * add_qty) / total
        position.size = total
        position.initial_size += add_qty
        record = AddRecord(price=price, qty=add_qty, ts=now.isoformat())
        position.adds.append(record)
        position.adjustments.append(
            Adjustment(type="ADD", ts=record.ts, price=price, reason="DCA", size=add_qty)
        )
        return record

    def _reject(self, symbol: str, reason: str) -> EntryCheck:
        self._logger.debug("entry_rejected", symbol=symbol, reason=reason)
        return EntryCheck(allowed=False, reasons=[reason])
