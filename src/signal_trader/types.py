"""Shared domain types for the signal scoring and position engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal, Union

Side = Literal["LONG", "SHORT"]
Signal = Literal["LONG", "SHORT", "NEUTRAL"]
Bias = Literal["LONG", "SHORT", "NEUTRAL"]
Decision = Literal["LONG", "SHORT", "NEUTRAL", "NO_TRADE"]
PositionStatus = Literal["OPEN", "CLOSED", "CANCELLED"]
ClosedBy = Literal["TP", "SL", "Manually", "SYSTEM", "UNKNOWN"]
AdjustmentType = Literal["SL_UPDATE", "TP_FILL", "TRAIL", "ADD", "CLOSE", "CANCEL"]
VolatilityRegime = Literal["DEAD", "NORMAL", "EXTREME"]
ChoppinessRegime = Literal["TRENDING", "MIXED", "CHOPPY", "INVALID"]


class ModuleName(str, Enum):
    """Names of the analysis modules; values are the keys used in configs and analyses."""

    TREND = "trend"
    VOLATILITY = "volatility"
    TREND_REGIME = "trend_regime"
    LIQUIDITY = "liquidity"
    LIQUIDATIONS = "liquidations"
    OPEN_INTEREST = "open_interest"
    LONG_SHORT = "long_short"
    HIGHER_MA = "higher_ma"
    RSI_VOL_TREND = "rsi_vol_trend"
    FUNDING = "funding"
    CHOPPINESS = "choppiness"


def opposite(side: Side) -> Side:
    return "SHORT" if side == "LONG" else "LONG"


# ---------------------------------------------------------------------------
# Market inputs
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class LiquiditySample:
    """One order-book snapshot reduced to imbalance and absolute spread."""

    time: datetime
    imbalance: float
    spread_abs: float


@dataclass(slots=True, frozen=True)
class LiquidationBucket:
    time: datetime
    buys_value: float
    sells_value: float


@dataclass(slots=True, frozen=True)
class OpenInterestPoint:
    time: datetime
    open_interest: float
    open_interest_value: float
    close: float


@dataclass(slots=True, frozen=True)
class LongShortPoint:
    time: datetime
    long_pct: float
    short_pct: float


# ---------------------------------------------------------------------------
# Module results (tagged on ``module``; ``meta`` type follows the tag)
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TrendMeta:
    ema_fast: float
    ema_slow: float
    gap_pct: float
    rsi: float
    candles_used: int


@dataclass(slots=True, frozen=True)
class VolatilityMeta:
    regime: VolatilityRegime
    atr_abs: float
    atr_pct: float
    window: int


@dataclass(slots=True, frozen=True)
class TrendRegimeMeta:
    adx: float
    plus_di: float
    minus_di: float
    period: int


@dataclass(slots=True, frozen=True)
class LiquidityMeta:
    imbalance: float
    spread_abs: float
    spread_pct: float
    bias: float
    samples: int


@dataclass(slots=True, frozen=True)
class LiquidationsMeta:
    regime: Literal["NORMAL", "CASCADE", "THIN", "STALE", "EMPTY"]
    buy_pct: float
    sell_pct: float
    current_total: float
    cascade_threshold: float
    buckets_used: int
    latest_total: float = 0.0


@dataclass(slots=True, frozen=True)
class OpenInterestMeta:
    oi_change_pct: float
    price_change_pct: float
    magnitude: float
    divergence: bool
    points: int


@dataclass(slots=True, frozen=True)
class LongShortMeta:
    long_pct: float
    short_pct: float
    diff: float
    points: int


@dataclass(slots=True, frozen=True)
class HigherMAMeta:
    timeframe: str
    ma_type: Literal["SMA", "EMA"]
    ma_short: float
    ma_long: float
    delta_pct: float
    price: float
    price_disagrees: bool


@dataclass(slots=True, frozen=True)
class RsiVolTrendMeta:
    candles_used: int
    rsi: float | None = None
    ma_short: float | None = None
    ma_long: float | None = None
    volume: float | None = None
    avg_volume: float | None = None
    vetoed: bool = False


@dataclass(slots=True, frozen=True)
class FundingMeta:
    avg_funding: float
    points: int


@dataclass(slots=True, frozen=True)
class ChoppinessMeta:
    chop: float | None
    regime: ChoppinessRegime
    activity: Literal["ACTIVE", "NEUTRAL", "NONE"]
    candles_used: int
    period: int


ModuleMeta = Union[
    TrendMeta,
    VolatilityMeta,
    TrendRegimeMeta,
    LiquidityMeta,
    LiquidationsMeta,
    OpenInterestMeta,
    LongShortMeta,
    HigherMAMeta,
    RsiVolTrendMeta,
    FundingMeta,
    ChoppinessMeta,
]


@dataclass(slots=True, frozen=True)
class ModuleResult:
    """Output of one analysis module for one symbol and cycle."""

    module: ModuleName
    symbol: str
    signal: Signal
    strength: float
    long_score: float
    short_score: float
    meta: ModuleMeta

    def __post_init__(self) -> None:
        if self.signal not in ("LONG", "SHORT", "NEUTRAL"):
            raise ValueError(f"invalid_signal: {self.signal}")
        if not 0.0 <= self.strength <= 100.0:
            raise ValueError(f"strength_out_of_range: {self.strength}")


ModuleResults = dict[ModuleName, ModuleResult | None]


@dataclass(slots=True, frozen=True)
class Analysis:
    """Aggregated verdict for one symbol at one point in time."""

    time: str
    symbol: str
    timeframe: str
    modules: ModuleResults
    scores: dict[Side, float]
    coverage: float
    contributing: tuple[ModuleName, ...]
    bias: Bias
    decision: Decision
    reasons: tuple[str, ...] = ()

    def module(self, name: ModuleName) -> ModuleResult | None:
        return self.modules.get(name)

    @property
    def volatility(self) -> VolatilityMeta | None:
        result = self.modules.get(ModuleName.VOLATILITY)
        if result is None or not isinstance(result.meta, VolatilityMeta):
            return None
        return result.meta

    @property
    def spread_pct(self) -> float | None:
        result = self.modules.get(ModuleName.LIQUIDITY)
        if result is None or not isinstance(result.meta, LiquidityMeta):
            return None
        return result.meta.spread_pct


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TpFill:
    qty: float
    price: float
    time: str
    pnl: float


@dataclass(slots=True)
class TakeProfit:
    """One take-profit level; ``size_pct`` is a share of the initial size."""

    price: float
    size_pct: float
    filled: bool = False
    fills: list[TpFill] = field(default_factory=list)
    cum: float = 0.0
    order_id: str | None = None


@dataclass(slots=True)
class TrailingState:
    active: bool = False
    start_after_pct: float = 0.0
    trail_step_pct: float = 0.0
    anchor: float | None = None


@dataclass(slots=True)
class Adjustment:
    type: AdjustmentType
    ts: str
    price: float
    reason: str
    size: float | None = None


@dataclass(slots=True)
class AddRecord:
    price: float
    qty: float
    ts: str


@dataclass(slots=True)
class PositionMeta:
    leverage: float
    risk_pct: float
    strategy_name: str = "signal_trader"
    opened_by: str = "engine"
    stop_model: Literal["hard", "atr"] = "hard"
    atr: float | None = None


@dataclass(slots=True)
class AnalysisRef:
    time: str
    bias: Bias
    scores: dict[Side, float]


@dataclass(slots=True)
class Position:
    """Futures position tracked from open to a terminal status."""

    id: str
    symbol: str
    side: Side
    entry_price: float
    size: float
    initial_size: float
    opened_at: str
    stop_price: float
    initial_stop_price: float
    meta: PositionMeta
    analysis: AnalysisRef | None = None
    take_profits: list[TakeProfit] = field(default_factory=list)
    initial_tps: list[TakeProfit] = field(default_factory=list)
    trailing: TrailingState = field(default_factory=TrailingState)
    adjustments: list[Adjustment] = field(default_factory=list)
    adds: list[AddRecord] = field(default_factory=list)
    status: PositionStatus = "OPEN"
    realized_pnl: float = 0.0
    version: int = 0
    closed_at: str | None = None
    closed_by: ClosedBy | None = None
    final_pnl: float | None = None
    exit_price: float | None = None

    @property
    def is_open(self) -> bool:
        return self.status == "OPEN"

    @property
    def direction(self) -> int:
        return 1 if self.side == "LONG" else -1

    def pnl_at(self, price: float, qty: float | None = None) -> float:
        """Unrealized pnl of ``qty`` (default: remaining size) marked at ``price``."""
        amount = self.size if qty is None else qty
        return (price - self.entry_price) * amount * self.direction

    def move_pct_at(self, price: float) -> float:
        """Signed favourable price move from entry, in percent."""
        if self.entry_price <= 0:
            return 0.0
        return (price - self.entry_price) / self.entry_price * 100 * self.direction


@dataclass(slots=True)
class CycleResult:
    """Outcome of one evaluation cycle for one symbol."""

    symbol: str
    status: str
    analysis: Analysis | None = None
    decisions: list[dict[str, object]] = field(default_factory=list)
    orders: list[dict[str, object]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0
