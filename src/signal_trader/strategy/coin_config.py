"""Per-symbol CoinConfig schema and loading helpers.

Configs are authored as camelCase JSON (the same documents the console edits),
so every model accepts both camelCase aliases and snake_case field names.
Module keys may use either spelling (``trendRegime`` or ``trend_regime``).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from signal_trader.errors import ConfigInvalid
from signal_trader.types import ChoppinessRegime, ModuleName, Side, VolatilityRegime

_MODULE_ALIASES: dict[str, ModuleName] = {
    "trendRegime": ModuleName.TREND_REGIME,
    "openInterest": ModuleName.OPEN_INTEREST,
    "longShort": ModuleName.LONG_SHORT,
    "higherMA": ModuleName.HIGHER_MA,
    "higherMa": ModuleName.HIGHER_MA,
    "rsiVolTrend": ModuleName.RSI_VOL_TREND,
}


def parse_module_name(raw: str | ModuleName) -> ModuleName:
    """Resolve a module key written in either snake_case or camelCase."""
    if isinstance(raw, ModuleName):
        return raw
    if raw in _MODULE_ALIASES:
        return _MODULE_ALIASES[raw]
    try:
        return ModuleName(raw)
    except ValueError:
        raise ValueError(f"unknown_module: {raw}") from None


TIMEFRAMES = frozenset(
    {"1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "3d", "1w"}
)


def _check_timeframe(value: str) -> str:
    if value.lower() not in TIMEFRAMES:
        raise ValueError(f"unsupported_timeframe: {value}")
    return value.lower()


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


# ==================== analysisConfig ====================


class TrendRegimeConfig(_ConfigModel):
    period: int = Field(default=14, ge=2)
    adx_max_for_scale: float = Field(default=50.0, gt=0)
    adx_signal_min: float = Field(default=7.0, ge=0, description="minimum |+DI - -DI| for a directional signal")


class ChoppinessConfig(_ConfigModel):
    timeframe: str = "1m"
    period: int = Field(default=21, ge=2)

    @field_validator("timeframe")
    @classmethod
    def _known_timeframe(cls, value: str) -> str:
        return _check_timeframe(value)


class HigherMAConfig(_ConfigModel):
    timeframe: str = "1d"
    ma_short: int = Field(default=7, ge=1)
    ma_long: int = Field(default=14, ge=2)
    ma_type: Literal["SMA", "EMA"] = Field(
        default="SMA",
        validation_alias=AliasChoices("type", "ma_type", "maType"),
        serialization_alias="type",
    )
    threshold_pct: float = Field(default=0.2, ge=0)
    scale: float = Field(default=12.0, gt=0)
    ema_seed: Literal["sma", "first"] = "sma"

    @field_validator("timeframe")
    @classmethod
    def _known_timeframe(cls, value: str) -> str:
        return _check_timeframe(value)

    @model_validator(mode="after")
    def _short_below_long(self) -> HigherMAConfig:
        if self.ma_short >= self.ma_long:
            raise ValueError("higher_ma_short_must_be_below_long")
        return self


class AnalysisConfig(_ConfigModel):
    candle_timeframe: str = "15m"
    candle_limit: int = Field(default=200, ge=30, le=1500)
    oi_window: int = Field(default=20, ge=2)
    liq_window: int = Field(default=100, ge=1, description="liquidation bucket history cap")
    liq_sent_window: int = Field(default=24, ge=1, description="newest liquidation buckets averaged for sentiment")
    funding_window: int = Field(default=8, ge=1)
    vol_window: int = Field(default=14, ge=2)
    corr_window: int = Field(
        default=10, ge=2, description="console BTC-correlation window; no correlation module reads it"
    )
    long_short_window: int = Field(default=10, ge=1)
    liquidity_window: int = Field(default=20, ge=1)
    trend_regime: TrendRegimeConfig = Field(default_factory=TrendRegimeConfig)
    choppiness: ChoppinessConfig = Field(default_factory=ChoppinessConfig)
    higher_ma: HigherMAConfig = Field(
        default_factory=HigherMAConfig,
        validation_alias=AliasChoices("higherMA", "higherMa", "higher_ma"),
        serialization_alias="higherMA",
    )
    weights: dict[ModuleName, float]
    module_thresholds: dict[ModuleName, float]

    @field_validator("candle_timeframe")
    @classmethod
    def _known_timeframe(cls, value: str) -> str:
        return _check_timeframe(value)

    @field_validator("weights", "module_thresholds", mode="before")
    @classmethod
    def _normalize_module_keys(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        return {parse_module_name(key): item for key, item in value.items()}

    @field_validator("weights")
    @classmethod
    def _weights_non_negative(cls, value: dict[ModuleName, float]) -> dict[ModuleName, float]:
        negative = [name.value for name, weight in value.items() if weight < 0]
        if negative:
            raise ValueError(f"negative_weights: {negative}")
        return value

    @model_validator(mode="after")
    def _weights_match_thresholds(self) -> AnalysisConfig:
        if set(self.weights) != set(self.module_thresholds):
            missing = sorted(m.value for m in set(self.weights) ^ set(self.module_thresholds))
            raise ValueError(f"weights_thresholds_key_mismatch: {missing}")
        return self

    @property
    def configured_modules(self) -> list[ModuleName]:
        return list(self.weights)


# ==================== strategy ====================


class FundingExtreme(_ConfigModel):
    abs_over: float = Field(gt=0)


class AvoidWhen(_ConfigModel):
    volatility: VolatilityRegime | None = None
    funding_extreme: FundingExtreme | None = None
    choppiness: ChoppinessRegime | None = None


class EntryConfig(_ConfigModel):
    min_score: dict[Side, float] = Field(default_factory=lambda: {"LONG": 55.0, "SHORT": 55.0})
    min_modules: int = Field(default=3, ge=0)
    required_modules: list[ModuleName] = Field(default_factory=list)
    max_spread_pct: float | None = Field(default=None, ge=0)
    cooldown_min: float = Field(default=5.0, ge=0)
    lookback: int = Field(default=1, ge=1, description="analyses in the majority vote")
    avoid_when: AvoidWhen = Field(default_factory=AvoidWhen)
    side_bias_tolerance: float = Field(default=5.0, ge=0)
    side_bias_boundary: Literal["inclusive", "strict"] = "inclusive"

    @field_validator("required_modules", mode="before")
    @classmethod
    def _normalize_required(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [parse_module_name(item) for item in value]

    @field_validator("min_score")
    @classmethod
    def _both_sides(cls, value: dict[Side, float]) -> dict[Side, float]:
        if set(value) != {"LONG", "SHORT"}:
            raise ValueError("min_score_requires_long_and_short")
        return value


class VolatilityFilter(_ConfigModel):
    dead_below: float = Field(
        default=0.25,
        ge=0,
        validation_alias=AliasChoices("deadBelow", "dead_below", "minThreshold"),
    )
    extreme_above: float = Field(
        default=2.5,
        gt=0,
        validation_alias=AliasChoices("extremeAbove", "extreme_above", "maxThreshold"),
    )

    @model_validator(mode="after")
    def _ordered(self) -> VolatilityFilter:
        if self.dead_below >= self.extreme_above:
            raise ValueError("volatility_dead_below_must_be_below_extreme_above")
        return self


class LiquidationsFilter(_ConfigModel):
    """USD bounds on liquidation flow: thinner windows are ignored, larger bursts are cascades."""

    min_threshold: float = Field(default=0.0, ge=0)
    max_threshold: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _ordered(self) -> LiquidationsFilter:
        if self.max_threshold is not None and self.min_threshold >= self.max_threshold:
            raise ValueError("liquidations_min_threshold_must_be_below_max_threshold")
        return self


class CapitalConfig(_ConfigModel):
    account: float = Field(default=100.0, gt=0)
    risk_per_trade_pct: float = Field(default=10.0, gt=0, le=100)
    leverage: float = Field(default=3.0, ge=1, le=125)
    max_concurrent_positions: int = Field(default=2, ge=1)
    max_position_usd: float | None = Field(default=None, gt=0)
    sizing_mode: Literal["risk", "margin"] = "risk"


class SizingConfig(_ConfigModel):
    max_adds: int = Field(default=0, ge=0)
    add_on_adverse_move_pct: float = Field(default=1.0, gt=0)
    add_multiplier: float = Field(default=1.0, gt=0)


class TakeProfitConfig(_ConfigModel):
    use: bool = True
    tp_grid_pct: list[float] = Field(default_factory=list)
    tp_grid_size_pct: list[float] = Field(default_factory=list)

    @model_validator(mode="after")
    def _grid_consistent(self) -> TakeProfitConfig:
        if len(self.tp_grid_pct) != len(self.tp_grid_size_pct):
            raise ValueError("tp_grid_length_mismatch")
        if any(pct <= 0 for pct in self.tp_grid_pct):
            raise ValueError("tp_grid_pct_must_be_positive")
        if any(size <= 0 for size in self.tp_grid_size_pct):
            raise ValueError("tp_grid_size_pct_must_be_positive")
        if sum(self.tp_grid_size_pct) > 100 + 1e-9:
            raise ValueError("tp_grid_size_pct_sum_exceeds_100")
        return self


class FlipIf(_ConfigModel):
    score_gap: float = Field(ge=0)
    min_opp_score: float = Field(ge=0)


class ModuleFail(_ConfigModel):
    required: list[ModuleName] = Field(default_factory=list)

    @field_validator("required", mode="before")
    @classmethod
    def _normalize_required(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [parse_module_name(item) for item in value]


class SignalRules(_ConfigModel):
    flip_if: FlipIf | None = None
    module_fail: ModuleFail | None = None


class StopLossConfig(_ConfigModel):
    type: Literal["hard", "atr"] = "hard"
    hard_pct: float | None = Field(default=None, gt=0)
    atr_mult: float | None = Field(default=None, gt=0)
    atr_recompute: Literal["fixed", "each_cycle"] = "fixed"
    signal_rules: SignalRules = Field(default_factory=SignalRules)

    @model_validator(mode="after")
    def _model_params_present(self) -> StopLossConfig:
        if self.type == "hard" and self.hard_pct is None:
            raise ValueError("sl_hard_requires_hard_pct")
        if self.type == "atr" and self.atr_mult is None:
            raise ValueError("sl_atr_requires_atr_mult")
        return self


class TimeExitConfig(_ConfigModel):
    max_hold_min: float | None = Field(default=None, gt=0)
    no_pnl_fallback: Literal["none", "breakeven", "closeSmallLoss"] = Field(
        default="none",
        validation_alias=AliasChoices("noPnLFallback", "noPnlFallback", "no_pnl_fallback"),
        serialization_alias="noPnLFallback",
    )
    breakeven_tolerance_pct: float = Field(default=0.05, ge=0)


class TrailingConfig(_ConfigModel):
    use: bool = False
    start_after_pct: float = Field(default=1.0, gt=0)
    trail_step_pct: float = Field(default=0.5, gt=0)


class ExitsConfig(_ConfigModel):
    pct_basis: Literal["price", "roi"] = "price"
    tp: TakeProfitConfig = Field(default_factory=TakeProfitConfig)
    sl: StopLossConfig = Field(default_factory=lambda: StopLossConfig(type="hard", hard_pct=5.0))
    time: TimeExitConfig = Field(default_factory=TimeExitConfig)
    trailing: TrailingConfig = Field(default_factory=TrailingConfig)
    opposite_count_exit: int = Field(default=0, ge=0)


class StrategyConfig(_ConfigModel):
    entry: EntryConfig = Field(default_factory=EntryConfig)
    volatility_filter: VolatilityFilter = Field(default_factory=VolatilityFilter)
    liquidations_filter: LiquidationsFilter = Field(default_factory=LiquidationsFilter)
    capital: CapitalConfig = Field(default_factory=CapitalConfig)
    sizing: SizingConfig = Field(default_factory=SizingConfig)
    exits: ExitsConfig = Field(default_factory=ExitsConfig)


class CoinConfig(_ConfigModel):
    """Complete trading configuration for one symbol."""

    symbol: str = Field(pattern=r"^[A-Z0-9]+$")
    is_active: bool = True
    analysis_config: AnalysisConfig
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)

    @model_validator(mode="after")
    def _module_references_configured(self) -> CoinConfig:
        configured = set(self.analysis_config.weights)
        unknown_required = [
            m.value for m in self.strategy.entry.required_modules if m not in configured
        ]
        if unknown_required:
            raise ValueError(f"required_modules_not_configured: {unknown_required}")
        module_fail = self.strategy.exits.sl.signal_rules.module_fail
        if module_fail is not None:
            unknown_fail = [m.value for m in module_fail.required if m not in configured]
            if unknown_fail:
                raise ValueError(f"module_fail_not_configured: {unknown_fail}")
        return self

    def pct_to_price_move(self, pct: float) -> float:
        """Convert a configured exit percentage to a price-move percentage."""
        if self.strategy.exits.pct_basis == "roi":
            return pct / self.strategy.capital.leverage
        return pct


def parse_coin_config(payload: dict[str, Any], *, symbol: str | None = None) -> CoinConfig:
    """Validate a raw CoinConfig document, mapping validation errors to ConfigInvalid."""
    label = symbol or str(payload.get("symbol", "UNKNOWN"))
    try:
        return CoinConfig.model_validate(payload)
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in err['loc']) or 'config'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ConfigInvalid(label, problems) from exc


def load_coin_config(path: Path) -> CoinConfig:
    """Read and validate one CoinConfig JSON file."""
    symbol = path.stem.upper()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigInvalid(symbol, [f"invalid_json: {exc.msg}"]) from exc
    if not isinstance(payload, dict):
        raise ConfigInvalid(symbol, ["config_not_object"])
    return parse_coin_config(payload, symbol=symbol)
