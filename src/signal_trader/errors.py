"""Error taxonomy shared by the data, strategy and execution layers."""

from __future__ import annotations


class SignalTraderError(Exception):
    """Base error for the engine."""


class DataUnavailable(SignalTraderError):
    """A feed is missing or does not cover the requested window."""


class FetchFailure(DataUnavailable):
    """Transport failure or timeout while talking to a market data feed."""


class ConfigInvalid(SignalTraderError):
    """A CoinConfig failed validation; the symbol's cycle is rejected."""

    def __init__(self, symbol: str, problems: list[str]) -> None:
        self.symbol = symbol
        self.problems = problems
        super().__init__(f"invalid_coin_config[{symbol}]: {'; '.join(problems)}")


class ConcurrencyConflict(SignalTraderError):
    """Position write lost an optimistic version check."""


class ExternalExecutionFailure(SignalTraderError):
    """Exchange order placement or cancellation failed."""


class PositionStateError(SignalTraderError):
    """Illegal transition on a position (e.g. mutating a closed one)."""


class DuplicateAnalysis(SignalTraderError):
    """An analysis for the same (symbol, time) already exists."""
