"""Execution gateway protocol and the retrying wrapper used by the engine."""

from __future__ import annotations

from typing import Any, Protocol

import structlog
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from signal_trader.errors import ExternalExecutionFailure
from signal_trader.types import Position
from signal_trader.utils.logging import get_logger, log_order_execution

OrderReport = dict[str, Any]


class ExecutionGateway(Protocol):
    """Places and removes exchange orders for a position."""

    def open(self, position: Position, price: float) -> OrderReport: ...

    def add(self, position: Position, qty: float, price: float) -> OrderReport: ...

    def close(self, position: Position, price: float, reason: str) -> OrderReport: ...

    def cancel(self, position: Position) -> OrderReport: ...


class RetryingGateway:
    """Retries close and cancel with exponential backoff; opens and adds are attempted once."""

    def __init__(
        self,
        inner: ExecutionGateway,
        *,
        attempts: int = 4,
        wait: wait_base | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._inner = inner
        self._attempts = attempts
        self._wait = wait or wait_exponential(multiplier=1, min=1, max=8)
        self._logger = logger or get_logger("signal_trader.exec.gateway")

    def open(self, position: Position, price: float) -> OrderReport:
        return self._inner.open(position, price)

    def add(self, position: Position, qty: float, price: float) -> OrderReport:
        return self._inner.add(position, qty, price)

    def close(self, position: Position, price: float, reason: str) -> OrderReport:
        return self._retrying("close", position)(self._inner.close, position, price, reason)

    def cancel(self, position: Position) -> OrderReport:
        return self._retrying("cancel", position)(self._inner.cancel, position)

    def _retrying(self, action: str, position: Position) -> Retrying:
        def _before_sleep(state: Any) -> None:
            log_order_execution(
                self._logger,
                symbol=position.symbol,
                side=position.side,
                quantity=position.size,
                status="retrying",
                action=action,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()),
            )

        return Retrying(
            retry=retry_if_exception_type(ExternalExecutionFailure),
            wait=self._wait,
            stop=stop_after_attempt(self._attempts),
            before_sleep=_before_sleep,
            reraise=True,
        )
