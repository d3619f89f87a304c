"""Paper execution gateway with simulated slippage."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog

from signal_trader.exec.gateway import OrderReport
from signal_trader.types import Position, Side
from signal_trader.utils.logging import get_logger, log_order_execution


def _order_side(side: Side, *, closing: bool) -> str:
    buying = (side == "LONG") != closing
    return "BUY" if buying else "SELL"


class PaperGateway:
    """Simulated fills; buys pay the slippage, sells give it up."""

    def __init__(
        self,
        *,
        slippage_bps: float = 2.0,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._slippage_bps = slippage_bps
        self._logger = logger or get_logger("signal_trader.exec.paper")
        self._seq = 0

    def open(self, position: Position, price: float) -> OrderReport:
        """Fill the whole entry at ``price`` adjusted for slippage."""
        if position.size <= 0:
            raise ValueError("qty_must_be_positive")
        side = _order_side(position.side, closing=False)
        return self._fill("open", position, side, position.size, price)

    def add(self, position: Position, qty: float, price: float) -> OrderReport:
        """Fill a DCA slice of ``qty`` on the entry side."""
        if qty <= 0:
            raise ValueError("qty_must_be_positive")
        side = _order_side(position.side, closing=False)
        return self._fill("add", position, side, qty, price)

    def close(self, position: Position, price: float, reason: str) -> OrderReport:
        side = _order_side(position.side, closing=True)
        report = self._fill("close", position, side, position.size, price)
        report["reason"] = reason
        return report

    def cancel(self, position: Position) -> OrderReport:
        self._seq += 1
        report: OrderReport = {
            "action": "cancel",
            "order_id": f"paper-{self._seq}",
            "position_id": position.id,
            "symbol": position.symbol,
            "status": "cancelled",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        log_order_execution(
            self._logger,
            symbol=position.symbol,
            side=position.side,
            quantity=position.size,
            order_id=report["order_id"],
            status="cancelled",
        )
        return report

    def _fill(self, action: str, position: Position, side: str, qty: float, price: float) -> OrderReport:
        slip = self._slippage_bps / 10_000.0
        fill_price = price * (1.0 + slip) if side == "BUY" else price * (1.0 - slip)
        self._seq += 1
        report: OrderReport = {
            "action": action,
            "order_id": f"paper-{self._seq}",
            "position_id": position.id,
            "symbol": position.symbol,
            "side": side,
            "qty": float(qty),
            "price": float(fill_price),
            "status": "filled",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        log_order_execution(
            self._logger,
            symbol=position.symbol,
            side=side,
            quantity=qty,
            price=fill_price,
            order_id=report["order_id"],
            status="filled",
            action=action,
        )
        return report
