"""Telegram notifier."""

from __future__ import annotations

import json
from typing import Any, Protocol

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from signal_trader.config import Settings
from signal_trader.journal.codec import closed_notification_payload
from signal_trader.types import Position
from signal_trader.utils.logging import get_logger

_TELEGRAM_URL = "https://api.telegram.org/bot{token}/sendMessage"


class NotificationError(Exception):
    """Raised when the Telegram API request fails."""


class Notifier(Protocol):
    def position_opened(self, position: Position) -> None: ...

    def position_closed(self, position: Position) -> None: ...

    def alert(self, message: str, **context: Any) -> None: ...


class TelegramNotifier:
    """Sends position events to one Telegram chat.

    Without a bot token and chat id the message is logged at error level
    instead, so nothing is lost silently.
    """

    def __init__(
        self,
        settings: Settings,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._settings = settings
        self._logger = logger or get_logger("signal_trader.notify.telegram")

    def position_opened(self, position: Position) -> None:
        tps = ", ".join(f"{tp.price:.4f}@{tp.size_pct:g}%" for tp in position.take_profits)
        self._deliver(
            f"OPEN {position.symbol} {position.side}\n"
            f"entry {position.entry_price:.4f} size {position.size:.6f} x{position.meta.leverage:g}\n"
            f"stop {position.stop_price:.4f}\n"
            f"tp {tps or '-'}",
            kind="position_opened",
        )

    def position_closed(self, position: Position) -> None:
        payload = closed_notification_payload(position)
        self._deliver(
            f"CLOSED {position.symbol} {position.side} by {position.closed_by}\n"
            f"pnl {position.final_pnl or 0.0:.4f}\n"
            f"{json.dumps(payload, ensure_ascii=True, default=str)}",
            kind="position_closed",
        )

    def alert(self, message: str, **context: Any) -> None:
        details = " ".join(f"{key}={value}" for key, value in context.items())
        self._deliver(f"ALERT {message} {details}".strip(), kind="alert")

    def _deliver(self, text: str, *, kind: str) -> None:
        if not self._settings.telegram_configured:
            self._logger.error("notification_not_configured", kind=kind, text=text)
            return
        try:
            self._send(text)
        except NotificationError as exc:
            self._logger.warning("notification_failed", kind=kind, error=str(exc))

    @retry(
        retry=retry_if_exception_type(NotificationError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _send(self, text: str) -> None:
        url = _TELEGRAM_URL.format(token=self._settings.telegram_bot_token)
        payload = {"chat_id": self._settings.telegram_chat_id, "text": text}
        try:
            with httpx.Client(timeout=self._settings.http_timeout_sec) as client:
                response = client.post(url, json=payload)
                response.raise_for_status()
        except (httpx.HTTPError, httpx.TimeoutException) as exc:
            raise NotificationError(str(exc)) from exc
