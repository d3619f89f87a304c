"""Binance USD-M futures market data client."""

from __future__ import annotations

import json
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pandas as pd  # type: ignore[import-untyped]
from binance.client import Client  # type: ignore[import-untyped]

from signal_trader.config import Settings
from signal_trader.errors import FetchFailure
from signal_trader.types import (
    LiquidationBucket,
    LiquiditySample,
    LongShortPoint,
    OpenInterestPoint,
)
from signal_trader.utils.logging import get_logger

_STATS_PERIOD = "5m"
_BOOK_DEPTH = 20
_LIQUIDITY_RING_SIZE = 240


def _ms_to_datetime(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class BinanceDataClient:
    """Read-only client for candles, book, OI, long/short and funding feeds.

    Methods block; the engine runs them in worker threads. Every transport or
    payload problem is raised as FetchFailure.
    """

    _INTERVAL_MAP = {
        "1m": Client.KLINE_INTERVAL_1MINUTE,
        "3m": Client.KLINE_INTERVAL_3MINUTE,
        "5m": Client.KLINE_INTERVAL_5MINUTE,
        "15m": Client.KLINE_INTERVAL_15MINUTE,
        "30m": Client.KLINE_INTERVAL_30MINUTE,
        "1h": Client.KLINE_INTERVAL_1HOUR,
        "2h": Client.KLINE_INTERVAL_2HOUR,
        "4h": Client.KLINE_INTERVAL_4HOUR,
        "6h": Client.KLINE_INTERVAL_6HOUR,
        "8h": Client.KLINE_INTERVAL_8HOUR,
        "12h": Client.KLINE_INTERVAL_12HOUR,
        "1d": Client.KLINE_INTERVAL_1DAY,
        "3d": Client.KLINE_INTERVAL_3DAY,
        "1w": Client.KLINE_INTERVAL_1WEEK,
    }

    def __init__(self, settings: Settings, client: Client | None = None) -> None:
        self._settings = settings
        self._logger = get_logger("signal_trader.data.binance")
        self._client = client or Client(
            api_key=settings.binance_api_key or None,
            api_secret=settings.binance_api_secret or None,
            testnet=settings.binance_testnet,
            requests_params={"timeout": settings.http_timeout_sec},
        )
        self._liquidations_dir = settings.state_dir / "liquidations"
        self._book_samples: dict[str, deque[LiquiditySample]] = {}

    def fetch_ohlcv(self, symbol: str, interval: str, limit: int) -> pd.DataFrame:
        """Fetch futures klines and return a normalized dataframe, oldest first."""
        resolved_interval = self._INTERVAL_MAP.get(interval.lower())
        if resolved_interval is None:
            raise ValueError(f"unsupported_interval: {interval}")

        rows = self._call("futures_klines", symbol=symbol, interval=resolved_interval, limit=limit)
        df = pd.DataFrame(
            rows,
            columns=[
                "open_time",
                "open",
                "high",
                "low",
                "close",
                "volume",
                "close_time",
                "quote_asset_volume",
                "number_of_trades",
                "taker_buy_base_asset_volume",
                "taker_buy_quote_asset_volume",
                "ignore",
            ],
        )
        if df.empty:
            raise FetchFailure(f"empty_ohlcv_response: {symbol} {interval}")

        numeric_cols = ["open", "high", "low", "close", "volume"]
        for col in numeric_cols:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df["open_time"] = pd.to_datetime(df["open_time"], unit="ms", utc=True)
        df["close_time"] = pd.to_datetime(df["close_time"], unit="ms", utc=True)
        df = df.dropna(subset=numeric_cols).reset_index(drop=True)
        return df[["open_time", "open", "high", "low", "close", "volume", "close_time"]]

    def fetch_last_price(self, symbol: str) -> float:
        payload: dict[str, Any] = self._call("futures_symbol_ticker", symbol=symbol)
        try:
            return float(payload["price"])
        except (KeyError, TypeError, ValueError) as exc:
            raise FetchFailure(f"bad_ticker_payload: {symbol}") from exc

    def sample_order_book(self, symbol: str) -> LiquiditySample:
        """Reduce one depth snapshot to bid share of notional and absolute spread."""
        book: dict[str, Any] = self._call("futures_order_book", symbol=symbol, limit=_BOOK_DEPTH)
        bids = [(float(p), float(q)) for p, q in book.get("bids", [])]
        asks = [(float(p), float(q)) for p, q in book.get("asks", [])]
        if not bids or not asks:
            raise FetchFailure(f"empty_order_book: {symbol}")
        bid_value = sum(p * q for p, q in bids)
        ask_value = sum(p * q for p, q in asks)
        total = bid_value + ask_value
        return LiquiditySample(
            time=datetime.now(timezone.utc),
            imbalance=bid_value / total if total > 0 else 0.5,
            spread_abs=asks[0][0] - bids[0][0],
        )

    def fetch_liquidity(self, symbol: str, window: int) -> list[LiquiditySample]:
        """Take a fresh book sample and return the newest ``window`` samples."""
        ring = self._book_samples.setdefault(symbol, deque(maxlen=_LIQUIDITY_RING_SIZE))
        ring.append(self.sample_order_book(symbol))
        return list(ring)[-window:]

    def fetch_liquidations(self, symbol: str, limit: int) -> list[LiquidationBucket]:
        """Read liquidation buckets kept by the force-order stream collector.

        The collector appends one JSON line per bucket to
        ``<state_dir>/liquidations/<SYMBOL>.jsonl``. No file means no feed yet.
        """
        path = self._liquidations_dir / f"{symbol.upper()}.jsonl"
        if not path.exists():
            return []
        try:
            return read_liquidation_buckets(path, limit)
        except (KeyError, ValueError) as exc:
            raise FetchFailure(f"bad_liquidation_bucket: {symbol}: {exc}") from exc

    def fetch_open_interest_hist(self, symbol: str, limit: int) -> list[OpenInterestPoint]:
        """OI history aligned with 5m closes, oldest first."""
        oi_rows = self._call(
            "futures_open_interest_hist", symbol=symbol, period=_STATS_PERIOD, limit=limit
        )
        klines = self._call(
            "futures_klines", symbol=symbol, interval=Client.KLINE_INTERVAL_5MINUTE, limit=limit
        )
        if len(oi_rows) < limit or len(klines) < limit:
            raise FetchFailure(f"short_open_interest_history: {symbol}")
        points = []
        for oi_row, kline in zip(oi_rows[-limit:], klines[-limit:]):
            points.append(
                OpenInterestPoint(
                    time=_ms_to_datetime(oi_row["timestamp"]),
                    open_interest=float(oi_row["sumOpenInterest"]),
                    open_interest_value=float(oi_row["sumOpenInterestValue"]),
                    close=float(kline[4]),
                )
            )
        return points

    def fetch_long_short(self, symbol: str, limit: int) -> list[LongShortPoint]:
        rows = self._call(
            "futures_global_longshort_ratio", symbol=symbol, period=_STATS_PERIOD, limit=limit
        )
        return [
            LongShortPoint(
                time=_ms_to_datetime(row["timestamp"]),
                long_pct=float(row["longAccount"]) * 100,
                short_pct=float(row["shortAccount"]) * 100,
            )
            for row in rows
        ]

    def fetch_funding_rates(self, symbol: str, limit: int) -> list[float]:
        rows = self._call("futures_funding_rate", symbol=symbol, limit=limit)
        return [float(row["fundingRate"]) for row in rows if row.get("fundingRate") is not None]

    def _call(self, method: str, **params: Any) -> Any:
        try:
            return getattr(self._client, method)(**params)
        except Exception as exc:  # noqa: BLE001 - every transport error is a feed failure.
            self._logger.warning("binance_call_failed", method=method, error=str(exc), **params)
            raise FetchFailure(f"{method}: {exc}") from exc


def read_liquidation_buckets(path: Path, limit: int) -> list[LiquidationBucket]:
    """Parse the newest ``limit`` buckets from a liquidation JSONL file."""
    lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
    buckets = []
    for line in lines[-limit:]:
        row = json.loads(line)
        buckets.append(
            LiquidationBucket(
                time=datetime.fromisoformat(row["time"]),
                buys_value=float(row.get("buysValue", 0.0)),
                sells_value=float(row.get("sellsValue", 0.0)),
            )
        )
    return buckets
