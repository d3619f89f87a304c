"""File-backed repositories for analyses, positions and coin configs."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path

from signal_trader.errors import ConcurrencyConflict, ConfigInvalid, DuplicateAnalysis, PositionStateError
from signal_trader.journal.codec import (
    analysis_from_dict,
    analysis_to_dict,
    position_from_dict,
    position_to_dict,
)
from signal_trader.strategy.coin_config import CoinConfig, load_coin_config
from signal_trader.types import Analysis, Position


def _write_atomic(path: Path, text: str) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


class AnalysisStore:
    """Append-only analyses, one JSONL file per symbol; unique on (symbol, time)."""

    def __init__(self, state_dir: Path) -> None:
        self._dir = state_dir / "analyses"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._times: dict[str, set[str]] = {}

    def insert(self, analysis: Analysis) -> None:
        with self._lock:
            times = self._known_times(analysis.symbol)
            if analysis.time in times:
                raise DuplicateAnalysis(f"duplicate_analysis: {analysis.symbol}@{analysis.time}")
            with self._path(analysis.symbol).open("a", encoding="utf-8") as f:
                f.write(json.dumps(analysis_to_dict(analysis), ensure_ascii=True) + "\n")
            times.add(analysis.time)

    def recent(self, symbol: str, limit: int) -> list[Analysis]:
        """Newest analyses first."""
        path = self._path(symbol)
        if limit <= 0 or not path.exists():
            return []
        rows: list[Analysis] = []
        for line in reversed(path.read_text(encoding="utf-8").splitlines()):
            if not line.strip():
                continue
            rows.append(analysis_from_dict(json.loads(line)))
            if len(rows) >= limit:
                break
        return rows

    def _known_times(self, symbol: str) -> set[str]:
        if symbol not in self._times:
            path = self._path(symbol)
            times: set[str] = set()
            if path.exists():
                for line in path.read_text(encoding="utf-8").splitlines():
                    if line.strip():
                        times.add(json.loads(line)["time"])
            self._times[symbol] = times
        return self._times[symbol]

    def _path(self, symbol: str) -> Path:
        return self._dir / f"{symbol.upper()}.jsonl"


class PositionStore:
    """One JSON document per position with optimistic ``version`` checks."""

    def __init__(self, state_dir: Path) -> None:
        self._dir = state_dir / "positions"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def create(self, position: Position) -> Position:
        with self._lock:
            path = self._path(position.id)
            if path.exists():
                raise PositionStateError(f"position_exists: {position.id}")
            position.version = 1
            _write_atomic(path, json.dumps(position_to_dict(position), ensure_ascii=True, indent=2))
        return position

    def get(self, position_id: str) -> Position | None:
        path = self._path(position_id)
        if not path.exists():
            return None
        return position_from_dict(json.loads(path.read_text(encoding="utf-8")))

    def save(self, position: Position) -> Position:
        """Persist ``position`` if nobody wrote since it was loaded, bumping its version."""
        with self._lock:
            stored = self.get(position.id)
            if stored is None:
                raise PositionStateError(f"position_not_found: {position.id}")
            if stored.version != position.version:
                raise ConcurrencyConflict(
                    f"stale_position: {position.id} v{position.version} != v{stored.version}"
                )
            if stored.status != "OPEN":
                raise PositionStateError(f"position_terminal: {position.id} is {stored.status}")
            position.version += 1
            _write_atomic(
                self._path(position.id),
                json.dumps(position_to_dict(position), ensure_ascii=True, indent=2),
            )
        return position

    def find_open(self, symbol: str | None = None) -> list[Position]:
        return [
            p for p in self._all() if p.is_open and (symbol is None or p.symbol == symbol.upper())
        ]

    def find_by_symbol(self, symbol: str) -> list[Position]:
        """All positions for ``symbol``, newest first."""
        rows = [p for p in self._all() if p.symbol == symbol.upper()]
        return sorted(rows, key=lambda p: p.opened_at, reverse=True)

    def count_open(self) -> int:
        return len(self.find_open())

    def _all(self) -> list[Position]:
        return [
            position_from_dict(json.loads(path.read_text(encoding="utf-8")))
            for path in sorted(self._dir.glob("*.json"))
        ]

    def _path(self, position_id: str) -> Path:
        return self._dir / f"{position_id}.json"


class CoinConfigStore:
    """Reads ``<dir>/<SYMBOL>.json``; parsed configs are cached until the file changes."""

    def __init__(self, config_dir: Path) -> None:
        self._dir = config_dir
        self._cache: dict[str, tuple[float, CoinConfig]] = {}

    def symbols(self) -> list[str]:
        if not self._dir.exists():
            return []
        return sorted(path.stem.upper() for path in self._dir.glob("*.json"))

    def get(self, symbol: str) -> CoinConfig:
        """Load the config for ``symbol``; missing or malformed files raise ConfigInvalid."""
        symbol = symbol.upper()
        path = self._dir / f"{symbol}.json"
        if not path.exists():
            raise ConfigInvalid(symbol, ["config_not_found"])
        mtime = path.stat().st_mtime
        cached = self._cache.get(symbol)
        if cached is not None and cached[0] == mtime:
            return cached[1]
        config = load_coin_config(path)
        if config.symbol != symbol:
            raise ConfigInvalid(symbol, [f"symbol_mismatch: file {symbol} declares {config.symbol}"])
        self._cache[symbol] = (mtime, config)
        return config

    def list_active(self) -> list[CoinConfig]:
        """Valid configs with ``isActive``; invalid files are skipped here and surface via ``get``."""
        active = []
        for symbol in self.symbols():
            try:
                config = self.get(symbol)
            except ConfigInvalid:
                continue
            if config.is_active:
                active.append(config)
        return active
