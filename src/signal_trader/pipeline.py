"""Async evaluation engine: fetch, score, aggregate, then manage positions."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import datetime, timezone
from time import perf_counter
from typing import Any

import structlog

from signal_trader.config import Settings
from signal_trader.data.binance import BinanceDataClient
from signal_trader.data.snapshot import MarketDataSource, collect_snapshot
from signal_trader.errors import (
    ConcurrencyConflict,
    ConfigInvalid,
    DuplicateAnalysis,
    ExternalExecutionFailure,
    PositionStateError,
)
from signal_trader.exec.gateway import ExecutionGateway, RetryingGateway
from signal_trader.exec.paper import PaperGateway
from signal_trader.journal.codec import analysis_to_dict, position_to_dict
from signal_trader.journal.repositories import AnalysisStore, CoinConfigStore, PositionStore
from signal_trader.journal.store import JournalStore
from signal_trader.modules import modules_to_run, run_modules
from signal_trader.notify.telegram import Notifier, TelegramNotifier
from signal_trader.risk.entry import CooldownTracker, EntryPolicy
from signal_trader.risk.exits import ExitOutcome, ExitPolicy, cancel_position, close_position
from signal_trader.strategy.aggregator import aggregate
from signal_trader.strategy.coin_config import CoinConfig
from signal_trader.types import AddRecord, Analysis, CycleResult, Position
from signal_trader.utils.logging import get_logger, log_position_event, log_risk_event


class TradingEngine:
    """Evaluates every active symbol once per tick.

    Symbols run concurrently. A symbol whose previous evaluation is still in
    flight when the next tick arrives has that evaluation cancelled; the
    position-mutating part of a cycle is shielded so it always completes.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        data_source: MarketDataSource | None = None,
        gateway: ExecutionGateway | None = None,
        notifier: Notifier | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._settings = settings
        self._logger = logger or get_logger("signal_trader.pipeline")
        self._source = data_source or BinanceDataClient(settings)
        self._gateway = gateway or RetryingGateway(
            PaperGateway(slippage_bps=settings.paper_slippage_bps, logger=self._logger),
            attempts=settings.close_retry_attempts,
            logger=self._logger,
        )
        self._notifier = notifier or TelegramNotifier(settings, logger=self._logger)

        self.journal = JournalStore(settings.journal_dir)
        self.analyses = AnalysisStore(settings.state_dir)
        self.positions = PositionStore(settings.state_dir)
        self.configs = CoinConfigStore(settings.coin_config_dir)
        self.cooldowns = CooldownTracker()
        self._entry = EntryPolicy(self.cooldowns, logger=self._logger)
        self._exits = ExitPolicy(self._entry, logger=self._logger)

        self._open_lock = asyncio.Lock()
        self._position_locks: dict[str, asyncio.Lock] = {}
        self._inflight: dict[str, asyncio.Task[CycleResult]] = {}

    def active_symbols(self) -> list[str]:
        if self._settings.symbol_list:
            return self._settings.symbol_list
        return [cfg.symbol for cfg in self.configs.list_active()]

    # ---- scheduling ----

    def schedule_tick(self, *, dry_run: bool = False, now: datetime | None = None) -> dict[str, asyncio.Task[CycleResult]]:
        """Start one evaluation per active symbol, cancelling stale in-flight ones."""
        tasks: dict[str, asyncio.Task[CycleResult]] = {}
        for symbol in self.active_symbols():
            previous = self._inflight.get(symbol)
            if previous is not None and not previous.done():
                previous.cancel()
                self._logger.warning("evaluation_superseded", symbol=symbol)
            task = asyncio.create_task(self.evaluate_symbol(symbol, dry_run=dry_run, now=now))
            self._inflight[symbol] = task
            tasks[symbol] = task
        return tasks

    async def run_tick(self, *, dry_run: bool = False, now: datetime | None = None) -> list[CycleResult]:
        """Evaluate all active symbols and wait for every result."""
        tasks = self.schedule_tick(dry_run=dry_run, now=now)
        outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)
        return [_as_cycle_result(symbol, outcome) for symbol, outcome in zip(tasks, outcomes)]

    async def run_forever(self, interval_sec: float, *, dry_run: bool = False, max_ticks: int | None = None) -> None:
        """Tick every ``interval_sec``; evaluations still running at the next tick are cancelled."""
        loop = asyncio.get_running_loop()
        tick = 0
        while max_ticks is None or tick < max_ticks:
            tick += 1
            started = loop.time()
            try:
                tasks = self.schedule_tick(dry_run=dry_run)
            except Exception as exc:  # noqa: BLE001 - a broken config dir must not stop the loop.
                self._logger.exception("tick_schedule_failed", tick=tick, error=str(exc))
                tasks = {}
            if tasks:
                done, _ = await asyncio.wait(tasks.values(), timeout=interval_sec)
                statuses = [
                    _as_cycle_result(symbol, _task_outcome(task)).status
                    for symbol, task in tasks.items()
                    if task in done
                ]
                self._logger.info("tick_completed", tick=tick, finished=len(done), statuses=statuses)
            remaining = interval_sec - (loop.time() - started)
            if remaining > 0:
                await asyncio.sleep(remaining)

    # ---- one symbol ----

    async def evaluate_symbol(
        self, symbol: str, *, dry_run: bool = False, now: datetime | None = None
    ) -> CycleResult:
        """Run one bounded evaluation cycle for ``symbol``."""
        try:
            return await asyncio.wait_for(
                self._evaluate_symbol(symbol.upper(), dry_run=dry_run, now=now),
                timeout=self._settings.evaluation_timeout_sec,
            )
        except asyncio.TimeoutError:
            self._logger.error("evaluation_timeout", symbol=symbol, timeout_sec=self._settings.evaluation_timeout_sec)
            self.journal.append("error", {"symbol": symbol, "error": "evaluation_timeout"})
            return CycleResult(symbol=symbol, status="timeout", warnings=["evaluation_timeout"])

    async def _evaluate_symbol(self, symbol: str, *, dry_run: bool, now: datetime | None) -> CycleResult:
        logger = self._logger.bind(symbol=symbol)
        started = perf_counter()
        now = now or datetime.now(timezone.utc)
        result = CycleResult(symbol=symbol, status="unknown")
        self.journal.append(
            "cycle_start",
            {
                "symbol": symbol,
                "mode": self._settings.mode.value,
                "dry_run": dry_run,
                "started_at": now.isoformat(),
            },
        )

        try:
            cfg = self.configs.get(symbol)
            if not cfg.is_active:
                return self._finish_cycle(result, started, status="inactive")

            snapshot = await collect_snapshot(
                self._source,
                cfg,
                modules_to_run(cfg),
                timeout_sec=self._settings.http_timeout_sec,
                logger=logger,
            )
            price = snapshot.price
            self.journal.append(
                "market_data",
                {
                    "symbol": symbol,
                    "rows": 0 if snapshot.candles is None else len(snapshot.candles),
                    "failed_feeds": snapshot.failed_feeds,
                    "last_price": price,
                },
            )
            if snapshot.failed_feeds:
                result.warnings.extend(f"feed_unavailable:{name}" for name in snapshot.failed_feeds)

            modules = run_modules(snapshot, cfg, now=now, logger=logger)
            analysis = aggregate(symbol, modules, cfg, time=now.isoformat(), logger=logger)
            result.analysis = analysis
            result.decisions.append(
                {
                    "bias": analysis.bias,
                    "decision": analysis.decision,
                    "scores": dict(analysis.scores),
                    "coverage": analysis.coverage,
                    "reasons": list(analysis.reasons),
                }
            )
            self.journal.append("analysis", analysis_to_dict(analysis))

            recent = self._recent_with(analysis, cfg)
            if not dry_run:
                self.analyses.insert(analysis)

            if price is None:
                result.warnings.append("price_unavailable")
                return self._finish_cycle(result, started, status="no_price")

            status = await asyncio.shield(
                self._act(cfg, analysis, recent, price, now, dry_run=dry_run, result=result, logger=logger)
            )
            return self._finish_cycle(result, started, status=status)

        except ConfigInvalid as exc:
            logger.error("config_invalid", problems=exc.problems)
            self.journal.append("error", {"symbol": symbol, "error": str(exc)})
            return self._finish_cycle(result, started, status="config_invalid")
        except DuplicateAnalysis as exc:
            logger.warning("duplicate_analysis", error=str(exc))
            result.warnings.append("duplicate_analysis")
            return self._finish_cycle(result, started, status="duplicate_analysis")
        except Exception as exc:  # noqa: BLE001 - top-level guard, one symbol never blocks the others.
            logger.exception("pipeline_failed", error=str(exc))
            self.journal.append("error", {"symbol": symbol, "error": str(exc)})
            return self._finish_cycle(result, started, status="failed")

    def _recent_with(self, analysis: Analysis, cfg: CoinConfig) -> list[Analysis]:
        """``analysis`` followed by stored history, newest first."""
        limit = max(cfg.strategy.entry.lookback, cfg.strategy.exits.opposite_count_exit, 1)
        history = self.analyses.recent(analysis.symbol, limit)
        return [analysis, *history][:limit]

    async def _act(
        self,
        cfg: CoinConfig,
        analysis: Analysis,
        recent: Sequence[Analysis],
        price: float,
        now: datetime,
        *,
        dry_run: bool,
        result: CycleResult,
        logger: structlog.stdlib.BoundLogger,
    ) -> str:
        managed = False
        for position in self.positions.find_open(cfg.symbol):
            managed = True
            await self._manage_position(
                position.id, cfg, analysis, recent, price, now, dry_run=dry_run, result=result, logger=logger
            )
        status = await self._try_entry(cfg, analysis, recent, price, now, dry_run=dry_run, result=result, logger=logger)
        if status == "no_entry" and managed:
            return "position_managed"
        return status

    # ---- exits ----

    async def _manage_position(
        self,
        position_id: str,
        cfg: CoinConfig,
        analysis: Analysis,
        recent: Sequence[Analysis],
        price: float,
        now: datetime,
        *,
        dry_run: bool,
        result: CycleResult,
        logger: structlog.stdlib.BoundLogger,
    ) -> None:
        lock = self._position_locks.setdefault(position_id, asyncio.Lock())
        async with lock:
            add_sent = False
            for attempt in range(2):
                position = self.positions.get(position_id)
                if position is None or not position.is_open:
                    return
                outcome = self._exits.evaluate(
                    position, cfg, price=price, analysis=analysis, recent=recent, now=now
                )
                if not outcome.mutated:
                    return
                if dry_run:
                    result.decisions.append(_exit_decision(position, outcome, dry_run=True))
                    return

                # a retry re-derives the same add from fresh state; it was already filled
                if outcome.add is not None and not add_sent:
                    if not await self._send_add(position, outcome.add, result=result, logger=logger):
                        return
                    add_sent = True

                if outcome.closed:
                    order = await self._send_close(position, price, outcome.reason or "", result=result, logger=logger)
                    if order is None:
                        return
                    await self._persist_close(position, outcome, order, now, result=result, logger=logger)
                    return

                try:
                    self.positions.save(position)
                except ConcurrencyConflict:
                    if attempt == 0:
                        logger.warning("position_conflict_retry", position_id=position_id)
                        continue
                    raise
                for fill in outcome.tp_fills:
                    result.orders.append(
                        {
                            "action": "tp_fill",
                            "position_id": position.id,
                            "symbol": position.symbol,
                            "qty": fill.qty,
                            "price": fill.price,
                            "pnl": fill.pnl,
                            "status": "filled",
                            "timestamp": fill.time,
                        }
                    )
                result.decisions.append(_exit_decision(position, outcome, dry_run=False))
                self.journal.append("position_update", position_to_dict(position))
                return

    async def _send_add(
        self,
        position: Position,
        record: AddRecord,
        *,
        result: CycleResult,
        logger: structlog.stdlib.BoundLogger,
    ) -> bool:
        """Place a DCA order; on rejection the cycle's in-memory changes are dropped."""
        try:
            order = await asyncio.to_thread(self._gateway.add, position, record.qty, record.price)
        except ExternalExecutionFailure as exc:
            logger.error("add_failed", position_id=position.id, qty=record.qty, error=str(exc))
            self.journal.append(
                "error", {"symbol": position.symbol, "position_id": position.id, "error": f"add_failed: {exc}"}
            )
            result.warnings.append("add_failed")
            return False
        result.orders.append(order)
        self.journal.append("order", order)
        return True

    async def _send_close(
        self,
        position: Position,
        price: float,
        reason: str,
        *,
        result: CycleResult,
        logger: structlog.stdlib.BoundLogger,
    ) -> dict[str, Any] | None:
        try:
            return await asyncio.to_thread(self._gateway.close, position, price, reason)
        except ExternalExecutionFailure as exc:
            logger.error("close_failed", position_id=position.id, reason=reason, error=str(exc))
            self.journal.append(
                "error", {"symbol": position.symbol, "position_id": position.id, "error": f"close_failed: {exc}"}
            )
            result.warnings.append("close_failed")
            await asyncio.to_thread(
                self._notifier.alert, "close_failed", symbol=position.symbol, position_id=position.id, error=str(exc)
            )
            return None

    async def _persist_close(
        self,
        position: Position,
        outcome: ExitOutcome,
        order: dict[str, Any],
        now: datetime,
        *,
        result: CycleResult,
        logger: structlog.stdlib.BoundLogger,
    ) -> None:
        """Store a close whose order already went out; a stale write re-applies the close to fresh state."""
        try:
            self.positions.save(position)
        except ConcurrencyConflict:
            logger.warning("position_conflict_retry", position_id=position.id)
            fresh = self.positions.get(position.id)
            if fresh is None or not fresh.is_open:
                logger.warning("position_closed_elsewhere", position_id=position.id)
                return
            close_position(
                fresh, position.exit_price or 0.0, outcome.closed_by or "SYSTEM", outcome.reason or "", now
            )
            position = self.positions.save(fresh)

        result.orders.append(order)
        result.decisions.append(_exit_decision(position, outcome, dry_run=False))
        self.journal.append("order", order)
        self.journal.append("position_closed", position_to_dict(position))
        self.cooldowns.mark(position.symbol, now)
        self._position_locks.pop(position.id, None)
        await asyncio.to_thread(self._notifier.position_closed, position)

    # ---- entries ----

    async def _try_entry(
        self,
        cfg: CoinConfig,
        analysis: Analysis,
        recent: Sequence[Analysis],
        price: float,
        now: datetime,
        *,
        dry_run: bool,
        result: CycleResult,
        logger: structlog.stdlib.BoundLogger,
    ) -> str:
        async with self._open_lock:
            check = self._entry.check(
                analysis,
                cfg,
                has_open_position=bool(self.positions.find_open(cfg.symbol)),
                recent=recent,
                open_count=self.positions.count_open(),
                now=now,
            )
            self.journal.append(
                "entry_check",
                {"symbol": cfg.symbol, "allowed": check.allowed, "side": check.side, "reasons": check.reasons},
            )
            if not check.allowed or check.side is None:
                return "no_entry"

            position = self._entry.build_position(analysis, cfg, check.side, entry_price=price, now=now)
            if position is None:
                result.warnings.append("entry_unbuildable")
                return "risk_rejected"

            if dry_run:
                order = {
                    "action": "open",
                    "position_id": position.id,
                    "symbol": position.symbol,
                    "side": position.side,
                    "qty": position.size,
                    "price": price,
                    "stop_loss": position.stop_price,
                    "take_profits": [tp.price for tp in position.take_profits],
                    "status": "dry_run",
                    "timestamp": now.isoformat(),
                }
                result.orders.append(order)
                return "opened_dry_run"

            try:
                order = await asyncio.to_thread(self._gateway.open, position, price)
            except ExternalExecutionFailure as exc:
                self.cooldowns.mark(cfg.symbol, now)
                log_risk_event(
                    logger, event_type="entry_failed", action="cooldown", symbol=cfg.symbol, error=str(exc)
                )
                self.journal.append("error", {"symbol": cfg.symbol, "error": f"entry_failed: {exc}"})
                result.warnings.append("entry_failed")
                return "entry_failed"

            self.positions.create(position)

        result.orders.append(order)
        self.journal.append("order", order)
        log_position_event(
            logger,
            symbol=position.symbol,
            event="opened",
            side=position.side,
            price=position.entry_price,
            qty=position.size,
            stop_price=position.stop_price,
            position_id=position.id,
        )
        await asyncio.to_thread(self._notifier.position_opened, position)
        return "opened"

    # ---- manual operations ----

    async def close_manually(self, position_id: str, *, price: float | None = None, now: datetime | None = None) -> Position:
        """Close an OPEN position at ``price`` (last price when omitted) with ``Manually``."""
        now = now or datetime.now(timezone.utc)
        lock = self._position_locks.setdefault(position_id, asyncio.Lock())
        async with lock:
            position = self._require_open(position_id)
            if price is None:
                price = await asyncio.to_thread(self._source.fetch_last_price, position.symbol)
            close_position(position, price, "Manually", "MANUAL_CLOSE", now)
            result = CycleResult(symbol=position.symbol, status="manual_close")
            order = await self._send_close(position, price, "MANUAL_CLOSE", result=result, logger=self._logger)
            if order is None:
                raise ExternalExecutionFailure(f"close_failed: {position_id}")
            outcome = ExitOutcome(closed=True, closed_by="Manually", reason="MANUAL_CLOSE")
            await self._persist_close(position, outcome, order, now, result=result, logger=self._logger)
            return position

    async def cancel(self, position_id: str, *, now: datetime | None = None) -> Position:
        """Cancel an OPEN position that has no fills yet."""
        now = now or datetime.now(timezone.utc)
        lock = self._position_locks.setdefault(position_id, asyncio.Lock())
        async with lock:
            position = self._require_open(position_id)
            cancel_position(position, now)
            order = await asyncio.to_thread(self._gateway.cancel, position)
            self.positions.save(position)
            self.journal.append("order", order)
            self.journal.append("position_closed", position_to_dict(position))
            self._position_locks.pop(position_id, None)
            return position

    def _require_open(self, position_id: str) -> Position:
        position = self.positions.get(position_id)
        if position is None:
            raise PositionStateError(f"position_not_found: {position_id}")
        if not position.is_open:
            raise PositionStateError(f"position_not_open: {position_id} is {position.status}")
        return position

    def _finish_cycle(self, result: CycleResult, started: float, *, status: str) -> CycleResult:
        elapsed_ms = (perf_counter() - started) * 1000
        result.status = status
        result.elapsed_ms = elapsed_ms
        self.journal.append("cycle_end", {"symbol": result.symbol, "status": status, "elapsed_ms": elapsed_ms})
        return result


def _exit_decision(position: Position, outcome: ExitOutcome, *, dry_run: bool) -> dict[str, object]:
    return {
        "position_id": position.id,
        "closed": outcome.closed,
        "closed_by": outcome.closed_by,
        "reason": outcome.reason,
        "tp_fills": len(outcome.tp_fills),
        "add_qty": None if outcome.add is None else outcome.add.qty,
        "adjustments": [adj.type for adj in outcome.adjustments],
        "dry_run": dry_run,
    }


def _task_outcome(task: asyncio.Task[CycleResult]) -> CycleResult | BaseException:
    if task.cancelled():
        return asyncio.CancelledError()
    exc = task.exception()
    return exc if exc is not None else task.result()


def _as_cycle_result(symbol: str, outcome: CycleResult | BaseException) -> CycleResult:
    if isinstance(outcome, CycleResult):
        return outcome
    if isinstance(outcome, asyncio.CancelledError):
        return CycleResult(symbol=symbol, status="cancelled")
    return CycleResult(symbol=symbol, status="failed", warnings=[str(outcome)])


def run_once(settings: Settings, *, dry_run: bool) -> list[CycleResult]:
    """Run a single tick over every active symbol."""
    return asyncio.run(TradingEngine(settings).run_tick(dry_run=dry_run))


def run_loop(settings: Settings, *, interval_min: int, dry_run: bool) -> None:
    """Tick forever every ``interval_min`` minutes."""
    asyncio.run(TradingEngine(settings).run_forever(interval_min * 60, dry_run=dry_run))


def close_position_manually(settings: Settings, position_id: str, *, price: float | None = None) -> Position:
    return asyncio.run(TradingEngine(settings).close_manually(position_id, price=price))


def cancel_position_by_id(settings: Settings, position_id: str) -> Position:
    return asyncio.run(TradingEngine(settings).cancel(position_id))
