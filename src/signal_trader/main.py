"""CLI 入口模块 - Signal Trader 命令行接口。"""

import sys
from datetime import datetime
from pathlib import Path

import click
import structlog

from signal_trader import __version__
from signal_trader.config import Settings, get_settings
from signal_trader.errors import ConfigInvalid, ExternalExecutionFailure, PositionStateError
from signal_trader.journal.repositories import CoinConfigStore, PositionStore
from signal_trader.pipeline import cancel_position_by_id, close_position_manually, run_loop, run_once
from signal_trader.utils.logging import get_logger, setup_logging


def _prepare(logger_name: str = "signal_trader.main") -> tuple[Settings, structlog.stdlib.BoundLogger]:
    """初始化日志与目录，实盘模式下校验必要配置。"""
    setup_logging()
    logger = get_logger(logger_name)
    settings = get_settings()

    # 确保目录存在
    settings.ensure_directories()

    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            logger.error(
                "missing_required_config",
                missing_keys=missing,
                hint="请在 .env 文件中配置必要的 API 密钥",
            )
            sys.exit(1)
    return settings, logger


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Signal Trader - 多模块打分的加密货币合约信号与持仓管理引擎。

    按交易对的 CoinConfig 运行各分析模块，聚合为 LONG/SHORT/NEUTRAL 决策，
    再由入场与出场规则管理持仓。
    """
    if version:
        click.echo(f"signal-trader version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，只计算分析与决策，不下单也不改动持仓",
)
def once(dry_run: bool) -> None:
    """对所有启用的交易对执行一次评估。

    拉取数据 → 模块打分 → 聚合决策 → 出场/入场规则 → 执行/记录
    """
    settings, logger = _prepare()

    logger.info(
        "starting_single_run",
        mode=settings.mode.value,
        dry_run=dry_run,
        timestamp=datetime.now().isoformat(),
    )

    try:
        results = run_once(settings, dry_run=dry_run)
        for result in results:
            logger.info(
                "run_completed",
                symbol=result.symbol,
                status=result.status,
                elapsed_ms=round(result.elapsed_ms, 2),
                decisions=len(result.decisions),
                orders=len(result.orders),
                warnings=result.warnings,
            )
        if not results:
            logger.warning("no_active_symbols", coin_config_dir=str(settings.coin_config_dir))

    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("run_failed", error=str(e))
        sys.exit(1)


@cli.command()
@click.option(
    "--interval-min",
    "-i",
    type=int,
    default=None,
    help="循环间隔（分钟），默认取 TICK_INTERVAL_MIN",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，只计算分析与决策，不下单也不改动持仓",
)
def loop(interval_min: int | None, dry_run: bool) -> None:
    """按固定间隔持续评估。

    上一轮仍未完成的交易对评估会在下一轮开始时被取消。
    使用 Ctrl+C 停止。
    """
    settings, logger = _prepare()
    interval = interval_min or settings.tick_interval_min

    logger.info(
        "starting_loop",
        mode=settings.mode.value,
        interval_min=interval,
        dry_run=dry_run,
    )

    try:
        run_loop(settings, interval_min=interval, dry_run=dry_run)
    except KeyboardInterrupt:
        logger.info("loop_stopped", message="User stopped loop")
        sys.exit(0)


@cli.command()
def status() -> None:
    """显示系统状态、配置摘要与当前持仓。"""
    setup_logging()
    settings = get_settings()

    click.echo("=" * 50)
    click.echo("Signal Trader - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo()

    # API 配置状态
    click.echo("[API Configuration]")
    binance_status = "[OK] Configured" if settings.binance_api_key else "[--] Not configured"
    telegram_status = "[OK] Configured" if settings.telegram_configured else "[--] Not configured"
    click.echo(f"   Binance API: {binance_status}")
    click.echo(f"   Binance Testnet: {'Yes' if settings.binance_testnet else 'No'}")
    click.echo(f"   Telegram: {telegram_status}")
    click.echo()

    # 调度参数
    click.echo("[Engine]")
    click.echo(f"   Tick interval: {settings.tick_interval_min} min")
    click.echo(f"   Fetch timeout: {settings.http_timeout_sec}s")
    click.echo(f"   Evaluation timeout: {settings.evaluation_timeout_sec}s")
    click.echo(f"   Paper slippage: {settings.paper_slippage_bps} bps")
    click.echo(f"   Close retries: {settings.close_retry_attempts}")
    click.echo()

    # 交易对
    click.echo("[Symbols]")
    configs = CoinConfigStore(settings.coin_config_dir)
    symbols = settings.symbol_list or [cfg.symbol for cfg in configs.list_active()]
    click.echo(f"   Active: {', '.join(symbols) if symbols else '-'}")
    click.echo(f"   Config dir: {settings.coin_config_dir}")
    click.echo()

    # 持仓
    click.echo("[Open Positions]")
    open_positions = PositionStore(settings.state_dir).find_open()
    if not open_positions:
        click.echo("   (none)")
    for position in open_positions:
        click.echo(
            f"   {position.id[:8]} {position.symbol} {position.side} "
            f"entry={position.entry_price:.4f} size={position.size:.6f} stop={position.stop_price:.4f}"
        )
    click.echo()

    # 日志配置
    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   State dir: {settings.state_dir}")
    click.echo()

    # 验证状态
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not require full API configuration")

    click.echo()
    click.echo("=" * 50)


@cli.command()
def check() -> None:
    """检查系统依赖和配置目录。"""
    setup_logging()
    logger = get_logger("signal_trader.main")
    settings = get_settings()

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("httpx", "Telegram notifications"),
        ("pandas", "Data processing"),
        ("numpy", "Numerical computing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
        ("binance", "Binance market data"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    # 检查配置文件
    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    config_count = len(CoinConfigStore(settings.coin_config_dir).symbols())
    if config_count:
        click.echo(f"  [OK] {config_count} coin config(s) in {settings.coin_config_dir}")
    else:
        click.echo(f"  [WARN] no coin configs in {settings.coin_config_dir}")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok, coin_configs=config_count)


@cli.command("validate-config")
@click.argument("symbol", required=False)
def validate_config(symbol: str | None) -> None:
    """校验 CoinConfig 文件；不指定 SYMBOL 时校验目录下全部文件。"""
    setup_logging()
    settings = get_settings()
    store = CoinConfigStore(settings.coin_config_dir)
    symbols = [symbol.upper()] if symbol else store.symbols()

    if not symbols:
        click.echo(f"[WARN] no coin configs in {settings.coin_config_dir}")
        return

    failed = 0
    for sym in symbols:
        try:
            cfg = store.get(sym)
        except ConfigInvalid as exc:
            failed += 1
            click.echo(f"  [INVALID] {sym}")
            for problem in exc.problems:
                click.echo(f"      - {problem}")
            continue
        state = "active" if cfg.is_active else "inactive"
        click.echo(f"  [OK] {sym} ({state}, modules: {', '.join(m.value for m in cfg.analysis_config.configured_modules)})")

    if failed:
        sys.exit(1)


@cli.command("close-position")
@click.argument("position_id")
@click.option("--price", type=float, default=None, help="平仓价格，默认取最新成交价")
def close_position_cmd(position_id: str, price: float | None) -> None:
    """手动平仓（closedBy=Manually）。"""
    settings, logger = _prepare()
    try:
        position = close_position_manually(settings, position_id, price=price)
    except (PositionStateError, ExternalExecutionFailure) as exc:
        logger.error("manual_close_failed", position_id=position_id, error=str(exc))
        sys.exit(1)
    click.echo(f"[OK] closed {position.id} {position.symbol} pnl={position.final_pnl or 0.0:.4f}")


@cli.command("cancel-position")
@click.argument("position_id")
def cancel_position_cmd(position_id: str) -> None:
    """撤销尚无任何成交的持仓。"""
    settings, logger = _prepare()
    try:
        position = cancel_position_by_id(settings, position_id)
    except (PositionStateError, ExternalExecutionFailure) as exc:
        logger.error("cancel_failed", position_id=position_id, error=str(exc))
        sys.exit(1)
    click.echo(f"[OK] cancelled {position.id} {position.symbol}")


# 支持 python -m signal_trader.main 调用
if __name__ == "__main__":
    cli()
