"""结构化日志配置模块。

使用 structlog 提供结构化日志支持，支持 JSON 和控制台两种输出格式。
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from signal_trader.config import LogFormat, Settings, get_settings


def setup_logging(settings: Settings | None = None) -> None:
    """配置结构化日志系统。

    根据配置设置日志级别和输出格式。
    """
    settings = settings or get_settings()

    # 设置标准库日志级别
    log_level = getattr(logging, settings.log_level)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )
    # 第三方库的逐请求日志只在 DEBUG 下输出
    for noisy in ("httpx", "httpcore", "urllib3", "binance"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    # 共享处理器
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    # 根据格式选择渲染器
    if settings.log_format == LogFormat.JSON:
        # JSON 格式输出
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        # 控制台格式输出（带颜色）
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """获取结构化日志记录器。

    Args:
        name: 日志记录器名称。如果为 None，则使用调用模块名。

    Returns:
        结构化日志记录器实例。
    """
    return structlog.get_logger(name)


# 便捷日志函数
def log_module_result(
    logger: structlog.stdlib.BoundLogger,
    *,
    symbol: str,
    module: str,
    signal: str | None,
    strength: float | None,
    **kwargs: Any,
) -> None:
    """记录单个分析模块的输出（None 表示本周期不可用）。"""
    logger.debug(
        "module_result",
        symbol=symbol,
        module=module,
        available=signal is not None,
        signal=signal,
        strength=None if strength is None else round(strength, 2),
        **kwargs,
    )


def log_decision(
    logger: structlog.stdlib.BoundLogger,
    *,
    symbol: str,
    bias: str,
    decision: str,
    score_long: float,
    score_short: float,
    **kwargs: Any,
) -> None:
    """记录聚合后的交易决策。"""
    logger.info(
        "trade_decision",
        symbol=symbol,
        bias=bias,
        decision=decision,
        score_long=round(score_long, 2),
        score_short=round(score_short, 2),
        **kwargs,
    )


def log_position_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    symbol: str,
    event: str,
    side: str,
    price: float,
    **kwargs: Any,
) -> None:
    """记录持仓生命周期事件（开仓、止盈成交、移动止损、平仓）。"""
    logger.info(
        "position_event",
        symbol=symbol,
        position_event=event,
        side=side,
        price=price,
        **kwargs,
    )


def log_order_execution(
    logger: structlog.stdlib.BoundLogger,
    *,
    symbol: str,
    side: str,
    quantity: float,
    price: float | None = None,
    order_id: str | None = None,
    status: str = "submitted",
    **kwargs: Any,
) -> None:
    """记录订单执行。"""
    logger.info(
        "order_execution",
        symbol=symbol,
        side=side,
        quantity=quantity,
        price=price,
        order_id=order_id,
        status=status,
        **kwargs,
    )


def log_risk_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    """记录风控事件。"""
    logger.warning(
        "risk_event",
        event_type=event_type,
        action=action,
        **kwargs,
    )
