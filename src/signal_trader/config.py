"""配置加载模块 - 从环境变量和 .env 文件加载运行时配置。

每个交易对的策略参数（CoinConfig）不在这里，见 ``signal_trader.strategy.coin_config``。
"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunMode(str, Enum):
    """运行模式枚举。"""

    PAPER = "paper"  # 纸交易
    LIVE = "live"  # 实盘


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="运行模式: paper 或 live")

    # ==================== Binance API ====================
    binance_api_key: str = Field(default="", description="Binance API Key")
    binance_api_secret: str = Field(default="", description="Binance API Secret")
    binance_testnet: bool = Field(default=True, description="是否使用 Binance 测试网")

    # ==================== 调度与超时 ====================
    http_timeout_sec: float = Field(
        default=10.0,
        gt=0,
        le=60.0,
        description="单次外部数据请求超时（秒），超时视为拉取失败",
    )
    evaluation_timeout_sec: float = Field(
        default=45.0,
        gt=0,
        le=600.0,
        description="单个交易对一次评估的总超时（秒）",
    )
    tick_interval_min: int = Field(default=1, ge=1, le=240, description="评估周期（分钟）")
    symbols: str = Field(
        default="",
        description="逗号分隔的交易对列表；为空时使用所有 isActive 的 CoinConfig",
    )

    # ==================== 执行 ====================
    paper_slippage_bps: float = Field(
        default=2.0,
        ge=0.0,
        le=100.0,
        description="纸交易滑点（基点）",
    )
    close_retry_attempts: int = Field(
        default=4,
        ge=1,
        le=10,
        description="平仓/撤单失败时的最大重试次数",
    )

    # ==================== 通知 ====================
    telegram_bot_token: str = Field(default="", description="Telegram Bot Token")
    telegram_chat_id: str = Field(default="", description="Telegram Chat ID")

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 数据存储 ====================
    state_dir: Path = Field(
        default=Path("data/state"),
        description="分析结果、持仓与事件日志的存储目录",
    )
    coin_config_dir: Path = Field(
        default=Path("data/coin_configs"),
        description="每个交易对 CoinConfig JSON 文件所在目录",
    )

    @field_validator("state_dir", "coin_config_dir", mode="before")
    @classmethod
    def parse_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.coin_config_dir.mkdir(parents=True, exist_ok=True)

    @property
    def journal_dir(self) -> Path:
        """事件日志目录。"""
        return self.state_dir / "journal"

    @property
    def symbol_list(self) -> list[str]:
        """解析 symbols 字段。"""
        return [s.strip().upper() for s in self.symbols.split(",") if s.strip()]

    @property
    def is_paper_mode(self) -> bool:
        """是否为纸交易模式。"""
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        """是否为实盘模式。"""
        return self.mode == RunMode.LIVE

    @property
    def telegram_configured(self) -> bool:
        """Telegram 通知是否已配置。"""
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    def validate_for_live(self) -> list[str]:
        """验证实盘模式的必要配置，返回缺失项列表。"""
        missing = []
        if not self.binance_api_key:
            missing.append("BINANCE_API_KEY")
        if not self.binance_api_secret:
            missing.append("BINANCE_API_SECRET")
        if not self.telegram_configured:
            missing.append("TELEGRAM_BOT_TOKEN/TELEGRAM_CHAT_ID")
        return missing


# 全局配置实例（延迟初始化，仅供 CLI 入口使用）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置。"""
    global _settings
    _settings = Settings()
    return _settings
