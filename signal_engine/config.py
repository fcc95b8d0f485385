"""Configuration loader for the execution engine.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Optional

import yaml

from .execution import TakeProfitPolicy


@dataclass
class ExchangeConfig:
    """Bybit exchange settings."""
    testnet: bool = False
    base_url: Optional[str] = None
    category: str = "linear"
    settle_coin: str = "USDT"
    recv_window: int = 5000
    timeout: int = 10


@dataclass
class DispatcherConfig:
    """Outbound request spacing (10 req/sec ceiling)."""
    min_interval: float = 0.1


@dataclass
class ExecutionConfig:
    """Trade execution parameters."""
    max_leverage: int = 20
    settle_delay: float = 3.0  # seconds to wait before confirming the fill
    stop_loss_attempts: int = 3
    stop_loss_retry_delay: float = 1.0  # multiplied by the attempt number
    take_profit_policy: str = TakeProfitPolicy.FATAL.value


@dataclass
class MonitorConfig:
    """Position monitoring poll."""
    interval: float = 10.0
    cleanup_every: int = 10  # cycles between automatic cleanups
    max_age_hours: float = 24.0

    @property
    def max_age(self) -> timedelta:
        return timedelta(hours=self.max_age_hours)


@dataclass
class BotConfig:
    """Portfolio risk settings."""
    risk_percentage: Decimal = Decimal('10')  # percent of balance risked per trade
    max_concurrent_trades: int = 5


@dataclass
class LoggingConfig:
    log_file: str = "logs/engine.log"
    log_level: str = "INFO"
    enable_console: bool = True


@dataclass
class EngineConfig:
    """Complete engine configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    bot: BotConfig = field(default_factory=BotConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ValueError on settings the engine cannot run with."""
        if not Decimal(0) < self.bot.risk_percentage <= Decimal(100):
            raise ValueError(f"risk_percentage must be in (0, 100], got {self.bot.risk_percentage}")
        if self.bot.max_concurrent_trades < 1:
            raise ValueError("max_concurrent_trades must be >= 1")
        if self.execution.max_leverage < 1:
            raise ValueError("max_leverage must be >= 1")
        if self.execution.stop_loss_attempts < 1:
            raise ValueError("stop_loss_attempts must be >= 1")
        if self.dispatcher.min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        if self.monitor.interval <= 0:
            raise ValueError("monitor interval must be > 0")
        # raises ValueError for unknown policies
        TakeProfitPolicy(self.execution.take_profit_policy)

    @classmethod
    def from_yaml(cls, config_path: str) -> "EngineConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            EngineConfig instance

        Example YAML:
            exchange:
              testnet: true
            bot:
              risk_percentage: 1
              max_concurrent_trades: 3
            execution:
              take_profit_policy: fatal
            logging:
              log_file: "${LOG_DIR}/engine.log"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}

        bot = data.get("bot", {})
        if "risk_percentage" in bot:
            bot = {**bot, "risk_percentage": Decimal(str(bot["risk_percentage"]))}

        return cls(
            exchange=ExchangeConfig(**data.get("exchange", {})),
            dispatcher=DispatcherConfig(**data.get("dispatcher", {})),
            execution=ExecutionConfig(**data.get("execution", {})),
            monitor=MonitorConfig(**data.get("monitor", {})),
            bot=BotConfig(**bot),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = asdict(self)
        data["bot"]["risk_percentage"] = str(self.bot.risk_percentage)

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
