"""
Signal Execution Engine.

Turns validated trading signals into protected leveraged positions on Bybit
linear perpetuals and manages them until close:
- Risk-based position sizing with leverage and margin caps
- Multi-step trade execution (leverage, market entry, stop-loss, take-profit
  ladder) with rollback to flat on partial failure
- FIFO, rate-spaced dispatch of every outbound exchange request
- Position monitoring with take-profit driven stop-loss trailing (ratchet-only)
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    models: Signal, position and exchange-view data types
    dispatcher: Rate-spaced FIFO request dispatcher
    sizing: Position size and leverage calculation
    execution: Trade execution coordinator and rollback plan
    positions: Position registry, monitoring and stop-loss trailing
    bybit_adapter: Bybit v5 REST integration
    bot: Signal handling and portfolio risk gates
    config: Configuration loading and validation
    secrets: Credential management

Example:
    >>> from signal_engine.bot import TradingBot
    >>> from signal_engine.config import EngineConfig
    >>> from signal_engine.secrets import load_credentials
    >>>
    >>> bot = TradingBot.from_config(EngineConfig(), load_credentials())
    >>> await bot.start()
    >>> position = await bot.handle_signal(signal)
"""

__version__ = "0.1.0"
__all__ = [
    "models",
    "dispatcher",
    "sizing",
    "execution",
    "positions",
    "bybit_adapter",
    "bot",
    "config",
    "secrets",
    "logging_setup",
]
