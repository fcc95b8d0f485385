"""Run the trading bot and optionally submit one signal.

Shows:
1. Loading configuration and credentials
2. Wiring the bot against Bybit
3. Handing a signal to the bot
4. Monitoring positions until Ctrl-C

Usage:
    python examples/run_bot.py --config config.yaml
    python examples/run_bot.py --pair ID/USDT --direction LONG --entry 0.300 \
        --stop-loss 0.297 --tp 0.303 --tp 0.306
"""
import argparse
import asyncio
import sys
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from signal_engine.bot import TradingBot
from signal_engine.config import EngineConfig
from signal_engine.logging_setup import logger, setup_logging
from signal_engine.models import Direction, ParsedSignal, TakeProfitLevel
from signal_engine.secrets import load_credentials, mask_credentials


def build_signal(args):
    if not args.pair:
        return None
    return ParsedSignal(
        pair=args.pair,
        direction=Direction(args.direction.upper()),
        entry=Decimal(args.entry) if args.entry else None,
        stop_loss=Decimal(args.stop_loss),
        take_profits=tuple(TakeProfitLevel(i, Decimal(p)) for i, p in enumerate(args.tp, start=1)),
        confidence=args.confidence,
    )


async def main(args):
    config = EngineConfig.from_yaml(args.config) if args.config else EngineConfig()
    setup_logging(config.logging.log_file, config.logging.log_level, config.logging.enable_console)
    logger.info("=== Signal Execution Engine ===")

    try:
        creds = load_credentials()
    except ValueError as e:
        logger.error(f"Failed to load credentials: {e}")
        return
    logger.info(f"Credentials loaded | {mask_credentials(creds)}")

    bot = TradingBot.from_config(config, creds)
    await bot.start()

    try:
        signal = build_signal(args)
        if signal is not None:
            position = await bot.handle_signal(signal)
            if position is None:
                logger.warning("Signal was not executed")
            else:
                logger.info(f"Position opened | {position.to_dict()}")

        while True:
            await asyncio.sleep(60)
            logger.info(f"Status | {bot.get_status()}")
    finally:
        await bot.stop()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the signal execution bot")
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("--pair", default=None)
    parser.add_argument("--direction", default="LONG", choices=["LONG", "SHORT", "long", "short"])
    parser.add_argument("--entry", default=None, help="Entry price (omit for market)")
    parser.add_argument("--stop-loss", default=None)
    parser.add_argument("--tp", action="append", default=[], help="Take-profit price, repeat per level")
    parser.add_argument("--confidence", type=float, default=0.0)
    args = parser.parse_args()

    if args.pair and (not args.stop_loss or not args.tp):
        parser.error("--pair requires --stop-loss and at least one --tp")

    try:
        asyncio.run(main(args))
    except KeyboardInterrupt:
        pass
