#!/usr/bin/env python
"""Close position CLI: flatten a live Bybit position with a reduce-only market order.

Usage:
    python scripts/close_position.py IDUSDT
    python scripts/close_position.py ID/USDT --testnet --keep-stops
"""
import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signal_engine.bybit_adapter import BybitAdapter, BybitAPIError
from signal_engine.dispatcher import RequestDispatcher
from signal_engine.logging_setup import logger
from signal_engine.secrets import load_credentials


async def close_position(exchange, symbol, keep_stops=False):
    """Flatten ``symbol``. Returns True if an order was sent."""
    info = await exchange.get_position(symbol)
    if info is None:
        print(f"No open position for {symbol}")
        return False

    print(f"Open position: {info.side} {info.size} {info.symbol} @ {info.entry_price} (mark {info.mark_price}, uPnL {info.unrealised_pnl})")

    if not keep_stops:
        cancelled = await exchange.cancel_stop_loss(symbol)
        print(f"Cancelled {cancelled} stop-loss order(s)")

    order = await exchange.close_position(symbol)
    if order is None:
        print(f"Position for {symbol} closed before the order was sent")
        return False

    print(f"Close order sent: {order.order_id} ({order.side} {order.qty})")
    return True


async def run(args):
    creds = load_credentials(args.config)
    dispatcher = RequestDispatcher()
    async with BybitAdapter(creds.api_key, creds.api_secret, dispatcher=dispatcher, testnet=args.testnet) as exchange:
        try:
            return await close_position(exchange, args.symbol, keep_stops=args.keep_stops)
        finally:
            await dispatcher.close()


def main():
    parser = argparse.ArgumentParser(description="Close a Bybit position")
    parser.add_argument("symbol", help="Symbol or pair, e.g. IDUSDT or ID/USDT")
    parser.add_argument("--testnet", action="store_true", help="Use Bybit testnet")
    parser.add_argument("--config", default=None, help="Credentials file (default: BYBIT_CONFIG_PATH or ~/.bybit_config.json)")
    parser.add_argument("--keep-stops", action="store_true", help="Do not cancel stop-loss orders first")

    args = parser.parse_args()

    try:
        closed = asyncio.run(run(args))
    except ValueError as e:
        print(f"Configuration error: {e}")
        sys.exit(2)
    except BybitAPIError as e:
        logger.error(f"Failed to close position | symbol={args.symbol} error={e}")
        sys.exit(1)

    sys.exit(0 if closed else 1)


if __name__ == "__main__":
    main()
