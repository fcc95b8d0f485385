#!/usr/bin/env python
"""Open orders CLI: list open orders and the live position for a symbol.

Usage:
    python scripts/check_orders.py IDUSDT
    python scripts/check_orders.py ID/USDT --testnet --cancel-all
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


def print_orders(orders):
    if not orders:
        print("No open orders")
        return

    print(f"\n{'Order ID':<38} {'Side':<6} {'Type':<8} {'Qty':<12} {'Price':<14} {'Trigger':<14} {'Reduce':<7} {'Status':<12}")
    print("-" * 115)
    for order in orders:
        print(
            f"{order.get('orderId', ''):<38} "
            f"{order.get('side', ''):<6} "
            f"{order.get('orderType', ''):<8} "
            f"{order.get('qty', ''):<12} "
            f"{order.get('price', ''):<14} "
            f"{order.get('triggerPrice', '') or '-':<14} "
            f"{str(order.get('reduceOnly', '')):<7} "
            f"{order.get('orderStatus', ''):<12}"
        )


async def check_orders(exchange, symbol, cancel_all=False):
    info = await exchange.get_position(symbol)
    if info is None:
        print(f"No open position for {symbol}")
    else:
        print(f"Position: {info.side} {info.size} {info.symbol} @ {info.entry_price} (mark {info.mark_price}, uPnL {info.unrealised_pnl}, leverage {info.leverage})")

    orders = await exchange.list_open_orders(symbol)
    print_orders(orders)

    if cancel_all and orders:
        for order in orders:
            await exchange.cancel_order(symbol, order["orderId"])
        print(f"\nCancelled {len(orders)} order(s)")
    return orders


async def run(args):
    creds = load_credentials(args.config)
    dispatcher = RequestDispatcher()
    async with BybitAdapter(creds.api_key, creds.api_secret, dispatcher=dispatcher, testnet=args.testnet) as exchange:
        try:
            await check_orders(exchange, args.symbol, cancel_all=args.cancel_all)
        finally:
            await dispatcher.close()


def main():
    parser = argparse.ArgumentParser(description="List open Bybit orders for a symbol")
    parser.add_argument("symbol", help="Symbol or pair, e.g. IDUSDT or ID/USDT")
    parser.add_argument("--testnet", action="store_true", help="Use Bybit testnet")
    parser.add_argument("--config", default=None, help="Credentials file (default: BYBIT_CONFIG_PATH or ~/.bybit_config.json)")
    parser.add_argument("--cancel-all", action="store_true", help="Cancel every listed order")

    args = parser.parse_args()

    try:
        asyncio.run(run(args))
    except ValueError as e:
        print(f"Configuration error: {e}")
        sys.exit(2)
    except BybitAPIError as e:
        logger.error(f"Failed to check orders | symbol={args.symbol} error={e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
