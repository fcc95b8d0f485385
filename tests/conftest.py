"""Shared fixtures: an in-memory exchange and sample signals."""
from decimal import Decimal

import pytest

from signal_engine.execution import ExchangeAdapter
from signal_engine.models import (
    AccountBalance,
    Direction,
    OrderResponse,
    ParsedSignal,
    PositionInfo,
    TakeProfitLevel,
    normalize_symbol,
)


class FakeExchange(ExchangeAdapter):
    """In-memory exchange.

    ``failures[name]`` makes method ``name`` raise: an exception instance
    raises on every call, a list is consumed one entry per call (``None``
    entries succeed).
    """

    def __init__(self):
        self.connected = True
        self.balance = AccountBalance(coin="USDT", wallet_balance=Decimal("1000"), available_balance=Decimal("1000"))
        self.mark_price = Decimal("100")
        self.fill_orders = True
        self.live = {}
        self.open_orders = {}
        self.failures = {}
        self.market_orders = []
        self.stop_losses = []
        self.leverage_calls = []
        self.take_profit_calls = []
        self.cancelled = []
        self.stop_loss_cancels = []
        self.next_id = 1

    def _gen(self):
        oid = f"o{self.next_id}"
        self.next_id += 1
        return oid

    def _check(self, name):
        entry = self.failures.get(name)
        if isinstance(entry, list):
            if entry:
                exc = entry.pop(0)
                if exc is not None:
                    raise exc
        elif entry is not None:
            raise entry

    def set_live(self, symbol, size, mark_price, pnl=Decimal("0")):
        symbol = normalize_symbol(symbol)
        self.live[symbol] = PositionInfo(
            symbol=symbol,
            side="Buy",
            size=Decimal(size),
            entry_price=Decimal("100"),
            mark_price=Decimal(mark_price),
            unrealised_pnl=Decimal(pnl),
            leverage=Decimal("20"),
        )

    async def test_connection(self):
        return self.connected

    async def get_wallet_balance(self, coin=None):
        self._check("get_wallet_balance")
        return self.balance

    async def get_position(self, symbol):
        self._check("get_position")
        return self.live.get(normalize_symbol(symbol))

    async def get_mark_price(self, symbol):
        self._check("get_mark_price")
        return self.mark_price

    async def set_leverage(self, symbol, leverage):
        self._check("set_leverage")
        self.leverage_calls.append((symbol, leverage))

    async def place_market_order(self, symbol, side, qty, *, reduce_only=False):
        self._check("place_market_order")
        order = OrderResponse(order_id=self._gen(), symbol=symbol, side=side, order_type="Market", qty=Decimal(qty))
        self.market_orders.append({"symbol": symbol, "side": side, "qty": Decimal(qty), "reduce_only": reduce_only})

        key = normalize_symbol(symbol)
        if reduce_only:
            live = self.live.get(key)
            if live is not None:
                remaining = live.size - Decimal(qty)
                if remaining > 0:
                    live.size = remaining
                else:
                    del self.live[key]
        elif self.fill_orders:
            self.live[key] = PositionInfo(
                symbol=key,
                side=side,
                size=Decimal(qty),
                entry_price=self.mark_price,
                mark_price=self.mark_price,
                unrealised_pnl=Decimal("0"),
                leverage=Decimal("20"),
            )
        return order

    async def set_stop_loss(self, symbol, direction, price):
        self._check("set_stop_loss")
        self.stop_losses.append((symbol, direction, price))

    async def cancel_stop_loss(self, symbol):
        self._check("cancel_stop_loss")
        self.stop_loss_cancels.append(symbol)
        return 1

    async def set_take_profits(self, symbol, direction, take_profits, size):
        self._check("set_take_profits")
        self.take_profit_calls.append((symbol, direction, tuple(take_profits), size))
        orders = []
        for tp in take_profits:
            oid = self._gen()
            self.open_orders.setdefault(symbol, []).append({"orderId": oid, "price": str(tp.price)})
            orders.append(OrderResponse(order_id=oid, symbol=symbol, side=direction.closing_side, order_type="Limit", qty=size, price=tp.price))
        return orders

    async def list_open_orders(self, symbol):
        self._check("list_open_orders")
        return list(self.open_orders.get(symbol, []))

    async def cancel_order(self, symbol, order_id):
        self._check("cancel_order")
        self.cancelled.append(order_id)
        self.open_orders[symbol] = [o for o in self.open_orders.get(symbol, []) if o["orderId"] != order_id]


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def long_signal():
    """LONG 100 / stop 98 / TPs 102, 104, 106."""
    return ParsedSignal(
        pair="ID/USDT",
        direction=Direction.LONG,
        entry=Decimal("100"),
        stop_loss=Decimal("98"),
        take_profits=(
            TakeProfitLevel(1, Decimal("102")),
            TakeProfitLevel(2, Decimal("104")),
            TakeProfitLevel(3, Decimal("106")),
        ),
        confidence=85,
    )


@pytest.fixture
def short_signal():
    """SHORT 100 / stop 102 / TPs 98, 96."""
    return ParsedSignal(
        pair="OP/USDT",
        direction=Direction.SHORT,
        entry=Decimal("100"),
        stop_loss=Decimal("102"),
        take_profits=(
            TakeProfitLevel(1, Decimal("98")),
            TakeProfitLevel(2, Decimal("96")),
        ),
        confidence=70,
    )
