import asyncio
import hashlib
import hmac
import json
import time
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlencode

import aiohttp

from .dispatcher import RequestDispatcher
from .execution import ExchangeAdapter
from .logging_setup import log_event, logger
from .models import (
    AccountBalance,
    Direction,
    OrderResponse,
    PositionInfo,
    TakeProfitLevel,
    normalize_symbol,
)

MAINNET_URL = "https://api.bybit.com"
TESTNET_URL = "https://api-testnet.bybit.com"

# retCodes meaning "the requested value is already set"
LEVERAGE_NOT_MODIFIED = 110043
NOT_MODIFIED = 34040
IDEMPOTENT_SUCCESS_CODES = frozenset({LEVERAGE_NOT_MODIFIED, NOT_MODIFIED})


class BybitAPIError(Exception):
    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class BybitConnectionError(BybitAPIError):
    """Raised when no result code could be obtained (network, timeout, HTTP)."""
    pass


class BybitRejectedError(BybitAPIError):
    """Raised for a non-zero, non-idempotent retCode."""
    pass


def check_response(envelope: Dict[str, Any]) -> Dict[str, Any]:
    """Unwrap a Bybit v5 JSON envelope.

    Returns the ``result`` payload on success. Idempotent-success codes are
    treated exactly like ``retCode == 0``.
    """
    ret_code = envelope.get("retCode", -1)
    if ret_code == 0:
        return envelope.get("result") or {}
    if ret_code in IDEMPOTENT_SUCCESS_CODES:
        logger.debug(f"Idempotent success | retCode={ret_code} retMsg={envelope.get('retMsg')}")
        return envelope.get("result") or {}
    msg = envelope.get("retMsg") or "Unknown Bybit error"
    raise BybitRejectedError(f"Bybit API error ({ret_code}): {msg[:200]}", ret_code)


def floor_qty(qty: Decimal) -> Decimal:
    """Floor a quantity to a whole contract unit."""
    return qty.to_integral_value(rounding=ROUND_FLOOR)


def split_ladder_qty(size: Decimal, levels: int) -> List[Decimal]:
    """Split ``size`` across ``levels`` take-profit orders in whole units.

    Each level gets ``floor(size / levels)``; the remainder goes on the last
    level so the orders cover the full position.
    """
    if levels <= 0:
        return []
    total = floor_qty(size)
    per_level = floor_qty(total / levels)
    allocations = [per_level] * levels
    allocations[-1] = total - per_level * (levels - 1)
    return allocations


class BybitAdapter(ExchangeAdapter):
    """Async Bybit v5 (linear perpetuals) adapter using aiohttp.

    Features:
    - HMAC-SHA256 request signing (X-BAPI-* headers).
    - Every request is routed through a shared RequestDispatcher, so calls
      from trade execution and position monitoring interleave FIFO under
      the exchange's requests-per-second ceiling.
    - "Already set" retCodes are remapped to success.

    Usage:
        async with BybitAdapter(key, secret, dispatcher=dispatcher) as exchange:
            await exchange.set_leverage("IDUSDT", 10)
    """

    def __init__(self, api_key: str, secret: str, *, dispatcher: RequestDispatcher, base_url: Optional[str] = None, testnet: bool = False, category: str = "linear", recv_window: int = 5000, timeout: int = 10, settle_coin: str = "USDT"):
        self.api_key = api_key
        self.secret = secret
        self.dispatcher = dispatcher
        self.base_url = (base_url or (TESTNET_URL if testnet else MAINNET_URL)).rstrip("/")
        self.testnet = testnet
        self.category = category
        self.recv_window = recv_window
        self.timeout = timeout
        self.settle_coin = settle_coin
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None

    def _sign(self, timestamp: str, payload: str) -> Dict[str, str]:
        message = timestamp + self.api_key + str(self.recv_window) + payload
        signature = hmac.new(self.secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
        return {
            "Content-Type": "application/json",
            "X-BAPI-API-KEY": self.api_key,
            "X-BAPI-SIGN": signature,
            "X-BAPI-SIGN-TYPE": "2",
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-RECV-WINDOW": str(self.recv_window),
        }

    async def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Queue a signed request on the dispatcher and return the unwrapped result."""
        params = params or {}
        return await self.dispatcher.enqueue(lambda: self._send(method, path, params))

    async def _send(self, method: str, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        envelope = await self._http(method, path, params)
        return check_response(envelope)

    async def _http(self, method: str, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Perform one signed HTTP call and return the parsed JSON envelope."""
        if not self.session:
            raise BybitConnectionError("Session not initialized; use 'async with' context manager")

        request_path = path if path.startswith("/") else f"/{path}"
        url = f"{self.base_url}{request_path}"
        timestamp = str(int(time.time() * 1000))

        if method == "GET":
            payload = urlencode({k: str(v) for k, v in params.items()})
            body = None
            if payload:
                url = f"{url}?{payload}"
        else:
            payload = json.dumps(params)
            body = payload
        headers = self._sign(timestamp, payload)

        try:
            async with self.session.request(method, url, headers=headers, data=body, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                text = await resp.text()
                if not (200 <= resp.status < 300):
                    raise BybitConnectionError(f"{resp.status}: {text[:200]}")
                try:
                    return json.loads(text)
                except ValueError:
                    raise BybitConnectionError(f"Failed to parse Bybit API response: {text[:200]}")
        except aiohttp.ClientError as e:
            raise BybitConnectionError(f"Request failed: {e}")
        except asyncio.TimeoutError as e:
            raise BybitConnectionError(f"Request timeout: {e}")

    async def get_server_time(self) -> int:
        res = await self._request("GET", "/v5/market/time")
        return int(res.get("timeSecond", 0))

    async def test_connection(self) -> bool:
        """Health check against the public time endpoint."""
        try:
            await self.get_server_time()
            return True
        except BybitAPIError as e:
            logger.error(f"Bybit connection test failed | error={e}")
            return False

    async def get_wallet_balance(self, coin: Optional[str] = None) -> AccountBalance:
        coin = coin or self.settle_coin
        res = await self._request("GET", "/v5/account/wallet-balance", {"accountType": "UNIFIED", "coin": coin})
        accounts = res.get("list") or [{}]
        for entry in accounts[0].get("coin") or []:
            if entry.get("coin") == coin:
                available = entry.get("availableToWithdraw") or entry.get("availableBalance") or entry.get("walletBalance") or "0"
                return AccountBalance(
                    coin=coin,
                    wallet_balance=Decimal(entry.get("walletBalance") or "0"),
                    available_balance=Decimal(available),
                )
        raise BybitAPIError(f"Balance not found for coin: {coin}")

    async def get_position(self, symbol: str) -> Optional[PositionInfo]:
        """Return the live position for ``symbol`` or None if flat."""
        exchange_symbol = normalize_symbol(symbol)
        res = await self._request("GET", "/v5/position/list", {"category": self.category, "symbol": exchange_symbol})
        for p in res.get("list") or []:
            size = Decimal(p.get("size") or "0")
            if p.get("symbol") == exchange_symbol and size > 0:
                return PositionInfo(
                    symbol=p["symbol"],
                    side=p.get("side", ""),
                    size=size,
                    entry_price=Decimal(p.get("avgPrice") or "0"),
                    mark_price=Decimal(p.get("markPrice") or "0"),
                    unrealised_pnl=Decimal(p.get("unrealisedPnl") or "0"),
                    leverage=Decimal(p.get("leverage") or "0"),
                    position_status=p.get("positionStatus", ""),
                )
        return None

    async def get_mark_price(self, symbol: str) -> Decimal:
        exchange_symbol = normalize_symbol(symbol)
        res = await self._request("GET", "/v5/market/tickers", {"category": self.category, "symbol": exchange_symbol})
        tickers = res.get("list") or []
        if not tickers:
            raise BybitAPIError(f"No ticker for symbol: {exchange_symbol}")
        return Decimal(tickers[0].get("markPrice") or tickers[0].get("lastPrice"))

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        """Set buy/sell leverage. "Leverage not modified" counts as success."""
        await self._request("POST", "/v5/position/set-leverage", {
            "category": self.category,
            "symbol": normalize_symbol(symbol),
            "buyLeverage": str(leverage),
            "sellLeverage": str(leverage),
        })
        logger.info(f"Leverage set | symbol={symbol} leverage={leverage}")

    async def place_market_order(self, symbol: str, side: str, qty: Decimal, *, reduce_only: bool = False) -> OrderResponse:
        params = {
            "category": self.category,
            "symbol": normalize_symbol(symbol),
            "side": side,
            "orderType": "Market",
            "qty": str(qty),
            "timeInForce": "IOC",
        }
        if reduce_only:
            params["reduceOnly"] = True
        res = await self._request("POST", "/v5/order/create", params)
        logger.info(f"Market order placed | order_id={res.get('orderId')} symbol={symbol} side={side} qty={qty} reduce_only={reduce_only}")
        return OrderResponse(order_id=res.get("orderId"), symbol=symbol, side=side, order_type="Market", qty=qty)

    async def place_limit_order(self, symbol: str, side: str, qty: Decimal, price: Decimal, *, reduce_only: bool = True) -> OrderResponse:
        params = {
            "category": self.category,
            "symbol": normalize_symbol(symbol),
            "side": side,
            "orderType": "Limit",
            "qty": str(qty),
            "price": str(price),
            "timeInForce": "GTC",
            "reduceOnly": reduce_only,
        }
        res = await self._request("POST", "/v5/order/create", params)
        return OrderResponse(order_id=res.get("orderId"), symbol=symbol, side=side, order_type="Limit", qty=qty, price=price)

    async def set_stop_loss(self, symbol: str, direction: Direction, price: Decimal) -> None:
        """Attach a full-size stop-loss to the position. "Not modified" counts as success."""
        await self._request("POST", "/v5/position/trading-stop", {
            "category": self.category,
            "symbol": normalize_symbol(symbol),
            "stopLoss": str(price),
            "slTriggerBy": "MarkPrice",
            "tpslMode": "Full",
            "positionIdx": 0,
        })
        logger.info(f"Stop loss set | symbol={symbol} side={direction.value} stop_loss={price}")

    async def list_open_orders(self, symbol: str) -> List[Dict[str, Any]]:
        res = await self._request("GET", "/v5/order/realtime", {"category": self.category, "symbol": normalize_symbol(symbol)})
        return res.get("list") or []

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        await self._request("POST", "/v5/order/cancel", {
            "category": self.category,
            "symbol": normalize_symbol(symbol),
            "orderId": order_id,
        })

    async def cancel_stop_loss(self, symbol: str) -> int:
        """Cancel open stop-loss orders for ``symbol``; return how many were cancelled.

        Errors are logged rather than raised: having no stop orders to cancel
        is not a failure.
        """
        cancelled = 0
        try:
            orders = await self.list_open_orders(symbol)
            for order in orders:
                if order.get("stopOrderType") == "StopLoss" or order.get("stopLoss"):
                    await self.cancel_order(symbol, order["orderId"])
                    cancelled += 1
        except BybitAPIError as e:
            logger.warning(f"Error cancelling stop loss orders | symbol={symbol} error={e}")
        if cancelled:
            logger.info(f"Stop loss orders cancelled | symbol={symbol} count={cancelled}")
        return cancelled

    async def set_take_profits(self, symbol: str, direction: Direction, take_profits: Sequence[TakeProfitLevel], size: Decimal) -> List[OrderResponse]:
        """Place one reduce-only limit order per ladder level covering ``size``.

        Raises on the first failed level; orders placed before it are left
        for the caller's rollback to deal with.
        """
        allocations = split_ladder_qty(size, len(take_profits))
        placed = []
        for tp, qty in zip(take_profits, allocations):
            if qty <= 0:
                continue
            order = await self.place_limit_order(symbol, direction.closing_side, qty, tp.price, reduce_only=True)
            placed.append(order)
            log_event("take_profit_order_placed", symbol=symbol, level=tp.level, price=str(tp.price), qty=str(qty))
        if not placed:
            raise BybitAPIError(f"Position size {size} too small for any take-profit order")
        return placed

    async def close_position(self, symbol: str) -> Optional[OrderResponse]:
        """Flatten the live position for ``symbol`` with a reduce-only market order."""
        info = await self.get_position(symbol)
        if info is None:
            return None
        side = "Sell" if info.side == "Buy" else "Buy"
        return await self.place_market_order(symbol, side, info.size, reduce_only=True)
