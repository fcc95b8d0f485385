"""
Atomic multi-step trade execution with rollback.

Turns a ParsedSignal into: set leverage → market order → confirm fill →
stop-loss → take-profit ladder. There is no exchange-side transaction, so a
failure once an order has been placed is undone by flattening the live
position with an opposite-side reduce-only market order.

State Transitions:
    SIZING → LEVERAGE_SET → ORDER_PLACED → FILL_CONFIRMED
        → STOP_LOSS_SET → TAKE_PROFIT_SET → DONE

    ORDER_PLACED | FILL_CONFIRMED | STOP_LOSS_SET | TAKE_PROFIT_SET
        → ROLLING_BACK → ROLLED_BACK | ROLLBACK_FAILED

What a rollback does is looked up in ROLLBACK_PLAN by the last state reached
before the failure, so every partial-failure path is listed in one table.

Examples:
    >>> coordinator = TradeExecutionCoordinator(exchange)
    >>> result = await coordinator.execute_trade(signal, Decimal("1000"), Decimal("1"))
    >>> result.leverage, result.position_size
    (20, Decimal('3333'))
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

from .logging_setup import log_event, logger
from .models import (
    AccountBalance,
    Direction,
    OrderResponse,
    ParsedSignal,
    PositionInfo,
    TakeProfitLevel,
    TradeResult,
)
from .sizing import MAX_LEVERAGE, calculate_position_size


class ExchangeAdapter(ABC):
    """Abstract async exchange used by the coordinator and lifecycle manager.

    All price/qty values use Decimal. ``symbol`` is the signal's pair; the
    adapter maps it to the exchange's own symbol format.
    """

    @abstractmethod
    async def test_connection(self) -> bool:
        pass

    @abstractmethod
    async def get_wallet_balance(self, coin: Optional[str] = None) -> AccountBalance:
        pass

    @abstractmethod
    async def get_position(self, symbol: str) -> Optional[PositionInfo]:
        """Return the live position, or None if there is none (or size is zero)."""
        pass

    @abstractmethod
    async def get_mark_price(self, symbol: str) -> Decimal:
        pass

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> None:
        pass

    @abstractmethod
    async def place_market_order(self, symbol: str, side: str, qty: Decimal, *, reduce_only: bool = False) -> OrderResponse:
        pass

    @abstractmethod
    async def set_stop_loss(self, symbol: str, direction: Direction, price: Decimal) -> None:
        pass

    @abstractmethod
    async def cancel_stop_loss(self, symbol: str) -> int:
        pass

    @abstractmethod
    async def set_take_profits(self, symbol: str, direction: Direction, take_profits: Sequence[TakeProfitLevel], size: Decimal) -> List[OrderResponse]:
        pass

    @abstractmethod
    async def list_open_orders(self, symbol: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> None:
        pass


class TradeExecutionError(Exception):
    pass


class IllegalTransition(TradeExecutionError):
    pass


class OrderQuantityTooSmall(TradeExecutionError):
    pass


class FillVerificationFailed(TradeExecutionError):
    pass


class StopLossSetFailed(TradeExecutionError):
    pass


class TakeProfitSetFailed(TradeExecutionError):
    pass


class RollbackFailed(TradeExecutionError):
    """Rollback could not flatten the position. Manual intervention required."""
    pass


class ExecutionState(str, Enum):
    SIZING = "SIZING"
    LEVERAGE_SET = "LEVERAGE_SET"
    ORDER_PLACED = "ORDER_PLACED"
    FILL_CONFIRMED = "FILL_CONFIRMED"
    STOP_LOSS_SET = "STOP_LOSS_SET"
    TAKE_PROFIT_SET = "TAKE_PROFIT_SET"
    DONE = "DONE"
    ROLLING_BACK = "ROLLING_BACK"
    ROLLED_BACK = "ROLLED_BACK"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"


class TakeProfitPolicy(str, Enum):
    """What a take-profit placement failure does to the trade."""

    FATAL = "fatal"  # roll the trade back
    BEST_EFFORT = "best_effort"  # keep the position, stop-loss only


S = ExecutionState

TRANSITIONS: Dict[ExecutionState, FrozenSet[ExecutionState]] = {
    S.SIZING: frozenset({S.LEVERAGE_SET}),
    S.LEVERAGE_SET: frozenset({S.ORDER_PLACED}),
    S.ORDER_PLACED: frozenset({S.FILL_CONFIRMED, S.ROLLING_BACK}),
    S.FILL_CONFIRMED: frozenset({S.STOP_LOSS_SET, S.ROLLING_BACK}),
    S.STOP_LOSS_SET: frozenset({S.TAKE_PROFIT_SET, S.ROLLING_BACK}),
    S.TAKE_PROFIT_SET: frozenset({S.DONE, S.ROLLING_BACK}),
    S.DONE: frozenset(),
    S.ROLLING_BACK: frozenset({S.ROLLED_BACK, S.ROLLBACK_FAILED}),
    S.ROLLED_BACK: frozenset(),
    S.ROLLBACK_FAILED: frozenset(),
}

# Rollback steps keyed by the last state reached before the failure.
ROLLBACK_PLAN: Dict[ExecutionState, Tuple[str, ...]] = {
    S.SIZING: (),
    S.LEVERAGE_SET: (),
    S.ORDER_PLACED: ("flatten",),
    S.FILL_CONFIRMED: ("flatten",),
    S.STOP_LOSS_SET: ("flatten", "cancel_open_orders"),
    S.TAKE_PROFIT_SET: ("flatten", "cancel_open_orders"),
}

# States from which a failure leaves something live on the exchange.
ROLLBACK_REQUIRED: FrozenSet[ExecutionState] = frozenset(s for s, steps in ROLLBACK_PLAN.items() if steps)


@dataclass
class ExecutionAttempt:
    """Working state of one execute_trade call. Never persisted."""

    signal: ParsedSignal
    state: ExecutionState = ExecutionState.SIZING
    history: List[ExecutionState] = field(default_factory=lambda: [ExecutionState.SIZING])
    entry_price: Optional[Decimal] = None
    size: Optional[Decimal] = None
    leverage: Optional[int] = None
    order: Optional[OrderResponse] = None
    confirmed: Optional[PositionInfo] = None
    stop_loss_attempts: int = 0
    failed_at: Optional[ExecutionState] = None
    rollback_order: Optional[OrderResponse] = None

    def advance(self, new_state: ExecutionState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise IllegalTransition(f"{self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    @property
    def rollback_steps(self) -> Tuple[str, ...]:
        return ROLLBACK_PLAN.get(self.state, ())


class TradeExecutionCoordinator:
    """Drive one signal through the execution sequence, rolling back on failure.

    Holds no per-symbol lock: callers must not run two executions for the
    same symbol concurrently (TradingBot enforces one active position per
    symbol before calling in).
    """

    def __init__(
        self,
        exchange: ExchangeAdapter,
        *,
        max_leverage: int = MAX_LEVERAGE,
        settle_delay: float = 3.0,
        stop_loss_attempts: int = 3,
        stop_loss_retry_delay: float = 1.0,
        take_profit_policy: TakeProfitPolicy = TakeProfitPolicy.FATAL,
    ):
        if stop_loss_attempts < 1:
            raise ValueError("stop_loss_attempts must be >= 1")
        self.exchange = exchange
        self.max_leverage = max_leverage
        self.settle_delay = settle_delay
        self.stop_loss_attempts = stop_loss_attempts
        self.stop_loss_retry_delay = stop_loss_retry_delay
        self.take_profit_policy = TakeProfitPolicy(take_profit_policy)

    async def execute_trade(self, signal: ParsedSignal, portfolio_value: Decimal, risk_percentage: Decimal) -> TradeResult:
        """Execute ``signal`` and return the confirmed fill.

        Raises:
            The first error encountered. If it happened after the market order
            was placed, a rollback has run before the error is re-raised; the
            error carries ``execution_state`` (last state reached) and
            ``rollback_state`` (ROLLED_BACK / ROLLBACK_FAILED) attributes, and
            ``rollback_error`` when the rollback itself failed.
        """
        attempt = ExecutionAttempt(signal=signal)
        log_event(
            "trade_started",
            symbol=signal.pair,
            direction=signal.direction.value,
            entry="market" if signal.is_market_entry else str(signal.entry),
            stop_loss=str(signal.stop_loss),
            take_profits=len(signal.take_profits),
            portfolio_value=str(portfolio_value),
            risk_percentage=str(risk_percentage),
        )

        try:
            result = await self._run(attempt, portfolio_value, risk_percentage)
        except Exception as e:
            attempt.failed_at = attempt.state
            e.execution_state = attempt.state
            e.rollback_state = None
            log_event(
                "trade_failed",
                level="ERROR",
                symbol=signal.pair,
                state=attempt.state.value,
                order_id=attempt.order.order_id if attempt.order else None,
                error=str(e),
            )
            if attempt.state in ROLLBACK_REQUIRED:
                await self._rollback(attempt, e)
                e.rollback_state = attempt.state
            raise

        log_event(
            "trade_succeeded",
            symbol=signal.pair,
            order_id=result.order_id,
            leverage=result.leverage,
            size=str(result.position_size),
            entry_price=str(result.entry_price),
            stop_loss_attempts=attempt.stop_loss_attempts,
        )
        return result

    async def _run(self, attempt: ExecutionAttempt, portfolio_value: Decimal, risk_percentage: Decimal) -> TradeResult:
        signal = attempt.signal
        symbol = signal.pair

        if signal.is_market_entry:
            attempt.entry_price = await self.exchange.get_mark_price(symbol)
            logger.info(f"Resolved market entry | symbol={symbol} entry_price={attempt.entry_price}")
        else:
            attempt.entry_price = signal.entry

        sized = calculate_position_size(
            portfolio_value=portfolio_value,
            risk_percentage=risk_percentage,
            entry_price=attempt.entry_price,
            stop_loss_price=signal.stop_loss,
            max_leverage=self.max_leverage,
        )
        attempt.size = sized.size
        attempt.leverage = sized.leverage
        logger.info(f"Position sized | symbol={symbol} size={sized.size} leverage={sized.leverage}")

        await self.exchange.set_leverage(symbol, sized.leverage)
        attempt.advance(S.LEVERAGE_SET)

        # exchange lot size for these instruments is one whole unit
        qty = int(sized.size)
        if qty < 1:
            raise OrderQuantityTooSmall(f"Computed size {sized.size} is below one unit for {symbol}")

        attempt.order = await self.exchange.place_market_order(symbol, signal.direction.order_side, Decimal(qty))
        attempt.advance(S.ORDER_PLACED)

        await asyncio.sleep(self.settle_delay)
        live = await self.exchange.get_position(symbol)
        if live is None or live.size <= 0:
            raise FillVerificationFailed(
                f"Order {attempt.order.order_id} placed but no live position found for {symbol}"
            )
        attempt.confirmed = live
        attempt.advance(S.FILL_CONFIRMED)

        await self._set_stop_loss_with_retry(attempt)
        attempt.advance(S.STOP_LOSS_SET)

        try:
            await self.exchange.set_take_profits(symbol, signal.direction, signal.take_profits, live.size)
        except Exception as e:
            if self.take_profit_policy is TakeProfitPolicy.FATAL:
                raise TakeProfitSetFailed(f"Failed to set take profits for {symbol}: {e}") from e
            logger.error(f"Take profit placement failed; keeping position with stop loss only | symbol={symbol} error={e}")
        attempt.advance(S.TAKE_PROFIT_SET)
        attempt.advance(S.DONE)

        entry_price = live.entry_price if live.entry_price > 0 else attempt.entry_price
        return TradeResult(
            order_id=attempt.order.order_id,
            leverage=sized.leverage,
            position_size=live.size,
            entry_price=entry_price,
        )

    async def _set_stop_loss_with_retry(self, attempt: ExecutionAttempt) -> None:
        signal = attempt.signal
        last_error: Optional[Exception] = None

        for n in range(1, self.stop_loss_attempts + 1):
            attempt.stop_loss_attempts = n
            try:
                await self.exchange.set_stop_loss(signal.pair, signal.direction, signal.stop_loss)
                return
            except Exception as e:
                last_error = e
                logger.warning(f"Stop loss attempt {n}/{self.stop_loss_attempts} failed | symbol={signal.pair} error={e}")
                if n < self.stop_loss_attempts:
                    await asyncio.sleep(n * self.stop_loss_retry_delay)

        raise StopLossSetFailed(
            f"Failed to set stop loss for {signal.pair} after {self.stop_loss_attempts} attempts"
        ) from last_error

    async def _rollback(self, attempt: ExecutionAttempt, error: Exception) -> None:
        symbol = attempt.signal.pair
        order_id = attempt.order.order_id if attempt.order else None
        steps = attempt.rollback_steps

        attempt.advance(S.ROLLING_BACK)
        log_event("rollback_initiated", level="WARNING", symbol=symbol, order_id=order_id, failed_at=attempt.failed_at.value, steps=list(steps))

        try:
            for step in steps:
                await getattr(self, f"_rollback_{step}")(attempt)
        except Exception as rollback_error:
            attempt.advance(S.ROLLBACK_FAILED)
            failure = RollbackFailed(f"Rollback failed for {symbol} (order {order_id}): {rollback_error}")
            failure.__cause__ = rollback_error
            error.rollback_error = failure
            log_event(
                "rollback_failed",
                level="CRITICAL",
                symbol=symbol,
                order_id=order_id,
                original_error=str(error),
                rollback_error=str(rollback_error),
                action="MANUAL INTERVENTION REQUIRED: position may be open without stop loss or tracking",
            )
            return

        attempt.advance(S.ROLLED_BACK)
        log_event(
            "rollback_completed",
            level="WARNING",
            symbol=symbol,
            order_id=order_id,
            flatten_order_id=attempt.rollback_order.order_id if attempt.rollback_order else None,
        )

    async def _rollback_flatten(self, attempt: ExecutionAttempt) -> None:
        """Close whatever is live right now, using the exchange-reported size."""
        symbol = attempt.signal.pair
        live = await self.exchange.get_position(symbol)
        if live is None or live.size <= 0:
            logger.info(f"Rollback: no live position to flatten | symbol={symbol}")
            return
        attempt.rollback_order = await self.exchange.place_market_order(
            symbol, attempt.signal.direction.closing_side, live.size, reduce_only=True
        )

    async def _rollback_cancel_open_orders(self, attempt: ExecutionAttempt) -> None:
        # position is already flat here; failures are logged, not raised
        symbol = attempt.signal.pair
        try:
            for order in await self.exchange.list_open_orders(symbol):
                await self.exchange.cancel_order(symbol, order["orderId"])
        except Exception as e:
            logger.warning(f"Rollback: could not cancel leftover orders | symbol={symbol} error={e}")
