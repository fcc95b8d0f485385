"""
Position registry, monitoring poll and take-profit driven stop-loss trailing.

The manager owns every Position the engine knows about. A recurring poll
refreshes mark price and PnL from the exchange and runs the trailing state
machine:

    TP1 hit  → stop-loss moves to the entry price
    TPk hit  → stop-loss moves to the price of TP(k-1)   (k >= 2)

A level counts as hit only when the previous observed price was still on the
unfavourable side of it and the new one is at or beyond it. The stop is only
ever moved in the favourable direction (ratchet-only), so levels observed
out of order can never pull it back.
"""

import asyncio
import time
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from .execution import ExchangeAdapter
from .logging_setup import log_event, logger
from .models import (
    Direction,
    LadderLevel,
    ParsedSignal,
    Position,
    TradeStatus,
    normalize_symbol,
    utcnow,
)

DEFAULT_MAX_AGE = timedelta(hours=24)


class PositionExists(Exception):
    """Raised when creating a second ACTIVE position for the same symbol."""
    pass


def level_crossed(direction: Direction, previous: Decimal, new: Decimal, level: Decimal) -> bool:
    """True if moving from ``previous`` to ``new`` crossed ``level`` favourably."""
    if direction is Direction.LONG:
        return previous < level <= new
    return previous > level >= new


def trailed_stop_for_level(position: Position, level: int) -> Decimal:
    """Stop-loss a position should carry once take-profit ``level`` is hit."""
    if level <= 1:
        return position.entry_price
    previous = position.ladder_price(level - 1)
    return previous if previous is not None else position.stop_loss


class PositionLifecycleManager:
    """In-memory registry of positions plus the monitoring poll.

    Usage:
        manager = PositionLifecycleManager(exchange, interval=10.0)
        position = manager.create_position(signal, order_id, leverage, size, entry)
        manager.start_monitoring()
        ...
        manager.stop_monitoring()
    """

    def __init__(
        self,
        exchange: ExchangeAdapter,
        *,
        interval: float = 10.0,
        cleanup_every: int = 10,
        max_age: timedelta = DEFAULT_MAX_AGE,
    ):
        self.exchange = exchange
        self.interval = interval
        self.cleanup_every = cleanup_every
        self.max_age = max_age
        self.positions: Dict[str, Position] = {}
        self._monitor_task: Optional[asyncio.Task] = None
        self._cycles = 0

    # -- registry ---------------------------------------------------------

    def _new_id(self, pair: str) -> str:
        millis = int(time.time() * 1000)
        position_id = f"{pair}_{millis}"
        while position_id in self.positions:
            millis += 1
            position_id = f"{pair}_{millis}"
        return position_id

    def create_position(self, signal: ParsedSignal, order_id: str, leverage: int, size: Decimal, entry_price: Decimal) -> Position:
        """Register a confirmed fill as an ACTIVE position."""
        existing = self.get_position_by_symbol(signal.pair)
        if existing is not None:
            raise PositionExists(f"Active position {existing.id} already exists for {signal.pair}")

        position = Position(
            id=self._new_id(signal.pair),
            symbol=signal.pair,
            side=signal.direction,
            size=size,
            entry_price=entry_price,
            current_price=entry_price,
            stop_loss=signal.stop_loss,
            take_profits=[LadderLevel(level=tp.level, price=tp.price) for tp in signal.take_profits],
            leverage=leverage,
            order_id=order_id,
        )
        self.positions[position.id] = position

        log_event(
            "position_created",
            position_id=position.id,
            symbol=position.symbol,
            side=position.side.value,
            size=str(position.size),
            entry_price=str(position.entry_price),
            stop_loss=str(position.stop_loss),
            leverage=leverage,
        )
        return position

    def get_position(self, position_id: str) -> Optional[Position]:
        return self.positions.get(position_id)

    def get_position_by_symbol(self, symbol: str) -> Optional[Position]:
        """The ACTIVE position for ``symbol``, if any."""
        wanted = normalize_symbol(symbol)
        for position in self.positions.values():
            if position.is_active and normalize_symbol(position.symbol) == wanted:
                return position
        return None

    def get_active_positions(self) -> List[Position]:
        return [p for p in self.positions.values() if p.is_active]

    def get_all_positions(self) -> List[Position]:
        return list(self.positions.values())

    # -- polling ----------------------------------------------------------

    async def update_position(self, position_id: str) -> Optional[Position]:
        """Refresh one position from the exchange and run stop-loss trailing."""
        position = self.positions.get(position_id)
        if position is None or not position.is_active:
            return position

        live = await self.exchange.get_position(position.symbol)
        if live is None:
            position.status = TradeStatus.COMPLETED
            position.touch()
            log_event("position_closed", position_id=position.id, symbol=position.symbol, reason="flat_on_exchange", final_pnl=str(position.pnl))
            return position

        previous_price = position.current_price
        position.current_price = live.mark_price
        position.pnl = live.unrealised_pnl
        position.size = live.size
        position.touch()

        await self._check_take_profit_hits(position, previous_price, live.mark_price)
        return position

    async def _check_take_profit_hits(self, position: Position, previous: Decimal, new: Decimal) -> None:
        for tp in position.take_profits:
            if tp.filled:
                continue
            if not level_crossed(position.side, previous, new, tp.price):
                continue

            tp.filled = True
            log_event(
                "take_profit_hit",
                position_id=position.id,
                symbol=position.symbol,
                level=tp.level,
                price=str(tp.price),
                previous_price=str(previous),
                mark_price=str(new),
            )
            await self._advance_stop_loss(position, tp.level)

    async def _advance_stop_loss(self, position: Position, level: int) -> bool:
        """Ratchet the stop after a take-profit hit. Returns True if it moved."""
        candidate = trailed_stop_for_level(position, level)
        if not position.side.is_more_favorable(candidate, position.stop_loss):
            logger.debug(f"Stop loss not advanced | position_id={position.id} level={level} candidate={candidate} current={position.stop_loss}")
            return False

        try:
            await self.exchange.set_stop_loss(position.symbol, position.side, candidate)
        except Exception as e:
            logger.error(f"Error adjusting stop loss | position_id={position.id} level={level} error={e}")
            return False

        old = position.stop_loss
        position.stop_loss = candidate
        position.touch()
        log_event(
            "stop_loss_adjusted",
            position_id=position.id,
            symbol=position.symbol,
            tp_level=level,
            old_stop_loss=str(old),
            new_stop_loss=str(candidate),
        )
        return True

    async def poll_once(self) -> None:
        """One monitoring cycle over every ACTIVE position."""
        self._cycles += 1
        for position in self.get_active_positions():
            try:
                await self.update_position(position.id)
            except Exception as e:
                logger.error(f"Error in position monitoring | position_id={position.id} error={e}")

        if self.cleanup_every and self._cycles % self.cleanup_every == 0:
            removed = self.cleanup_old_positions()
            if removed:
                logger.info(f"Automatic position cleanup completed | removed={removed}")
            log_event("status_snapshot", **self.get_position_stats())

    @property
    def is_monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    def start_monitoring(self) -> None:
        """Start the recurring poll. No-op if already running."""
        if self.is_monitoring:
            return
        logger.info(f"Starting position monitoring | interval={self.interval}s")
        self._monitor_task = asyncio.get_running_loop().create_task(self._monitor_loop())

    def stop_monitoring(self) -> None:
        """Cancel future polls. A poll already running is left to finish."""
        if self._monitor_task is None:
            return
        self._monitor_task.cancel()
        self._monitor_task = None
        logger.info("Position monitoring stopped")

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            # shielded: cancelling the loop must not abort a poll mid-flight
            await asyncio.shield(asyncio.ensure_future(self.poll_once()))

    # -- manual operations ------------------------------------------------

    async def close_position(self, position_id: str, reason: str = "manual") -> bool:
        """Flatten an ACTIVE position with an opposite-side market order."""
        position = self.positions.get(position_id)
        if position is None or not position.is_active:
            return False

        try:
            await self.exchange.cancel_stop_loss(position.symbol)
            await self.exchange.place_market_order(position.symbol, position.side.closing_side, position.size, reduce_only=True)
        except Exception as e:
            logger.error(f"Error closing position | position_id={position_id} error={e}")
            return False

        position.status = TradeStatus.COMPLETED
        position.touch()
        log_event("position_closed", position_id=position.id, symbol=position.symbol, reason=reason, final_pnl=str(position.pnl))
        return True

    def cleanup_old_positions(self, max_age: Optional[timedelta] = None) -> int:
        """Drop COMPLETED positions last updated more than ``max_age`` ago."""
        cutoff = utcnow() - (max_age if max_age is not None else self.max_age)
        stale = [
            pid for pid, p in self.positions.items()
            if p.status is TradeStatus.COMPLETED and p.updated_at < cutoff
        ]
        for pid in stale:
            del self.positions[pid]

        if stale:
            logger.info(f"Cleaned up old positions | removed={len(stale)}")
        return len(stale)

    def get_position_stats(self) -> Dict[str, object]:
        positions = self.get_all_positions()
        active = [p for p in positions if p.is_active]
        return {
            "total": len(positions),
            "active": len(active),
            "completed": len([p for p in positions if p.status is TradeStatus.COMPLETED]),
            "total_pnl": sum((p.pnl for p in positions), Decimal("0")),
            "active_pnl": sum((p.pnl for p in active), Decimal("0")),
        }
