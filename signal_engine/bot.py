"""Signal-to-position orchestration: risk gates, execution, registration."""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set

from .bybit_adapter import BybitAdapter
from .config import EngineConfig
from .dispatcher import RequestDispatcher
from .execution import ExchangeAdapter, TakeProfitPolicy, TradeExecutionCoordinator
from .logging_setup import log_event, logger
from .models import AccountBalance, ParsedSignal, Position, normalize_symbol
from .positions import PositionExists, PositionLifecycleManager
from .secrets import BybitCredentials


class TradingBot:
    """Accept validated signals and turn them into tracked positions.

    The bot enforces the application-level rules the coordinator relies on:
    at most one ACTIVE position per symbol and at most
    ``max_concurrent_trades`` ACTIVE positions overall.
    """

    def __init__(
        self,
        exchange: ExchangeAdapter,
        coordinator: TradeExecutionCoordinator,
        positions: PositionLifecycleManager,
        *,
        risk_percentage: Decimal,
        max_concurrent_trades: int = 5,
    ):
        self.exchange = exchange
        self.coordinator = coordinator
        self.positions = positions
        self.risk_percentage = risk_percentage
        self.max_concurrent_trades = max_concurrent_trades
        self.is_running = False
        # normalized symbols with an execute_trade in progress
        self._in_flight: Set[str] = set()

    @classmethod
    def from_config(cls, config: EngineConfig, credentials: BybitCredentials) -> "TradingBot":
        """Wire a bot against Bybit. The adapter session is opened in start()."""
        dispatcher = RequestDispatcher(min_interval=config.dispatcher.min_interval)
        exchange = BybitAdapter(
            credentials.api_key,
            credentials.api_secret,
            dispatcher=dispatcher,
            base_url=config.exchange.base_url,
            testnet=config.exchange.testnet,
            category=config.exchange.category,
            recv_window=config.exchange.recv_window,
            timeout=config.exchange.timeout,
            settle_coin=config.exchange.settle_coin,
        )
        coordinator = TradeExecutionCoordinator(
            exchange,
            max_leverage=config.execution.max_leverage,
            settle_delay=config.execution.settle_delay,
            stop_loss_attempts=config.execution.stop_loss_attempts,
            stop_loss_retry_delay=config.execution.stop_loss_retry_delay,
            take_profit_policy=TakeProfitPolicy(config.execution.take_profit_policy),
        )
        positions = PositionLifecycleManager(
            exchange,
            interval=config.monitor.interval,
            cleanup_every=config.monitor.cleanup_every,
            max_age=config.monitor.max_age,
        )
        return cls(
            exchange,
            coordinator,
            positions,
            risk_percentage=config.bot.risk_percentage,
            max_concurrent_trades=config.bot.max_concurrent_trades,
        )

    async def start(self) -> None:
        logger.info("Starting trading bot...")
        if isinstance(self.exchange, BybitAdapter) and self.exchange.session is None:
            await self.exchange.__aenter__()

        if not await self.exchange.test_connection():
            await self._close_exchange()
            raise RuntimeError("Failed to connect to exchange API")

        self.positions.start_monitoring()
        self.is_running = True
        logger.info(f"Trading bot started | risk_percentage={self.risk_percentage} max_concurrent_trades={self.max_concurrent_trades}")

        try:
            balance = await self.exchange.get_wallet_balance()
            logger.info(f"Initial account balance | wallet={balance.wallet_balance} available={balance.available_balance}")
        except Exception as e:
            logger.warning(f"Could not fetch initial balance | error={e}")

    async def stop(self) -> None:
        logger.info("Stopping trading bot...")
        self.is_running = False
        self.positions.stop_monitoring()
        await self._close_exchange()
        log_event("status_snapshot", **self.positions.get_position_stats())
        logger.info("Trading bot stopped")

    async def _close_exchange(self) -> None:
        if isinstance(self.exchange, BybitAdapter) and self.exchange.session is not None:
            await self.exchange.__aexit__(None, None, None)
            await self.exchange.dispatcher.close()

    async def handle_signal(self, signal: ParsedSignal) -> Optional[Position]:
        """Execute ``signal`` if every gate passes; return the new position or None."""
        log_event("signal_received", symbol=signal.pair, direction=signal.direction.value, confidence=signal.confidence)

        errors = signal.validate()
        if errors:
            log_event("signal_rejected", level="WARNING", symbol=signal.pair, reason="invalid", errors=errors)
            return None

        symbol = normalize_symbol(signal.pair)
        existing = self.positions.get_position_by_symbol(signal.pair)
        if existing is not None:
            log_event("signal_rejected", level="WARNING", symbol=signal.pair, reason="position_exists", existing_position_id=existing.id)
            return None
        if symbol in self._in_flight:
            log_event("signal_rejected", level="WARNING", symbol=signal.pair, reason="trade_in_flight")
            return None

        active = len(self.positions.get_active_positions()) + len(self._in_flight)
        if active >= self.max_concurrent_trades:
            log_event("signal_rejected", level="WARNING", symbol=signal.pair, reason="max_concurrent_trades", active=active, max_allowed=self.max_concurrent_trades)
            return None

        # reserved before the first await so a concurrent signal sees it
        self._in_flight.add(symbol)
        try:
            return await self._execute(signal)
        finally:
            self._in_flight.discard(symbol)

    async def _execute(self, signal: ParsedSignal) -> Optional[Position]:
        try:
            balance = await self.exchange.get_wallet_balance()
        except Exception as e:
            log_event("trade_failed", level="ERROR", symbol=signal.pair, stage="balance", error=str(e))
            return None

        if balance.available_balance <= 0:
            log_event("signal_rejected", level="WARNING", symbol=signal.pair, reason="insufficient_balance", available=str(balance.available_balance))
            return None

        try:
            result = await self.coordinator.execute_trade(signal, balance.available_balance, self.risk_percentage)
        except Exception as e:
            # the coordinator has already logged and rolled back
            logger.error(f"Failed to execute trade | symbol={signal.pair} error={e}")
            return None

        try:
            return self.positions.create_position(
                signal,
                result.order_id,
                result.leverage,
                result.position_size,
                result.entry_price,
            )
        except PositionExists as e:
            log_event(
                "trade_failed",
                level="CRITICAL",
                symbol=signal.pair,
                stage="register",
                order_id=result.order_id,
                error=str(e),
                action="MANUAL INTERVENTION REQUIRED: filled position has no tracking record",
            )
            return None

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "monitoring": self.positions.is_monitoring,
            "position_stats": self.positions.get_position_stats(),
            "config": {
                "risk_percentage": str(self.risk_percentage),
                "max_concurrent_trades": self.max_concurrent_trades,
                "take_profit_policy": self.coordinator.take_profit_policy.value,
            },
        }

    def get_positions(self) -> List[Position]:
        return self.positions.get_all_positions()

    async def close_position(self, position_id: str, reason: str = "manual") -> bool:
        closed = await self.positions.close_position(position_id, reason)
        if not closed:
            logger.warning(f"Failed to close position | position_id={position_id} reason={reason}")
        return closed

    async def get_account_balance(self) -> AccountBalance:
        return await self.exchange.get_wallet_balance()

    def cleanup_old_positions(self) -> int:
        return self.positions.cleanup_old_positions()
