"""Tests for signal handling and portfolio risk gates."""
import asyncio
from dataclasses import replace
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from signal_engine.bot import TradingBot
from signal_engine.bybit_adapter import TESTNET_URL, BybitAdapter
from signal_engine.config import EngineConfig, ExchangeConfig, ExecutionConfig
from signal_engine.execution import TakeProfitPolicy, TradeExecutionCoordinator
from signal_engine.models import AccountBalance, TradeStatus
from signal_engine.positions import PositionExists, PositionLifecycleManager
from signal_engine.secrets import BybitCredentials


@pytest.fixture
def bot(exchange):
    coordinator = TradeExecutionCoordinator(exchange, settle_delay=0, stop_loss_retry_delay=0)
    positions = PositionLifecycleManager(exchange, interval=60)
    return TradingBot(exchange, coordinator, positions, risk_percentage=Decimal("1"), max_concurrent_trades=2)


class TestHandleSignal:
    """Signal to position flow."""

    @pytest.mark.asyncio
    async def test_executes_and_registers_position(self, bot, exchange, long_signal):
        position = await bot.handle_signal(long_signal)

        assert position is not None
        assert position.status is TradeStatus.ACTIVE
        assert position.size == Decimal("5")
        assert position.leverage == 20
        assert position.stop_loss == Decimal("98")
        assert [tp.price for tp in position.take_profits] == [Decimal("102"), Decimal("104"), Decimal("106")]
        assert bot.get_positions() == [position]

    @pytest.mark.asyncio
    async def test_rejects_invalid_signal(self, bot, exchange, long_signal):
        assert await bot.handle_signal(replace(long_signal, stop_loss=Decimal("101"))) is None
        assert exchange.market_orders == []

    @pytest.mark.asyncio
    async def test_rejects_second_signal_for_same_symbol(self, bot, exchange, long_signal):
        await bot.handle_signal(long_signal)

        assert await bot.handle_signal(replace(long_signal, pair="IDUSDT")) is None
        assert len(exchange.market_orders) == 1

    @pytest.mark.asyncio
    async def test_enforces_max_concurrent_trades(self, bot, exchange, long_signal, short_signal):
        await bot.handle_signal(long_signal)
        await bot.handle_signal(short_signal)

        assert await bot.handle_signal(replace(long_signal, pair="ARB/USDT")) is None
        assert len(exchange.market_orders) == 2

    @pytest.mark.asyncio
    async def test_rejects_when_no_available_balance(self, bot, exchange, long_signal):
        exchange.balance = AccountBalance(coin="USDT", wallet_balance=Decimal("50"), available_balance=Decimal("0"))
        assert await bot.handle_signal(long_signal) is None
        assert exchange.market_orders == []

    @pytest.mark.asyncio
    async def test_balance_error_returns_none(self, bot, exchange, long_signal):
        exchange.failures["get_wallet_balance"] = RuntimeError("timeout")
        assert await bot.handle_signal(long_signal) is None

    @pytest.mark.asyncio
    async def test_execution_failure_registers_nothing(self, bot, exchange, long_signal):
        exchange.failures["set_stop_loss"] = RuntimeError("rejected")

        assert await bot.handle_signal(long_signal) is None
        assert bot.get_positions() == []
        assert exchange.live == {}

    @pytest.mark.asyncio
    async def test_concurrent_signals_for_one_pair_open_one_trade(self, bot, exchange, long_signal):
        results = await asyncio.gather(
            bot.handle_signal(long_signal),
            bot.handle_signal(replace(long_signal, pair="IDUSDT")),
            return_exceptions=True,
        )

        entries = [o for o in exchange.market_orders if not o["reduce_only"]]
        assert len(entries) == 1
        assert results[1] is None
        assert results[0] is not None and results[0].is_active
        assert bot._in_flight == set()

    @pytest.mark.asyncio
    async def test_concurrent_signals_count_towards_max_trades(self, exchange, long_signal, short_signal):
        coordinator = TradeExecutionCoordinator(exchange, settle_delay=0, stop_loss_retry_delay=0)
        bot = TradingBot(exchange, coordinator, PositionLifecycleManager(exchange), risk_percentage=Decimal("1"), max_concurrent_trades=1)

        results = await asyncio.gather(bot.handle_signal(long_signal), bot.handle_signal(short_signal))

        assert [r is not None for r in results] == [True, False]
        assert len(exchange.market_orders) == 1

    @pytest.mark.asyncio
    async def test_registration_conflict_returns_none(self, bot, exchange, long_signal, monkeypatch):
        def conflict(*args, **kwargs):
            raise PositionExists("Active position already exists for ID/USDT")

        monkeypatch.setattr(bot.positions, "create_position", conflict)

        assert await bot.handle_signal(long_signal) is None
        assert bot._in_flight == set()


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, bot):
        await bot.start()
        assert bot.is_running
        assert bot.positions.is_monitoring

        await bot.stop()
        assert not bot.is_running
        assert not bot.positions.is_monitoring

    @pytest.mark.asyncio
    async def test_start_fails_without_connection(self, bot, exchange):
        exchange.connected = False
        with pytest.raises(RuntimeError):
            await bot.start()
        assert not bot.positions.is_monitoring

    @pytest.mark.asyncio
    async def test_status_and_close(self, bot, exchange, long_signal):
        position = await bot.handle_signal(long_signal)

        status = bot.get_status()
        assert status["position_stats"]["active"] == 1
        assert status["config"]["take_profit_policy"] == "fatal"

        assert await bot.close_position(position.id) is True
        assert position.status is TradeStatus.COMPLETED
        assert await bot.close_position(position.id) is False
        assert (await bot.get_account_balance()).available_balance == Decimal("1000")


def test_from_config_wires_bybit():
    config = EngineConfig(
        exchange=ExchangeConfig(testnet=True),
        execution=ExecutionConfig(take_profit_policy="best_effort"),
    )
    bot = TradingBot.from_config(config, BybitCredentials(api_key="k", api_secret="s"))

    assert isinstance(bot.exchange, BybitAdapter)
    assert bot.exchange.base_url == TESTNET_URL
    assert bot.coordinator.exchange is bot.exchange
    assert bot.positions.exchange is bot.exchange
    assert bot.coordinator.take_profit_policy is TakeProfitPolicy.BEST_EFFORT
    assert bot.risk_percentage == Decimal("10")
    assert bot.max_concurrent_trades == 5


@pytest.mark.asyncio
async def test_failed_start_closes_session():
    bot = TradingBot.from_config(EngineConfig(), BybitCredentials(api_key="k", api_secret="s"))
    bot.exchange.test_connection = AsyncMock(return_value=False)

    with pytest.raises(RuntimeError):
        await bot.start()

    assert bot.exchange.session is None
    assert not bot.exchange.dispatcher.is_draining
    assert not bot.positions.is_monitoring
