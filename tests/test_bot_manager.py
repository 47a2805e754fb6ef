import asyncio
from unittest.mock import AsyncMock

import pytest

from tradeguard.bot_manager import BotManager
from tradeguard.cache_store import InMemoryCacheStore
from tradeguard.data_handler import DataHandler
from tradeguard.datastructures import Direction, FillConfirmation
from tradeguard.exchange_connector import ExchangeConnector, PaperExchange
from tradeguard.indicator_cache import IndicatorCache
from tradeguard.indicators import default_indicator_specs
from tradeguard.price_feed import PriceFeed


@pytest.fixture
def manager(cfg, market_data):
    exchange = PaperExchange(market_data, initial_balance=10000.0)
    cache = IndicatorCache(market_data, InMemoryCacheStore(), default_indicator_specs(cfg))
    return BotManager(
        exchange=exchange,
        market_data=market_data,
        indicator_cache=cache,
        data_handler=DataHandler(asyncio.Queue()),
        price_feed=PriceFeed(asyncio.Queue(), mode="SIMULATION"),
        cfg=cfg,
    )


@pytest.mark.asyncio
async def test_start_and_stop_bot(manager):
    pm = manager.start_bot("BTCUSDT", Direction.LONG, {"check_interval_seconds": 3600})
    await asyncio.sleep(0.01)

    assert ("BTCUSDT", Direction.LONG) in manager.active_bots
    assert "BTCUSDT" in manager.price_feed.symbols
    assert len(manager.data_handler.price_update_queues["BTCUSDT"]) == 1
    assert pm.last_outcome is not None

    await manager.stop_bot("BTCUSDT", Direction.LONG)

    assert manager.active_bots == {}
    assert "BTCUSDT" not in manager.price_feed.symbols
    assert "BTCUSDT" not in manager.data_handler.price_update_queues
    assert pm.state_file.exists()


@pytest.mark.asyncio
async def test_starting_twice_returns_running_bot(manager):
    first = manager.start_bot("BTCUSDT", "LONG", {"check_interval_seconds": 3600})
    second = manager.start_bot("BTCUSDT", Direction.LONG)

    assert first is second
    assert len(manager.active_bots) == 1
    await manager.stop_bot("BTCUSDT", Direction.LONG)


@pytest.mark.asyncio
async def test_long_and_short_bots_share_the_cache(manager):
    long_pm = manager.start_bot("BTCUSDT", Direction.LONG, {"check_interval_seconds": 3600})
    short_pm = manager.start_bot("BTCUSDT", Direction.SHORT, {"check_interval_seconds": 3600})

    assert long_pm.indicator_cache is short_pm.indicator_cache
    assert long_pm.state_file != short_pm.state_file

    await manager.stop_bot("BTCUSDT", Direction.LONG)
    assert "BTCUSDT" in manager.price_feed.symbols
    await manager.stop_bot("BTCUSDT", Direction.SHORT)
    assert "BTCUSDT" not in manager.price_feed.symbols


@pytest.mark.asyncio
async def test_stop_bot_closes_open_position(manager):
    pm = manager.start_bot("BTCUSDT", Direction.LONG, {"check_interval_seconds": 3600})
    await asyncio.sleep(0.01)
    await pm.enter_position()
    assert pm.position is not None

    await manager.stop_bot("BTCUSDT", Direction.LONG)

    assert pm.position is None
    assert manager.exchange.positions == {}


@pytest.mark.asyncio
async def test_status_lists_bots(manager):
    manager.start_bot("BTCUSDT", Direction.LONG, {"check_interval_seconds": 3600})
    await asyncio.sleep(0.01)

    status = manager.status()

    assert status["bots"][0]["symbol"] == "BTCUSDT"
    assert status["bots"][0]["status"] == "FLAT"
    assert status["indicator_computations"] == 0
    await manager.stop_bot("BTCUSDT", Direction.LONG)


def test_simulation_wiring_shares_one_cache(cfg):
    from main import build_bot_manager
    from tradeguard.market_data import SimulatedMarketData

    cfg.MODE = "SIMULATION"
    cfg.CACHE_BACKEND = "memory"
    manager = build_bot_manager(cfg)

    assert isinstance(manager.exchange, PaperExchange)
    assert isinstance(manager.market_data, SimulatedMarketData)
    assert manager.indicator_cache.market_data is manager.market_data
    assert manager.price_feed.simulator is manager.market_data
    assert isinstance(manager.indicator_cache.store, InMemoryCacheStore)


@pytest.mark.asyncio
async def test_stop_bot_waits_for_exit_already_sent(manager):
    gate = asyncio.Event()
    sent = []

    async def gated_exit(symbol, qty):
        sent.append(qty)
        await gate.wait()
        return FillConfirmation(symbol=symbol, order_id="x", side="Sell", qty=qty, price=50500.0)

    exchange = AsyncMock(spec=ExchangeConnector)
    exchange.get_margin_balance.return_value = 10000.0
    exchange.enter_long_position.return_value = FillConfirmation("BTCUSDT", "e", "Buy", 0.001, 50000.0)
    exchange.exit_long_position.side_effect = gated_exit
    manager.exchange = exchange

    pm = manager.start_bot("BTCUSDT", Direction.LONG, {"check_interval_seconds": 3600})
    await asyncio.sleep(0.01)
    await pm.enter_position()
    exiting = asyncio.create_task(pm.exit_position("trailing stop"))
    manager.active_bots[("BTCUSDT", Direction.LONG)]["tasks"].add(exiting)
    while not sent:
        await asyncio.sleep(0)

    stopping = asyncio.create_task(manager.stop_bot("BTCUSDT", Direction.LONG))
    await asyncio.sleep(0.01)
    assert not stopping.done()
    gate.set()
    await stopping

    assert len(sent) == 1
    assert pm.position is None
