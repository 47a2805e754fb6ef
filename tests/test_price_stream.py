import asyncio

import pytest

from tradeguard.data_handler import DataHandler
from tradeguard.datastructures import PriceUpdate
from tradeguard.market_data import SimulatedMarketData
from tradeguard.price_feed import PriceFeed


def trade_message(symbol, *prices):
    return {"topic": f"publicTrade.{symbol}", "data": [{"s": symbol, "p": str(p)} for p in prices]}


@pytest.mark.asyncio
async def test_trades_fan_out_to_every_registered_queue():
    handler = DataHandler(asyncio.Queue())
    first, second = asyncio.Queue(), asyncio.Queue()
    handler.register_bot_queue("BTCUSDT", first)
    handler.register_bot_queue("BTCUSDT", second)

    await handler.process_tick(trade_message("BTCUSDT", 50000.5, 50001))

    for queue in (first, second):
        assert queue.qsize() == 2
        assert queue.get_nowait() == PriceUpdate("BTCUSDT", 50000.5)
        assert queue.get_nowait() == PriceUpdate("BTCUSDT", 50001.0)


@pytest.mark.asyncio
async def test_ignores_other_topics_and_symbols():
    handler = DataHandler(asyncio.Queue())
    queue = asyncio.Queue()
    handler.register_bot_queue("BTCUSDT", queue)

    await handler.process_tick({"topic": "orderbook.1.BTCUSDT", "data": []})
    await handler.process_tick(trade_message("ETHUSDT", 3000))
    await handler.process_tick({"op": "subscribe", "success": True})

    assert queue.empty()


@pytest.mark.asyncio
async def test_malformed_trade_is_dropped():
    handler = DataHandler(asyncio.Queue())
    queue = asyncio.Queue()
    handler.register_bot_queue("BTCUSDT", queue)

    await handler.process_tick({"topic": "publicTrade.BTCUSDT", "data": [{"p": "not-a-price"}]})

    assert queue.empty()


def test_deregister_last_queue_forgets_symbol():
    handler = DataHandler(asyncio.Queue())
    queue = asyncio.Queue()
    handler.register_bot_queue("BTCUSDT", queue)

    handler.deregister_bot_queue("BTCUSDT", queue)

    assert "BTCUSDT" not in handler.price_update_queues


@pytest.mark.asyncio
async def test_deregistered_queue_stops_receiving():
    handler = DataHandler(asyncio.Queue())
    stopped, running = asyncio.Queue(), asyncio.Queue()
    handler.register_bot_queue("BTCUSDT", stopped)
    handler.register_bot_queue("BTCUSDT", running)

    handler.deregister_bot_queue("BTCUSDT", stopped)
    await handler.process_tick(trade_message("BTCUSDT", 50000))

    assert stopped.empty()
    assert running.get_nowait() == PriceUpdate("BTCUSDT", 50000.0)


@pytest.mark.asyncio
async def test_simulated_feed_produces_trade_messages():
    simulator = SimulatedMarketData(start_price=100.0)
    feed = PriceFeed(asyncio.Queue(), simulator=simulator, mode="SIMULATION")
    handler = DataHandler(feed.output_queue)
    queue = asyncio.Queue()
    handler.register_bot_queue("BTCUSDT", queue)
    feed.add_symbol("BTCUSDT")

    message = feed.simulated_trade("BTCUSDT")
    await handler.process_tick(message)

    update = queue.get_nowait()
    assert message["topic"] == "publicTrade.BTCUSDT"
    assert update.price == pytest.approx(simulator.prices["BTCUSDT"], abs=0.01)


def test_symbols_without_connection_are_only_tracked():
    feed = PriceFeed(asyncio.Queue(), mode="SIMULATION")
    feed.add_symbol("BTCUSDT")
    feed.add_symbol("BTCUSDT")
    assert feed.symbols == {"BTCUSDT"}

    feed.remove_symbol("BTCUSDT")
    assert feed.symbols == set()
