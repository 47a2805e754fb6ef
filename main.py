# main.py
import asyncio
import logging
import signal
import threading
from typing import Set

from tradeguard.logger import setup_logging
from tradeguard.config import config
from tradeguard.cache_store import build_cache_store
from tradeguard.data_handler import DataHandler
from tradeguard.datastructures import Direction
from tradeguard.exchange_connector import BybitExchange, PaperExchange
from tradeguard.indicator_cache import IndicatorCache
from tradeguard.indicators import default_indicator_specs
from tradeguard.market_data import BybitMarketData, CircuitBreaker, SimulatedMarketData
from tradeguard.price_feed import PriceFeed
from tradeguard.bot_manager import BotManager

running_tasks: Set[asyncio.Task] = set()


def build_bot_manager(cfg=config) -> BotManager:
    """Constructs every shared collaborator exactly once and wires them together."""
    market_data_q = asyncio.Queue()

    if cfg.MODE == 'LIVE':
        market_data = BybitMarketData(
            base_url=cfg.REST_URL,
            timeout=cfg.MARKET_DATA_TIMEOUT,
            min_interval=cfg.MARKET_DATA_MIN_INTERVAL,
            breaker=CircuitBreaker(cfg.CIRCUIT_BREAKER_MAX_FAILURES, cfg.CIRCUIT_BREAKER_RESET_SECONDS),
        )
        exchange = BybitExchange(market_data)
        simulator = None
    else:
        logging.info("Running in SIMULATION mode. pybit session not created.")
        market_data = simulator = SimulatedMarketData()
        exchange = PaperExchange(market_data, initial_balance=cfg.INITIAL_CAPITAL)

    indicator_cache = IndicatorCache(
        market_data=market_data,
        store=build_cache_store(cfg),
        specs=default_indicator_specs(cfg),
        candle_limit=cfg.CANDLE_LIMIT,
    )
    price_feed = PriceFeed(output_queue=market_data_q, simulator=simulator, mode=cfg.MODE)
    data_handler = DataHandler(input_queue=market_data_q)

    return BotManager(
        exchange=exchange,
        market_data=market_data,
        indicator_cache=indicator_cache,
        data_handler=data_handler,
        price_feed=price_feed,
        cfg=cfg,
    )


def start_status_server(bot_manager: BotManager, port: int):
    from app import create_app

    status_app = create_app(bot_manager)
    thread = threading.Thread(
        target=lambda: status_app.run(host="0.0.0.0", port=port, use_reloader=False),
        name="status-server",
        daemon=True,
    )
    thread.start()
    logging.info(f"Status server listening on port {port}")


def handle_shutdown(sig, bot_manager):
    logging.info(f"Received shutdown signal {sig.name}. Stopping bots and saving state...")
    bot_manager.save_all_states()

    for task in running_tasks:
        task.cancel()


async def main():
    setup_logging()
    logging.info(f"Initializing exit engine in {config.MODE} mode...")

    bot_manager = build_bot_manager()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_shutdown, sig, bot_manager)

    if config.STATUS_PORT:
        start_status_server(bot_manager, config.STATUS_PORT)

    # --- Create and Track Core Service Tasks ---
    for coro in (bot_manager.price_feed.run(), bot_manager.data_handler.run()):
        task = asyncio.create_task(coro)
        running_tasks.add(task)
        task.add_done_callback(running_tasks.discard)

    direction = Direction(config.TRADE_DIRECTION)
    for symbol in config.SYMBOLS:
        bot_manager.start_bot(symbol, direction)
    for bot in bot_manager.active_bots.values():
        running_tasks.update(bot["tasks"])

    logging.info(f"Starting {len(running_tasks)} service tasks...")

    try:
        await asyncio.gather(*running_tasks)
    except asyncio.CancelledError:
        logging.info("Main task group cancelled. Engine is shutting down.")
    finally:
        await bot_manager.indicator_cache.store.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    finally:
        logging.info("Engine shutdown complete.")
