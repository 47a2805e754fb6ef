# tradeguard/bot_manager.py
import asyncio
import logging
from typing import Dict, Optional, Tuple

from tradeguard.config import config
from tradeguard.data_handler import DataHandler
from tradeguard.datastructures import Direction
from tradeguard.exceptions import ExitFailedError
from tradeguard.exchange_connector import ExchangeConnector
from tradeguard.indicator_cache import IndicatorCache
from tradeguard.market_data import MarketDataProvider
from tradeguard.position_manager import PositionManager
from tradeguard.price_feed import PriceFeed

BotKey = Tuple[str, Direction]


class BotManager:
    """
    Creates, manages, and destroys bot instances, one per (symbol, direction).
    All bots share the single IndicatorCache handed in at construction.
    """
    def __init__(self, exchange: ExchangeConnector, market_data: MarketDataProvider,
                 indicator_cache: IndicatorCache, data_handler: DataHandler,
                 price_feed: Optional[PriceFeed] = None, cfg=config):
        self.exchange = exchange
        self.market_data = market_data
        self.indicator_cache = indicator_cache
        self.data_handler = data_handler
        self.price_feed = price_feed
        self.cfg = cfg
        self.active_bots: Dict[BotKey, Dict[str, object]] = {}

    def start_bot(self, symbol: str, direction: Direction, params: dict = None) -> PositionManager:
        """Spawns the evaluation loop and price consumer for a new bot."""
        key = (symbol, Direction(direction))
        if key in self.active_bots:
            logging.warning(f"Bot for {symbol} {key[1].value} is already running.")
            return self.active_bots[key]["position_manager"]

        logging.info(f"BOT MANAGER: Starting {key[1].value} bot for {symbol} with params: {params or {}}")

        price_update_q = asyncio.Queue()
        self.data_handler.register_bot_queue(symbol, price_update_q)
        if self.price_feed is not None:
            self.price_feed.add_symbol(symbol)

        position_manager = PositionManager(
            symbol=symbol,
            direction=key[1],
            exchange=self.exchange,
            market_data=self.market_data,
            indicator_cache=self.indicator_cache,
            params=params,
            price_update_queue=price_update_q,
            cfg=self.cfg,
        )

        tasks = {
            asyncio.create_task(position_manager.run()),
            asyncio.create_task(position_manager.consume_price_updates()),
        }

        self.active_bots[key] = {
            "tasks": tasks,
            "position_manager": position_manager,
            "price_queue": price_update_q,
        }
        logging.info(f"Bot for {symbol} {key[1].value} is now active.")
        return position_manager

    async def stop_bot(self, symbol: str, direction: Direction, exit_position: bool = True):
        """Stops a bot, optionally closing its position, and saves its state."""
        key = (symbol, Direction(direction))
        if key not in self.active_bots:
            return

        logging.info(f"BOT MANAGER: Stopping {key[1].value} bot for {symbol}.")
        bot_instance = self.active_bots.pop(key)
        pm: PositionManager = bot_instance["position_manager"]

        for task in bot_instance["tasks"]:
            task.cancel()
        await asyncio.gather(*bot_instance["tasks"], return_exceptions=True)

        try:
            # An exit sent by the cancelled cycle may still be at the exchange
            if pm.exit_in_flight:
                await pm.wait_for_pending_exit()
            if exit_position and pm.position is not None:
                await pm.exit_position("bot stopped")
        except ExitFailedError as e:
            logging.error(f"Could not close position while stopping {symbol}: {e}")

        pm.save_state()
        self.data_handler.deregister_bot_queue(symbol, bot_instance["price_queue"])
        if self.price_feed is not None and not any(s == symbol for s, _ in self.active_bots):
            self.price_feed.remove_symbol(symbol)
        logging.info(f"Bot for {symbol} {key[1].value} has been fully stopped.")

    def save_all_states(self):
        """Iterates through all active bots and saves their state."""
        logging.info("Saving state for all active bots on shutdown...")
        for bot_instance in self.active_bots.values():
            bot_instance["position_manager"].save_state()

    def status(self) -> dict:
        return {
            "bots": [bot["position_manager"].status() for bot in self.active_bots.values()],
            "indicator_computations": self.indicator_cache.compute_count,
        }
