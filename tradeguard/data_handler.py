# tradeguard/data_handler.py
import asyncio
import logging
from typing import Dict, List

from tradeguard.datastructures import PriceUpdate


class DataHandler:
    """
    Parses raw trade messages from the PriceFeed and fans the latest price out
    to every bot queue registered for that symbol.
    """
    def __init__(self, input_queue: asyncio.Queue):
        self.input_queue = input_queue
        self.price_update_queues: Dict[str, List[asyncio.Queue]] = {}

    def register_bot_queue(self, symbol: str, price_q: asyncio.Queue):
        """Allows the BotManager to register a price queue for a bot."""
        logging.info(f"DATA HANDLER: Registering price queue for {symbol}")
        self.price_update_queues.setdefault(symbol, []).append(price_q)

    def deregister_bot_queue(self, symbol: str, price_q: asyncio.Queue):
        logging.info(f"DATA HANDLER: Deregistering price queue for {symbol}")
        queues = self.price_update_queues.get(symbol, [])
        if price_q in queues:
            queues.remove(price_q)
        if not queues:
            self.price_update_queues.pop(symbol, None)

    async def process_tick(self, tick_data: dict):
        """Processes a single trade message."""
        topic = tick_data.get('topic', '')
        if not topic.startswith('publicTrade.'):
            return
        symbol = topic.split('.')[-1]
        queues = self.price_update_queues.get(symbol)
        if not queues:
            return
        try:
            prices = [float(trade['p']) for trade in tick_data.get('data', [])]
        except (KeyError, TypeError, ValueError):
            logging.error(f"Malformed trade message: {tick_data}", exc_info=True)
            return
        for price in prices:
            update = PriceUpdate(symbol=symbol, price=price)
            for queue in queues:
                await queue.put(update)

    async def run(self):
        logging.info("DataHandler is running.")
        while True:
            tick = await self.input_queue.get()
            await self.process_tick(tick)
            self.input_queue.task_done()
