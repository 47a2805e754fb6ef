# tradeguard/price_feed.py
import asyncio
import json
import logging
import time
from typing import Optional, Set

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from tradeguard.config import config
from tradeguard.market_data import SimulatedMarketData


class PriceFeed:
    """
    Streams public trades for the tracked symbols into `output_queue` as raw
    Bybit `publicTrade` messages. In SIMULATION mode the same message shape is
    synthesised from a SimulatedMarketData random walk.
    """
    def __init__(self, output_queue: asyncio.Queue, simulator: Optional[SimulatedMarketData] = None,
                 ws_url: str = None, mode: str = None, interval: float = 0.5):
        self.output_queue = output_queue
        self.simulator = simulator
        self.ws_url = ws_url or config.WEBSOCKET_URL
        self.mode = mode or config.MODE
        self.interval = interval
        self.symbols: Set[str] = set()
        self._websocket = None

    def add_symbol(self, symbol: str):
        if symbol in self.symbols:
            return
        self.symbols.add(symbol)
        if self._websocket is not None:
            asyncio.create_task(self._send_op("subscribe", [symbol]))

    def remove_symbol(self, symbol: str):
        if symbol not in self.symbols:
            return
        self.symbols.discard(symbol)
        if self._websocket is not None:
            asyncio.create_task(self._send_op("unsubscribe", [symbol]))

    async def _send_op(self, op: str, symbols):
        args = [f"publicTrade.{symbol}" for symbol in symbols]
        if not args or self._websocket is None:
            return
        try:
            await self._websocket.send(json.dumps({"op": op, "args": args}))
            logging.info(f"{op.capitalize()}d to: {args}")
        except ConnectionClosed:
            logging.warning(f"Could not {op} {args}: connection closed")

    async def _run_live(self):
        while True:
            try:
                async with connect(self.ws_url, ping_interval=20) as websocket:
                    logging.info(f"Connected to LIVE feed at {self.ws_url}")
                    self._websocket = websocket
                    await self._send_op("subscribe", sorted(self.symbols))
                    async for message in websocket:
                        await self.output_queue.put(json.loads(message))
            except ConnectionClosed as e:
                logging.error(f"Live connection closed: {e}. Reconnecting...")
                await asyncio.sleep(5)
            except (OSError, asyncio.TimeoutError) as e:
                logging.error(f"Live feed connection failed: {e}. Retrying in 15s...")
                await asyncio.sleep(15)
            finally:
                self._websocket = None

    def simulated_trade(self, symbol: str) -> dict:
        price = self.simulator.next_trade(symbol)
        now = int(time.time() * 1000)
        return {
            "topic": f"publicTrade.{symbol}",
            "type": "snapshot",
            "ts": now,
            "data": [{"T": now, "s": symbol, "p": f"{price:.2f}", "v": "0.001"}],
        }

    async def _run_simulation(self):
        logging.info("Starting SIMULATED market data feed.")
        while True:
            for symbol in sorted(self.symbols):
                await self.output_queue.put(self.simulated_trade(symbol))
            await asyncio.sleep(self.interval)

    async def run(self):
        if self.mode == 'LIVE':
            await self._run_live()
        else:
            await self._run_simulation()
