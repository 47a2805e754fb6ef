# tradeguard/market_data.py
import asyncio
import logging
import math
import random
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List

import aiohttp

from tradeguard.config import config
from tradeguard.datastructures import Candle
from tradeguard.exceptions import ExchangeUnavailableError, MarketDataError, RateLimitedError

# Bybit v5 kline intervals and the bar length each one covers
TIMEFRAMES: Dict[str, tuple] = {
    '1m': ('1', 60_000),
    '3m': ('3', 3 * 60_000),
    '5m': ('5', 5 * 60_000),
    '15m': ('15', 15 * 60_000),
    '30m': ('30', 30 * 60_000),
    '1h': ('60', 60 * 60_000),
    '2h': ('120', 2 * 60 * 60_000),
    '4h': ('240', 4 * 60 * 60_000),
    '6h': ('360', 6 * 60 * 60_000),
    '12h': ('720', 12 * 60 * 60_000),
    '1d': ('D', 24 * 60 * 60_000),
    '1w': ('W', 7 * 24 * 60 * 60_000),
}

BYBIT_RATE_LIMIT_CODE = 10006


def timeframe_ms(timeframe: str) -> int:
    try:
        return TIMEFRAMES[timeframe][1]
    except KeyError:
        raise ValueError(f"Unsupported timeframe: {timeframe}") from None


def _now_ms() -> int:
    return int(time.time() * 1000)


class MarketDataProvider(ABC):
    """Source of candles and live prices for the evaluation cycle."""

    @abstractmethod
    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        """Returns up to `limit` closed candles, ascending by close time."""

    @abstractmethod
    async def get_current_price(self, symbol: str) -> float:
        ...


def parse_bybit_klines(rows: list, timeframe: str, now_ms: int) -> List[Candle]:
    """
    Converts Bybit kline rows (newest first, string fields) into ascending
    candles, dropping the bar that is still forming.
    """
    bar_ms = timeframe_ms(timeframe)
    candles = []
    for row in rows:
        open_time = int(row[0])
        close_time = open_time + bar_ms - 1
        if close_time >= now_ms:
            continue
        candles.append(Candle(
            open_time=open_time,
            close_time=close_time,
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        ))
    candles.sort(key=lambda c: c.close_time)
    return candles


class CircuitBreaker:
    """
    Stops calls to an endpoint after consecutive failures.

    States:
    - closed: normal operation
    - open: calls fail fast until `reset_after` seconds have passed
    - half_open: a trial call is let through; one more failure reopens
    """
    def __init__(self, max_failures: int = 5, reset_after: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.max_failures = max_failures
        self.reset_after = reset_after
        self.clock = clock
        self.consecutive_failures = 0
        self.opened_at = None
        self.state = 'closed'

    def allow_request(self) -> bool:
        if self.state != 'open':
            return True
        if self.clock() - self.opened_at < self.reset_after:
            return False
        self.state = 'half_open'
        logging.info("[CIRCUIT] Market data breaker HALF-OPEN, allowing a trial request")
        return True

    def record_success(self):
        if self.state != 'closed':
            logging.info("[CIRCUIT] Market data breaker CLOSED")
        self.consecutive_failures = 0
        self.opened_at = None
        self.state = 'closed'

    def record_failure(self):
        self.consecutive_failures += 1
        if self.state == 'half_open' or self.consecutive_failures >= self.max_failures:
            if self.state != 'open':
                logging.error(f"[CIRCUIT] Market data breaker OPEN after {self.consecutive_failures} "
                              f"consecutive failures, failing fast for {self.reset_after:.0f}s")
            self.state = 'open'
            self.opened_at = self.clock()


class BybitMarketData(MarketDataProvider):
    """
    Public Bybit v5 REST market data over aiohttp with a bounded timeout.

    One instance is shared by every bot, so its request spacing and circuit
    breaker apply to the process as a whole.
    """

    def __init__(self, base_url: str = None, timeout: float = None, category: str = 'linear',
                 clock: Callable[[], int] = _now_ms, min_interval: float = None,
                 breaker: CircuitBreaker = None):
        self.base_url = (base_url or config.REST_URL).rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout or config.MARKET_DATA_TIMEOUT)
        self.category = category
        self.clock = clock
        self.min_interval = config.MARKET_DATA_MIN_INTERVAL if min_interval is None else min_interval
        self.breaker = breaker or CircuitBreaker(config.CIRCUIT_BREAKER_MAX_FAILURES,
                                                 config.CIRCUIT_BREAKER_RESET_SECONDS)
        self._rate_lock = asyncio.Lock()
        self._last_request_time = 0.0

    async def _throttle(self):
        async with self._rate_lock:
            elapsed = time.monotonic() - self._last_request_time
            if elapsed < self.min_interval:
                await asyncio.sleep(self.min_interval - elapsed)
            self._last_request_time = time.monotonic()

    async def _get(self, path: str, params: dict) -> dict:
        if not self.breaker.allow_request():
            raise ExchangeUnavailableError(f"Circuit open, not calling {path}")
        await self._throttle()
        try:
            result = await self._request(path, params)
        except MarketDataError:
            self.breaker.record_failure()
            raise
        self.breaker.record_success()
        return result

    async def _request(self, path: str, params: dict) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, params=params) as response:
                    if response.status in (403, 429):
                        raise RateLimitedError(f"HTTP {response.status} from {path}")
                    response.raise_for_status()
                    data = await response.json()
        except asyncio.TimeoutError as e:
            raise ExchangeUnavailableError(f"Timed out after {self.timeout.total}s calling {path}") from e
        except aiohttp.ClientError as e:
            raise ExchangeUnavailableError(f"Request to {path} failed: {e}") from e
        except ValueError as e:
            raise ExchangeUnavailableError(f"Malformed JSON from {path}: {e}") from e

        if not isinstance(data, dict):
            raise ExchangeUnavailableError(f"Unexpected payload from {path}: {data!r}")
        ret_code = data.get('retCode')
        if ret_code == BYBIT_RATE_LIMIT_CODE:
            raise RateLimitedError(data.get('retMsg', 'rate limited'))
        if ret_code != 0:
            raise ExchangeUnavailableError(f"{path} returned retCode {ret_code}: {data.get('retMsg')}")
        result = data.get('result')
        if not isinstance(result, dict):
            raise ExchangeUnavailableError(f"{path} response has no result")
        return result

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        if timeframe not in TIMEFRAMES:
            raise ValueError(f"Unsupported timeframe: {timeframe}")
        interval = TIMEFRAMES[timeframe][0]
        # One extra row to make up for the bar still forming
        result = await self._get('/v5/market/kline', {
            'category': self.category,
            'symbol': symbol,
            'interval': interval,
            'limit': min(limit + 1, 1000),
        })
        try:
            candles = parse_bybit_klines(result.get('list', []), timeframe, self.clock())
        except (IndexError, TypeError, ValueError) as e:
            raise ExchangeUnavailableError(f"Malformed kline rows for {symbol} {timeframe}: {e}") from e
        logging.debug(f"Fetched {len(candles)} closed {timeframe} candles for {symbol}")
        return candles[-limit:]

    async def get_current_price(self, symbol: str) -> float:
        result = await self._get('/v5/market/tickers', {'category': self.category, 'symbol': symbol})
        tickers = result.get('list', [])
        if not tickers:
            raise ExchangeUnavailableError(f"No ticker returned for {symbol}")
        try:
            return float(tickers[0]['lastPrice'])
        except (KeyError, TypeError, ValueError) as e:
            raise ExchangeUnavailableError(f"Malformed ticker for {symbol}: {e}") from e


class SimulatedMarketData(MarketDataProvider):
    """
    Synthetic market for SIMULATION mode. Candles are a deterministic function
    of (symbol, timeframe, bar index), so repeated fetches within one bar agree
    and a new bar appears only when the clock crosses a bar boundary.
    """

    def __init__(self, start_price: float = 30000.0, seed: int = 0, clock: Callable[[], int] = _now_ms):
        self.start_price = start_price
        self.seed = seed
        self.clock = clock
        self.prices: Dict[str, float] = {}
        self._rng = random.Random(seed)

    def _bar_close(self, symbol: str, timeframe: str, index: int) -> float:
        noise = random.Random(f"{self.seed}:{symbol}:{timeframe}:{index}").uniform(-0.01, 0.01)
        return self.start_price * (1 + 0.05 * math.sin(index / 7.0) + noise)

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        bar_ms = timeframe_ms(timeframe)
        last_index = self.clock() // bar_ms - 1  # last fully closed bar
        candles = []
        prev_close = self._bar_close(symbol, timeframe, last_index - limit)
        for index in range(last_index - limit + 1, last_index + 1):
            close = self._bar_close(symbol, timeframe, index)
            candles.append(Candle(
                open_time=index * bar_ms,
                close_time=(index + 1) * bar_ms - 1,
                open=prev_close,
                high=max(prev_close, close) * 1.002,
                low=min(prev_close, close) * 0.998,
                close=close,
                volume=1.0,
            ))
            prev_close = close
        return candles

    def next_trade(self, symbol: str) -> float:
        """Advances the simulated last-trade price by a small random step."""
        price = self.prices.get(symbol, self.start_price)
        price += self._rng.uniform(-0.001, 0.001) * price
        self.prices[symbol] = price
        return price

    async def get_current_price(self, symbol: str) -> float:
        return self.prices.get(symbol, self.start_price)
