# tradeguard/indicator_cache.py
import asyncio
import logging
from typing import Dict, Optional, Tuple

from tradeguard import indicators
from tradeguard.cache_store import CacheStore
from tradeguard.datastructures import IndicatorSnapshot, IndicatorSpec, validate_candle_order
from tradeguard.exceptions import ExchangeUnavailableError
from tradeguard.market_data import MarketDataProvider


class IndicatorCache:
    """
    Cache-aside store of indicator snapshots keyed by (symbol, timeframe).

    A cached snapshot is reused only while no newer candle has closed than the
    one it was computed from. The miss path is single-flight per key so bots
    sharing a symbol never recompute the same window concurrently. Hits do not
    take the lock.
    """
    def __init__(self, market_data: MarketDataProvider, store: CacheStore,
                 specs: Dict[str, IndicatorSpec], candle_limit: int = 100, min_candles: int = None):
        self.market_data = market_data
        self.store = store
        self.specs = dict(specs)
        self.candle_limit = candle_limit
        self.min_candles = min_candles if min_candles is not None else indicators.min_candles_for(self.specs)
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self.compute_count = 0

    @staticmethod
    def cache_key(symbol: str, timeframe: str) -> str:
        return f"indicators:{symbol}:{timeframe}"

    async def _read(self, key: str) -> Optional[IndicatorSnapshot]:
        """Reads an entry; anything unreadable is dropped and reported as a miss."""
        try:
            raw = await self.store.get(key)
            if raw is None:
                return None
            return IndicatorSnapshot.from_dict(raw)
        except Exception as e:
            logging.warning(f"Discarding unreadable cache entry {key}: {e}")
            try:
                await self.store.delete(key)
            except Exception:
                logging.error(f"Could not delete unreadable cache entry {key}", exc_info=True)
            return None

    async def get_or_compute(self, symbol: str, timeframe: str) -> Optional[IndicatorSnapshot]:
        """
        Returns a snapshot reflecting the latest closed candle, or None when
        there is not enough history yet. Market-data failures propagate.
        """
        candles = await self.market_data.fetch_candles(symbol, timeframe, self.candle_limit)
        try:
            validate_candle_order(candles)
        except ValueError as e:
            raise ExchangeUnavailableError(f"Unusable {timeframe} candles for {symbol}: {e}") from e
        if len(candles) < self.min_candles:
            logging.warning(
                f"Insufficient data for indicators: {symbol}, timeframe: {timeframe} "
                f"({len(candles)}/{self.min_candles} candles)"
            )
            return None

        latest_close_time = candles[-1].close_time
        key = self.cache_key(symbol, timeframe)

        cached = await self._read(key)
        if cached is not None and cached.is_fresh_for(latest_close_time):
            return cached

        lock = self._locks.setdefault((symbol, timeframe), asyncio.Lock())
        async with lock:
            # Another caller may have filled the entry while we waited
            cached = await self._read(key)
            if cached is not None and cached.is_fresh_for(latest_close_time):
                return cached
            if cached is not None:
                logging.info(f"New {timeframe} candle detected for {symbol}, invalidating cache")
                await self.store.delete(key)

            logging.info(f"Computing indicators for {symbol} on {timeframe} timeframe")
            snapshot = indicators.compute_snapshot(candles, self.specs)
            self.compute_count += 1
            await self.store.set(key, snapshot.to_dict())
            return snapshot

    async def evict(self, symbol: str, timeframe: str) -> None:
        logging.info(f"Evicting cache for {symbol} on {timeframe} timeframe")
        await self.store.delete(self.cache_key(symbol, timeframe))
