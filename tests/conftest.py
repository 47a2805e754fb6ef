import asyncio
import os
import sys
from types import SimpleNamespace

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from tradeguard.config import Config  # noqa: E402
from tradeguard.datastructures import Candle  # noqa: E402
from tradeguard.exceptions import ExchangeUnavailableError  # noqa: E402
from tradeguard.market_data import MarketDataProvider  # noqa: E402

DAY_MS = 24 * 60 * 60 * 1000


def make_config(**overrides):
    """Snapshot of the Config class attributes with test overrides applied."""
    values = {name: getattr(Config, name) for name in dir(Config) if name.isupper()}
    values.update(overrides)
    return SimpleNamespace(**values)


def make_candles(closes, start_ms=0, bar_ms=DAY_MS):
    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        open_time = start_ms + i * bar_ms
        candles.append(Candle(
            open_time=open_time,
            close_time=open_time + bar_ms - 1,
            open=prev,
            high=max(prev, close) + 1,
            low=min(prev, close) - 1,
            close=float(close),
            volume=10.0,
        ))
        prev = close
    return candles


def wavy_closes(n=100, base=100.0):
    return [base + (i % 7) * 1.5 - (i % 5) * 2.0 + i * 0.1 for i in range(n)]


class FakeMarketData(MarketDataProvider):
    """Scriptable provider: candles per (symbol, timeframe), a price per symbol, optional failure."""

    def __init__(self, candles=None, price=50000.0):
        self.candles = dict(candles or {})
        self.prices = {}
        self.default_price = price
        self.fail_with = None
        self.fetch_calls = 0
        self.price_calls = 0

    async def fetch_candles(self, symbol, timeframe, limit):
        self.fetch_calls += 1
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.candles.get((symbol, timeframe), []))[-limit:]

    async def get_current_price(self, symbol):
        self.price_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return self.prices.get(symbol, self.default_price)


@pytest.fixture
def cfg(tmp_path):
    return make_config(STATE_DIR=str(tmp_path), MARKET_DATA_TIMEOUT=1.0)


@pytest.fixture
def market_data():
    return FakeMarketData()


@pytest.fixture
def unavailable():
    return ExchangeUnavailableError("exchange down")
