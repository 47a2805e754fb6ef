import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import DAY_MS, FakeMarketData, make_candles, make_config, wavy_closes
from tradeguard.cache_store import InMemoryCacheStore
from tradeguard.exceptions import ExchangeUnavailableError
from tradeguard.indicator_cache import IndicatorCache
from tradeguard.indicators import default_indicator_specs

SYMBOL = "BTCUSDT"
TF = "1d"


@pytest.fixture
def provider():
    return FakeMarketData({(SYMBOL, TF): make_candles(wavy_closes(60))})


@pytest.fixture
def store():
    return InMemoryCacheStore()


@pytest.fixture
def cache(provider, store):
    return IndicatorCache(provider, store, default_indicator_specs(make_config()))


def add_candle(provider, close):
    candles = provider.candles[(SYMBOL, TF)]
    provider.candles[(SYMBOL, TF)] = candles + make_candles([close], start_ms=candles[-1].open_time + DAY_MS)


@pytest.mark.asyncio
async def test_second_call_is_a_hit(cache, provider, store):
    first = await cache.get_or_compute(SYMBOL, TF)
    second = await cache.get_or_compute(SYMBOL, TF)

    assert first is not None
    assert second == first
    assert cache.compute_count == 1
    assert provider.fetch_calls == 2
    assert IndicatorCache.cache_key(SYMBOL, TF) in store._data


@pytest.mark.asyncio
async def test_new_closed_candle_forces_recompute(cache, provider):
    first = await cache.get_or_compute(SYMBOL, TF)
    add_candle(provider, 150.0)

    second = await cache.get_or_compute(SYMBOL, TF)

    assert cache.compute_count == 2
    assert second.source_close_time > first.source_close_time
    assert second.source_close_time == provider.candles[(SYMBOL, TF)][-1].close_time


@pytest.mark.asyncio
async def test_returned_snapshot_always_matches_latest_candle(cache, provider):
    for close in (101.0, 99.0, 104.0):
        add_candle(provider, close)
        snapshot = await cache.get_or_compute(SYMBOL, TF)
        assert snapshot.source_close_time == provider.candles[(SYMBOL, TF)][-1].close_time


@pytest.mark.asyncio
async def test_insufficient_history_is_indeterminate(store):
    provider = FakeMarketData({(SYMBOL, TF): make_candles(wavy_closes(33))})
    cache = IndicatorCache(provider, store, default_indicator_specs(make_config()))

    assert cache.min_candles == 34
    assert await cache.get_or_compute(SYMBOL, TF) is None
    assert cache.compute_count == 0
    assert len(store) == 0


@pytest.mark.asyncio
async def test_fetch_failure_propagates_and_stale_entry_is_not_served(cache, provider):
    await cache.get_or_compute(SYMBOL, TF)
    provider.fail_with = ExchangeUnavailableError("timeout")

    with pytest.raises(ExchangeUnavailableError):
        await cache.get_or_compute(SYMBOL, TF)
    assert cache.compute_count == 1


@pytest.mark.asyncio
async def test_corrupt_entry_is_a_miss(cache, store):
    key = IndicatorCache.cache_key(SYMBOL, TF)
    store._data[key] = {"values": "garbage"}

    snapshot = await cache.get_or_compute(SYMBOL, TF)

    assert snapshot is not None
    assert cache.compute_count == 1
    assert store._data[key] == snapshot.to_dict()


@pytest.mark.asyncio
async def test_store_read_error_is_a_miss(provider):
    store = AsyncMock()
    store.get.side_effect = ValueError("bad json")
    cache = IndicatorCache(provider, store, default_indicator_specs(make_config()))

    snapshot = await cache.get_or_compute(SYMBOL, TF)

    assert snapshot is not None
    store.delete.assert_awaited_with(IndicatorCache.cache_key(SYMBOL, TF))
    store.set.assert_awaited_once()


@pytest.mark.asyncio
async def test_concurrent_callers_compute_once(cache):
    results = await asyncio.gather(*(cache.get_or_compute(SYMBOL, TF) for _ in range(10)))

    assert cache.compute_count == 1
    assert all(r == results[0] for r in results)


@pytest.mark.asyncio
async def test_keys_are_independent(provider, store):
    provider.candles[("ETHUSDT", TF)] = make_candles(wavy_closes(60, base=2000.0))
    provider.candles[(SYMBOL, "1w")] = make_candles(wavy_closes(60), bar_ms=7 * DAY_MS)
    cache = IndicatorCache(provider, store, default_indicator_specs(make_config()))

    btc = await cache.get_or_compute(SYMBOL, TF)
    eth = await cache.get_or_compute("ETHUSDT", TF)
    weekly = await cache.get_or_compute(SYMBOL, "1w")

    assert cache.compute_count == 3
    assert btc.rsi == weekly.rsi
    assert btc.source_close_time != weekly.source_close_time
    assert eth.bollinger_upper > btc.bollinger_upper


@pytest.mark.asyncio
async def test_evict_forces_recompute(cache, store):
    await cache.get_or_compute(SYMBOL, TF)
    await cache.evict(SYMBOL, TF)

    assert len(store) == 0
    await cache.get_or_compute(SYMBOL, TF)
    assert cache.compute_count == 2


@pytest.mark.asyncio
async def test_out_of_order_window_is_a_market_data_failure(cache, provider, store):
    candles = provider.candles[(SYMBOL, TF)]
    provider.candles[(SYMBOL, TF)] = candles[:-2] + [candles[-1], candles[-2]]

    with pytest.raises(ExchangeUnavailableError):
        await cache.get_or_compute(SYMBOL, TF)
    assert cache.compute_count == 0
    assert len(store) == 0
