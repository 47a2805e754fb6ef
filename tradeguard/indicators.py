# tradeguard/indicators.py
"""
Pure technical-indicator functions over a window of closed candles.

Every indicator is registered by name together with the number of candles it
needs before it yields a defined value. Callers (the IndicatorCache) only deal
in IndicatorSpecs, so adding an indicator means registering one more function
here.
"""
import math
from typing import Callable, Dict, Sequence

import numpy as np
import pandas as pd

from tradeguard.datastructures import Candle, IndicatorSnapshot, IndicatorSpec

IndicatorFn = Callable[..., float]
LookbackFn = Callable[..., int]

_REGISTRY: Dict[str, IndicatorFn] = {}
_LOOKBACKS: Dict[str, LookbackFn] = {}


def register_indicator(name: str, lookback: LookbackFn):
    """Registers `fn(closes: pd.Series, **params) -> float` under `name`."""
    def decorator(fn: IndicatorFn) -> IndicatorFn:
        _REGISTRY[name] = fn
        _LOOKBACKS[name] = lookback
        return fn
    return decorator


def registered_indicators() -> list:
    return sorted(_REGISTRY)


def required_lookback(spec: IndicatorSpec) -> int:
    return _LOOKBACKS[spec.name](**spec.params)


def close_series(candles: Sequence[Candle]) -> pd.Series:
    return pd.Series([c.close for c in candles], dtype='float64')


# --- Building blocks ---

def ema_series(values: np.ndarray, period: int) -> np.ndarray:
    """EMA seeded with the SMA of the first `period` values; NaN before that."""
    out = np.full(len(values), np.nan)
    if len(values) < period:
        return out
    multiplier = 2.0 / (period + 1)
    ema = float(np.mean(values[:period]))
    out[period - 1] = ema
    for i in range(period, len(values)):
        ema = (values[i] - ema) * multiplier + ema
        out[i] = ema
    return out


def macd_series(closes: pd.Series, fast: int, slow: int) -> np.ndarray:
    values = closes.to_numpy(dtype='float64')
    return ema_series(values, fast) - ema_series(values, slow)


# --- Registered indicators ---

@register_indicator('rsi', lookback=lambda period=14: period + 1)
def rsi(closes: pd.Series, period: int = 14) -> float:
    """Wilder's RSI on a 0-100 scale. NaN when price never moved."""
    if len(closes) < period + 1:
        return math.nan
    changes = closes.diff().to_numpy()[1:]
    gains = np.where(changes > 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)

    avg_gain = float(np.mean(gains[:period]))
    avg_loss = float(np.mean(losses[:period]))
    for i in range(period, len(gains)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else math.nan
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


@register_indicator('ema', lookback=lambda period=20: period)
def ema(closes: pd.Series, period: int = 20) -> float:
    return float(ema_series(closes.to_numpy(dtype='float64'), period)[-1]) if len(closes) else math.nan


@register_indicator('macd', lookback=lambda fast=12, slow=26: slow)
def macd(closes: pd.Series, fast: int = 12, slow: int = 26) -> float:
    if len(closes) < slow:
        return math.nan
    return float(macd_series(closes, fast, slow)[-1])


@register_indicator('macd_signal', lookback=lambda fast=12, slow=26, signal=9: slow + signal - 1)
def macd_signal(closes: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> float:
    if len(closes) < slow + signal - 1:
        return math.nan
    line = macd_series(closes, fast, slow)[slow - 1:]
    return float(ema_series(line, signal)[-1])


@register_indicator('bollinger', lookback=lambda period=20, k=2.0, side='lower': period)
def bollinger(closes: pd.Series, period: int = 20, k: float = 2.0, side: str = 'lower') -> float:
    """Lower or upper Bollinger band using the population standard deviation."""
    if side not in ('lower', 'upper', 'middle'):
        raise ValueError(f"Unknown Bollinger side: {side}")
    if len(closes) < period:
        return math.nan
    window = closes.iloc[-period:]
    middle = float(window.mean())
    if side == 'middle':
        return middle
    std = float(window.std(ddof=0))
    return middle - k * std if side == 'lower' else middle + k * std


# --- Engine entry points ---

def compute(candles: Sequence[Candle], spec: IndicatorSpec) -> float:
    """Computes one indicator value at the last candle of the window."""
    fn = _REGISTRY[spec.name]
    return float(fn(close_series(candles), **spec.params))


def compute_snapshot(candles: Sequence[Candle], specs: Dict[str, IndicatorSpec]) -> IndicatorSnapshot:
    closes = close_series(candles)
    values = {field: float(_REGISTRY[spec.name](closes, **spec.params)) for field, spec in specs.items()}
    return IndicatorSnapshot(values=values, source_close_time=candles[-1].close_time)


def min_candles_for(specs: Dict[str, IndicatorSpec]) -> int:
    return max((required_lookback(spec) for spec in specs.values()), default=1)


def default_indicator_specs(cfg) -> Dict[str, IndicatorSpec]:
    """The snapshot fields the exit and entry logic read."""
    return {
        'rsi': IndicatorSpec('rsi', {'period': cfg.RSI_PERIOD}),
        'macd': IndicatorSpec('macd', {'fast': cfg.MACD_FAST, 'slow': cfg.MACD_SLOW}),
        'macd_signal': IndicatorSpec(
            'macd_signal', {'fast': cfg.MACD_FAST, 'slow': cfg.MACD_SLOW, 'signal': cfg.MACD_SIGNAL}
        ),
        'bollinger_lower': IndicatorSpec('bollinger', {'period': cfg.BB_PERIOD, 'k': cfg.BB_STD, 'side': 'lower'}),
        'bollinger_upper': IndicatorSpec('bollinger', {'period': cfg.BB_PERIOD, 'k': cfg.BB_STD, 'side': 'upper'}),
    }
