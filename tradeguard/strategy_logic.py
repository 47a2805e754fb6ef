# tradeguard/strategy_logic.py
import logging
import math
from typing import Optional

from tradeguard.datastructures import Direction, IndicatorSnapshot


def is_entry_signal_valid(direction: Direction, current_price: float,
                          daily: Optional[IndicatorSnapshot], weekly: Optional[IndicatorSnapshot], cfg) -> bool:
    """
    Mean-reversion entry: a long needs an oversold daily RSI, a bullish MACD
    and price hugging the lower band while the weekly trend is not overbought.
    Shorts mirror it.
    """
    if daily is None or weekly is None:
        return False
    inputs = (current_price, daily.rsi, daily.macd, daily.macd_signal,
              daily.bollinger_lower, daily.bollinger_upper, weekly.rsi)
    if any(math.isnan(v) for v in inputs):
        logging.debug("Entry check skipped: indicator values not yet defined")
        return False

    if Direction(direction) == Direction.LONG:
        return (daily.rsi <= cfg.RSI_OVERSOLD
                and daily.macd > daily.macd_signal
                and current_price <= daily.bollinger_lower * 1.01
                and weekly.rsi < cfg.RSI_OVERBOUGHT)
    return (daily.rsi >= cfg.RSI_OVERBOUGHT
            and daily.macd < daily.macd_signal
            and current_price >= daily.bollinger_upper * 0.99
            and weekly.rsi > cfg.RSI_OVERSOLD)
