# tradeguard/trailing_stop.py
import logging
import math
import threading

from tradeguard.datastructures import Direction


class TrailingStopTracker:
    """
    Follows the best price reached since entry for one position and decides
    when price has retraced far enough to stop out.

    `trailing_percent` is a fraction: 0.01 means a 1% trail.
    """
    def __init__(self, symbol: str, direction: Direction, entry_price: float, trailing_percent: float):
        if entry_price <= 0:
            raise ValueError(f"Entry price must be positive, got {entry_price}")
        if not 0 < trailing_percent < 1:
            raise ValueError(f"Trailing percent must be a fraction in (0, 1), got {trailing_percent}")
        self.symbol = symbol
        self._direction = Direction(direction)
        self._entry_price = entry_price
        self._best_price = entry_price
        self.trailing_percent = trailing_percent
        self._lock = threading.Lock()
        logging.info(f"[{symbol}] Trailing stop initialized at {entry_price:.2f} ({self._direction.value})")

    @property
    def entry_price(self) -> float:
        return self._entry_price

    @property
    def direction(self) -> Direction:
        return self._direction

    @property
    def best_price(self) -> float:
        with self._lock:
            return self._best_price

    def on_price_update(self, price: float) -> None:
        if not price > 0 or math.isinf(price):
            return
        with self._lock:
            if self._direction == Direction.LONG and price > self._best_price:
                self._best_price = price
            elif self._direction == Direction.SHORT and price < self._best_price:
                self._best_price = price
            else:
                return
            best = self._best_price
        logging.debug(f"[{self.symbol}] Updated trailing stop: new best price {best:.2f}")

    def _stop_price(self, best: float) -> float:
        if self._direction == Direction.LONG:
            return best * (1 - self.trailing_percent)
        return best * (1 + self.trailing_percent)

    def stop_price(self) -> float:
        with self._lock:
            return self._stop_price(self._best_price)

    def should_trigger_stop(self, current_price: float) -> bool:
        if math.isnan(current_price):
            return False
        with self._lock:
            stop = self._stop_price(self._best_price)
        if self._direction == Direction.LONG:
            triggered = current_price <= stop
        else:
            triggered = current_price >= stop
        if triggered:
            logging.info(
                f"[{self.symbol}] Trailing stop-loss triggered! Price: {current_price:.2f}, Stop price: {stop:.2f}"
            )
        return triggered

    def to_dict(self) -> dict:
        with self._lock:
            return {
                'symbol': self.symbol,
                'direction': self._direction.value,
                'entry_price': self._entry_price,
                'best_price': self._best_price,
                'trailing_percent': self.trailing_percent,
            }

    @classmethod
    def from_dict(cls, raw: dict) -> 'TrailingStopTracker':
        tracker = cls(raw['symbol'], Direction(raw['direction']), float(raw['entry_price']),
                      float(raw['trailing_percent']))
        tracker.on_price_update(float(raw['best_price']))
        return tracker
