# tradeguard/datastructures.py
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Literal, Optional, Sequence


class Direction(str, Enum):
    LONG = 'LONG'
    SHORT = 'SHORT'


class PositionState(str, Enum):
    OPEN = 'OPEN'
    EXIT_TRIGGERED = 'EXIT_TRIGGERED'
    CLOSED = 'CLOSED'


@dataclass(frozen=True)
class Candle:
    """One closed OHLCV bar. Times are epoch milliseconds."""
    open_time: int
    close_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float


def validate_candle_order(candles: Sequence[Candle]) -> None:
    """Raises ValueError unless close times are strictly ascending."""
    for prev, curr in zip(candles, candles[1:]):
        if curr.close_time <= prev.close_time:
            raise ValueError(
                f"Candles out of order: close_time {curr.close_time} follows {prev.close_time}"
            )


@dataclass(frozen=True)
class IndicatorSpec:
    """Names a registered indicator and the parameters to call it with."""
    name: str
    params: Dict[str, object] = field(default_factory=dict)

    def __hash__(self):
        return hash((self.name, tuple(sorted(self.params.items()))))


@dataclass(frozen=True)
class IndicatorSnapshot:
    """
    Indicator values for one (symbol, timeframe), tagged with the close time
    of the last candle they were computed from.
    """
    values: Dict[str, float]
    source_close_time: int

    def get(self, name: str) -> float:
        return self.values.get(name, math.nan)

    @property
    def rsi(self) -> float:
        return self.get('rsi')

    @property
    def macd(self) -> float:
        return self.get('macd')

    @property
    def macd_signal(self) -> float:
        return self.get('macd_signal')

    @property
    def bollinger_lower(self) -> float:
        return self.get('bollinger_lower')

    @property
    def bollinger_upper(self) -> float:
        return self.get('bollinger_upper')

    def is_fresh_for(self, latest_close_time: int) -> bool:
        return self.source_close_time >= latest_close_time

    def to_dict(self) -> dict:
        return {'values': dict(self.values), 'source_close_time': self.source_close_time}

    @classmethod
    def from_dict(cls, raw: dict) -> 'IndicatorSnapshot':
        if not isinstance(raw, dict):
            raise ValueError(f"Snapshot payload must be a dict, got {type(raw).__name__}")
        try:
            values = {str(k): float(v) for k, v in raw['values'].items()}
            source_close_time = int(raw['source_close_time'])
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Malformed snapshot payload: {e}") from e
        return cls(values=values, source_close_time=source_close_time)


@dataclass
class Position:
    """An open leveraged position, owned by exactly one PositionManager."""
    symbol: str
    direction: Direction
    entry_price: float
    quantity: float
    leverage: int
    state: PositionState = PositionState.OPEN
    opened_at: float = field(default_factory=time.time)

    def unrealized_pnl(self, price: float) -> float:
        move = price - self.entry_price if self.direction == Direction.LONG else self.entry_price - price
        return move * self.quantity * self.leverage

    def to_dict(self) -> dict:
        return {
            'symbol': self.symbol,
            'direction': self.direction.value,
            'entry_price': self.entry_price,
            'quantity': self.quantity,
            'leverage': self.leverage,
            'state': self.state.value,
            'opened_at': self.opened_at,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> 'Position':
        return cls(
            symbol=raw['symbol'],
            direction=Direction(raw['direction']),
            entry_price=float(raw['entry_price']),
            quantity=float(raw['quantity']),
            leverage=int(raw['leverage']),
            state=PositionState(raw.get('state', PositionState.OPEN.value)),
            opened_at=float(raw.get('opened_at', time.time())),
        )


@dataclass(frozen=True)
class MarketContext:
    """Everything the exit predicates may read during one evaluation cycle."""
    symbol: str
    current_price: float
    snapshots: Dict[str, Optional[IndicatorSnapshot]] = field(default_factory=dict)

    def snapshot(self, timeframe: str) -> Optional[IndicatorSnapshot]:
        return self.snapshots.get(timeframe)


@dataclass
class FillConfirmation:
    """Represents a confirmed trade fill from the exchange."""
    symbol: str
    order_id: str
    side: Literal['Buy', 'Sell']
    qty: float
    price: float


@dataclass
class PriceUpdate:
    """Represents the latest price update for a symbol."""
    symbol: str
    price: float
