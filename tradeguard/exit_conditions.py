# tradeguard/exit_conditions.py
import logging
import math
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Set

from tradeguard.datastructures import Direction, MarketContext, Position
from tradeguard.liquidation import LiquidationRiskModel
from tradeguard.trailing_stop import TrailingStopTracker


class ExitCondition(ABC):
    """One independent reason to close a position. Must not mutate anything."""
    name = 'exit_condition'

    @abstractmethod
    def should_exit(self, context: MarketContext) -> bool:
        ...

    def timeframes(self) -> Set[str]:
        """Timeframes whose indicator snapshots this condition reads."""
        return set()


class TrailingStopExit(ExitCondition):
    name = 'trailing_stop'

    def __init__(self, tracker: TrailingStopTracker):
        self.tracker = tracker

    def should_exit(self, context: MarketContext) -> bool:
        return self.tracker.should_trigger_stop(context.current_price)


class RSIExit(ExitCondition):
    """Longs exit once RSI is overbought, shorts once it is oversold."""
    name = 'rsi'

    def __init__(self, timeframe: str, threshold: float, direction: Direction):
        self.timeframe = timeframe
        self.threshold = threshold
        self.direction = Direction(direction)

    def timeframes(self) -> Set[str]:
        return {self.timeframe}

    def should_exit(self, context: MarketContext) -> bool:
        snapshot = context.snapshot(self.timeframe)
        if snapshot is None or math.isnan(snapshot.rsi):
            return False
        if self.direction == Direction.LONG:
            return snapshot.rsi >= self.threshold
        return snapshot.rsi <= self.threshold


class MACDExit(ExitCondition):
    """Exits when the MACD line crosses against the position."""
    name = 'macd'

    def __init__(self, timeframe: str, direction: Direction):
        self.timeframe = timeframe
        self.direction = Direction(direction)

    def timeframes(self) -> Set[str]:
        return {self.timeframe}

    def should_exit(self, context: MarketContext) -> bool:
        snapshot = context.snapshot(self.timeframe)
        if snapshot is None:
            return False
        macd, signal = snapshot.macd, snapshot.macd_signal
        if math.isnan(macd) or math.isnan(signal):
            return False
        if self.direction == Direction.LONG:
            return macd < signal
        return macd > signal


class LiquidationRiskExit(ExitCondition):
    name = 'liquidation_risk'

    def __init__(self, model: LiquidationRiskModel, position: Position):
        self.model = model
        self.position = position
        self.liquidation_price = model.liquidation_price(position.entry_price, position.leverage, position.direction)

    def should_exit(self, context: MarketContext) -> bool:
        # context.current_price is fetched fresh every cycle, never from the indicator cache
        return self.model.should_exit(context.current_price, self.liquidation_price, self.position.direction)


class ExitConditionChain:
    """Ordered OR over exit conditions. Order only changes which one gets logged."""

    def __init__(self, conditions: Iterable[ExitCondition]):
        self.conditions: List[ExitCondition] = list(conditions)

    def triggered_by(self, context: MarketContext) -> Optional[str]:
        for condition in self.conditions:
            if condition.should_exit(context):
                return condition.name
        return None

    def evaluate(self, context: MarketContext) -> bool:
        reason = self.triggered_by(context)
        if reason is not None:
            logging.info(f"[{context.symbol}] Exit condition '{reason}' met at price {context.current_price:.2f}")
            return True
        return False

    def required_timeframes(self) -> Set[str]:
        timeframes = set()
        for condition in self.conditions:
            timeframes |= condition.timeframes()
        return timeframes


def build_exit_chain(position: Position, tracker: TrailingStopTracker, cfg,
                     model: LiquidationRiskModel = None) -> ExitConditionChain:
    model = model or LiquidationRiskModel(cfg.LIQUIDATION_SAFETY_MARGIN)
    rsi_threshold = cfg.RSI_OVERBOUGHT if position.direction == Direction.LONG else cfg.RSI_OVERSOLD
    return ExitConditionChain([
        TrailingStopExit(tracker),
        LiquidationRiskExit(model, position),
        RSIExit(cfg.EXIT_TIMEFRAME, rsi_threshold, position.direction),
        MACDExit(cfg.EXIT_TIMEFRAME, position.direction),
    ])
