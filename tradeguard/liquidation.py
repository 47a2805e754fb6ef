# tradeguard/liquidation.py
import math

from tradeguard.datastructures import Direction
from tradeguard.exceptions import InvalidLeverageError

DEFAULT_SAFETY_MARGIN = 0.05


def validate_leverage(leverage: float) -> None:
    if leverage is None or not math.isfinite(leverage) or leverage < 1:
        raise InvalidLeverageError(f"Leverage must be a finite number >= 1, got {leverage}")


class LiquidationRiskModel:
    """
    Approximates the isolated-margin liquidation price (maintenance margin
    ignored) and flags positions trading within the safety margin of it.
    """
    def __init__(self, safety_margin_percent: float = DEFAULT_SAFETY_MARGIN):
        self.safety_margin_percent = safety_margin_percent

    @staticmethod
    def liquidation_price(entry_price: float, leverage: float, direction: Direction) -> float:
        validate_leverage(leverage)
        if Direction(direction) == Direction.LONG:
            return entry_price * (1 - 1 / leverage)
        return entry_price * (1 + 1 / leverage)

    def should_exit(self, current_price: float, liquidation_price: float, direction: Direction,
                    safety_margin_percent: float = None) -> bool:
        margin = self.safety_margin_percent if safety_margin_percent is None else safety_margin_percent
        if math.isnan(current_price) or math.isnan(liquidation_price):
            return False
        if Direction(direction) == Direction.LONG:
            # A 1x long has liquidation price 0 and can never get there
            return current_price <= liquidation_price * (1 + margin)
        return current_price >= liquidation_price * (1 - margin)
