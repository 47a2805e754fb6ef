# tradeguard/exceptions.py


class TradeguardError(Exception):
    """Base class for all engine errors."""


class MarketDataError(TradeguardError):
    """A market-data fetch failed. Always transient: the cycle is skipped."""


class ExchangeUnavailableError(MarketDataError):
    pass


class RateLimitedError(MarketDataError):
    pass


class OrderRejectedError(TradeguardError):
    """The exchange refused or failed to execute an order."""


class ExitFailedError(TradeguardError):
    """An exit order could not be completed; the position stays EXIT_TRIGGERED."""

    def __init__(self, symbol: str, direction: str, reason: str):
        super().__init__(f"Exit failed for {direction} {symbol}: {reason}")
        self.symbol = symbol
        self.direction = direction
        self.reason = reason


class InvalidLeverageError(TradeguardError, ValueError):
    pass
