# tradeguard/config.py
import os
from dotenv import load_dotenv
import logging

# Load environment variables from a .env file for local development
load_dotenv()


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Main configuration class loading settings from environment variables."""
    # --- Exchange Credentials ---
    API_KEY = os.getenv('BYBIT_API_KEY')
    API_SECRET = os.getenv('BYBIT_API_SECRET')
    TESTNET = _get_bool('TESTNET', False)

    # --- Bot Mode ---
    # Set to 'LIVE' to use real exchange connections
    MODE = os.getenv('MODE', 'SIMULATION')

    # --- Endpoints ---
    REST_URL = os.getenv('REST_URL', "https://api.bybit.com")
    WEBSOCKET_URL = os.getenv('WEBSOCKET_URL', "wss://stream.bybit.com/v5/public/linear")

    # --- Position Parameters ---
    SYMBOLS = [s.strip() for s in os.getenv('SYMBOLS', 'BTCUSDT').split(',') if s.strip()]
    TRADE_DIRECTION = os.getenv('TRADE_DIRECTION', 'LONG').upper()
    TRADE_AMOUNT = float(os.getenv('TRADE_AMOUNT', 0.001))
    LEVERAGE = int(os.getenv('LEVERAGE', 3))
    TRAILING_STOP_PERCENT = float(os.getenv('TRAILING_STOP_PERCENT', 1.0))  # In percent
    LIQUIDATION_SAFETY_MARGIN = float(os.getenv('LIQUIDATION_SAFETY_MARGIN', 0.05))  # As fraction
    INITIAL_CAPITAL = float(os.getenv('INITIAL_CAPITAL', 10000.0))

    # --- Indicator Parameters ---
    RSI_PERIOD = int(os.getenv('RSI_PERIOD', 14))
    RSI_OVERSOLD = float(os.getenv('RSI_OVERSOLD', 30.0))
    RSI_OVERBOUGHT = float(os.getenv('RSI_OVERBOUGHT', 70.0))
    MACD_FAST = int(os.getenv('MACD_FAST', 12))
    MACD_SLOW = int(os.getenv('MACD_SLOW', 26))
    MACD_SIGNAL = int(os.getenv('MACD_SIGNAL', 9))
    BB_PERIOD = int(os.getenv('BB_PERIOD', 20))
    BB_STD = float(os.getenv('BB_STD', 2.0))
    CANDLE_LIMIT = int(os.getenv('CANDLE_LIMIT', 100))
    EXIT_TIMEFRAME = os.getenv('EXIT_TIMEFRAME', '1d')
    TREND_TIMEFRAME = os.getenv('TREND_TIMEFRAME', '1w')

    # --- Scheduling & I/O ---
    CHECK_INTERVAL_SECONDS = int(os.getenv('CHECK_INTERVAL_SECONDS', 900))
    MARKET_DATA_TIMEOUT = float(os.getenv('MARKET_DATA_TIMEOUT', 10.0))
    MARKET_DATA_MIN_INTERVAL = float(os.getenv('MARKET_DATA_MIN_INTERVAL', 0.1))  # Seconds between REST calls
    CIRCUIT_BREAKER_MAX_FAILURES = int(os.getenv('CIRCUIT_BREAKER_MAX_FAILURES', 5))
    CIRCUIT_BREAKER_RESET_SECONDS = float(os.getenv('CIRCUIT_BREAKER_RESET_SECONDS', 60.0))

    # --- Cache ---
    CACHE_BACKEND = os.getenv('CACHE_BACKEND', 'memory')
    REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

    # --- Runtime ---
    STATE_DIR = os.getenv('STATE_DIR', '.')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    STATUS_PORT = int(os.getenv('STATUS_PORT', 0))  # 0 disables the status server

    # --- Validation ---
    if MODE == 'LIVE' and (not API_KEY or not API_SECRET):
        logging.warning("API_KEY or API_SECRET not found in environment variables.")

config = Config()
