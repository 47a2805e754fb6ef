# tradeguard/exchange_connector.py
import asyncio
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Tuple

# Import the synchronous HTTP client from pybit
from pybit.unified_trading import HTTP
from pybit.exceptions import FailedRequestError, InvalidRequestError

from tradeguard.config import config
from tradeguard.datastructures import Direction, FillConfirmation
from tradeguard.exceptions import OrderRejectedError
from tradeguard.market_data import MarketDataProvider

LEVERAGE_NOT_MODIFIED = 110043


class ExchangeConnector(ABC):
    """Order-side collaborator. Each exit method is called at most once per triggered exit."""

    @abstractmethod
    async def enter_long_position(self, symbol: str, qty: float) -> FillConfirmation:
        ...

    @abstractmethod
    async def enter_short_position(self, symbol: str, qty: float) -> FillConfirmation:
        ...

    @abstractmethod
    async def exit_long_position(self, symbol: str, qty: float) -> FillConfirmation:
        ...

    @abstractmethod
    async def exit_short_position(self, symbol: str, qty: float) -> FillConfirmation:
        ...

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> None:
        ...

    @abstractmethod
    async def get_margin_balance(self) -> float:
        ...


class BybitExchange(ExchangeConnector):
    """
    Authenticated Bybit linear-perpetual orders via pybit.
    pybit is synchronous, so every call runs in the default executor.
    """
    def __init__(self, market_data: MarketDataProvider, session: HTTP = None, category: str = 'linear'):
        self.market_data = market_data
        self.category = category
        self.pybit_session = session or HTTP(
            testnet=config.TESTNET,
            api_key=config.API_KEY,
            api_secret=config.API_SECRET
        )
        logging.info("Initialized LIVE pybit HTTP session.")

    async def _call(self, description: str, fn, **kwargs) -> dict:
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, lambda: fn(**kwargs))
        except (InvalidRequestError, FailedRequestError) as e:
            logging.error(f"Exchange rejected {description}: {e}")
            raise OrderRejectedError(f"{description}: {e}") from e
        if not response or response.get('retCode') != 0:
            msg = response.get('retMsg') if response else 'empty response'
            logging.error(f"Exchange rejected {description}: {msg}")
            raise OrderRejectedError(f"{description}: {msg}")
        return response

    async def _fill_price(self, symbol: str, order_id: str) -> float:
        """Average fill price of a market order, falling back to the last trade price."""
        try:
            response = await self._call(
                f"order lookup {order_id}", self.pybit_session.get_order_history,
                category=self.category, symbol=symbol, orderId=order_id,
            )
            orders = response['result'].get('list', [])
            if orders and float(orders[0].get('avgPrice') or 0) > 0:
                return float(orders[0]['avgPrice'])
        except OrderRejectedError:
            logging.warning(f"Could not look up fill price for order {order_id}, using last trade price.")
        return await self.market_data.get_current_price(symbol)

    async def _market_order(self, symbol: str, side: str, qty: float, reduce_only: bool) -> FillConfirmation:
        logging.info(f"Placing LIVE {side} market order: {qty} {symbol} (reduceOnly={reduce_only})")
        response = await self._call(
            f"{side} {qty} {symbol}", self.pybit_session.place_order,
            category=self.category,
            symbol=symbol,
            side=side,
            orderType='Market',
            qty=str(qty),
            reduceOnly=reduce_only,
        )
        order_id = response['result']['orderId']
        logging.info(f"Successfully placed order for {symbol}. Order ID: {order_id}")
        price = await self._fill_price(symbol, order_id)
        return FillConfirmation(symbol=symbol, order_id=order_id, side=side, qty=qty, price=price)

    async def enter_long_position(self, symbol: str, qty: float) -> FillConfirmation:
        return await self._market_order(symbol, 'Buy', qty, reduce_only=False)

    async def enter_short_position(self, symbol: str, qty: float) -> FillConfirmation:
        return await self._market_order(symbol, 'Sell', qty, reduce_only=False)

    async def exit_long_position(self, symbol: str, qty: float) -> FillConfirmation:
        return await self._market_order(symbol, 'Sell', qty, reduce_only=True)

    async def exit_short_position(self, symbol: str, qty: float) -> FillConfirmation:
        return await self._market_order(symbol, 'Buy', qty, reduce_only=True)

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, lambda: self.pybit_session.set_leverage(
                category=self.category, symbol=symbol,
                buyLeverage=str(leverage), sellLeverage=str(leverage),
            ))
        except InvalidRequestError as e:
            if getattr(e, 'status_code', None) != LEVERAGE_NOT_MODIFIED:
                raise OrderRejectedError(f"set leverage {leverage}x on {symbol}: {e}") from e
        logging.info(f"Leverage set to {leverage}x for {symbol}")

    async def get_margin_balance(self) -> float:
        """Fetches the available USDT margin of the unified account."""
        response = await self._call(
            "wallet balance", self.pybit_session.get_wallet_balance, accountType='UNIFIED', coin='USDT',
        )
        accounts = response['result'].get('list', [])
        if not accounts:
            return 0.0
        return float(accounts[0].get('totalAvailableBalance') or 0.0)


class PaperExchange(ExchangeConnector):
    """Simulated margin account. Fills at the provider's current price."""

    def __init__(self, market_data: MarketDataProvider, initial_balance: float = None):
        self.market_data = market_data
        self.margin_balance = initial_balance if initial_balance is not None else config.INITIAL_CAPITAL
        self.leverage: Dict[str, int] = {}
        self.positions: Dict[Tuple[str, Direction], Tuple[float, float]] = {}  # -> (qty, entry_price)
        self._lock = threading.Lock()

    def _fill(self, symbol: str, side: str, qty: float, price: float) -> FillConfirmation:
        order_id = f"sim-{uuid.uuid4().hex[:12]}"
        logging.info(f"[SIMULATION] {side} {qty} {symbol} at {price:.2f} (order {order_id})")
        return FillConfirmation(symbol=symbol, order_id=order_id, side=side, qty=qty, price=price)

    async def _enter(self, symbol: str, direction: Direction, qty: float) -> FillConfirmation:
        price = await self.market_data.get_current_price(symbol)
        leverage = self.leverage.get(symbol, 1)
        required_margin = qty * price / leverage
        with self._lock:
            if self.margin_balance < required_margin:
                raise OrderRejectedError(
                    f"Insufficient margin: need {required_margin:.2f}, have {self.margin_balance:.2f}"
                )
            if (symbol, direction) in self.positions:
                raise OrderRejectedError(f"{direction.value} position already open on {symbol}")
            self.margin_balance -= required_margin
            self.positions[(symbol, direction)] = (qty, price)
        return self._fill(symbol, 'Buy' if direction == Direction.LONG else 'Sell', qty, price)

    async def _exit(self, symbol: str, direction: Direction, qty: float) -> FillConfirmation:
        price = await self.market_data.get_current_price(symbol)
        leverage = self.leverage.get(symbol, 1)
        with self._lock:
            held = self.positions.pop((symbol, direction), None)
            if held is None:
                raise OrderRejectedError(f"No {direction.value} position open on {symbol}")
            held_qty, entry_price = held
            move = price - entry_price if direction == Direction.LONG else entry_price - price
            profit = move * held_qty * leverage
            self.margin_balance += profit + held_qty * entry_price / leverage
        return self._fill(symbol, 'Sell' if direction == Direction.LONG else 'Buy', held_qty, price)

    async def enter_long_position(self, symbol: str, qty: float) -> FillConfirmation:
        return await self._enter(symbol, Direction.LONG, qty)

    async def enter_short_position(self, symbol: str, qty: float) -> FillConfirmation:
        return await self._enter(symbol, Direction.SHORT, qty)

    async def exit_long_position(self, symbol: str, qty: float) -> FillConfirmation:
        return await self._exit(symbol, Direction.LONG, qty)

    async def exit_short_position(self, symbol: str, qty: float) -> FillConfirmation:
        return await self._exit(symbol, Direction.SHORT, qty)

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        self.leverage[symbol] = leverage
        logging.info(f"[SIMULATION] Leverage set to {leverage}x for {symbol}")

    async def get_margin_balance(self) -> float:
        return self.margin_balance
