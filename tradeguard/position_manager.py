# tradeguard/position_manager.py
import asyncio
import json
import logging
import math
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from tradeguard.config import config
from tradeguard.datastructures import Direction, FillConfirmation, MarketContext, Position, PositionState
from tradeguard.exceptions import ExitFailedError, InvalidLeverageError, MarketDataError, OrderRejectedError
from tradeguard.exchange_connector import ExchangeConnector
from tradeguard.exit_conditions import ExitConditionChain, build_exit_chain
from tradeguard.indicator_cache import IndicatorCache
from tradeguard.liquidation import LiquidationRiskModel, validate_leverage
from tradeguard.market_data import MarketDataProvider
from tradeguard.strategy_logic import is_entry_signal_valid
from tradeguard.trailing_stop import TrailingStopTracker

MAX_LEVERAGE = 125


class CycleOutcome(str, Enum):
    SKIPPED = 'SKIPPED'
    NO_POSITION = 'NO_POSITION'
    ENTERED = 'ENTERED'
    HOLD = 'HOLD'
    EXITED = 'EXITED'
    EXIT_PENDING = 'EXIT_PENDING'
    EXIT_FAILED = 'EXIT_FAILED'


class PositionManager:
    """
    Owns the single position of one bot (symbol + direction): entry, trailing
    stop, exit evaluation and state persistence.

    Lifecycle: OPEN -> EXIT_TRIGGERED -> CLOSED. Once an exit has been
    triggered the position is never re-evaluated; it is only retried until
    the exchange confirms the fill.
    """
    def __init__(
        self,
        symbol: str,
        direction: Direction,
        exchange: ExchangeConnector,
        market_data: MarketDataProvider,
        indicator_cache: IndicatorCache,
        params: dict = None,
        price_update_queue: asyncio.Queue = None,
        cfg=config,
    ):
        params = params or {}
        self.symbol = symbol
        self.direction = Direction(direction)
        self.exchange = exchange
        self.market_data = market_data
        self.indicator_cache = indicator_cache
        self.price_update_queue = price_update_queue
        self.cfg = cfg

        self.trade_amount = float(params.get('trade_amount', cfg.TRADE_AMOUNT))
        self.leverage = int(params.get('leverage', cfg.LEVERAGE))
        validate_leverage(self.leverage)
        self.trailing_percent = float(params.get('trailing_stop_percent', cfg.TRAILING_STOP_PERCENT)) / 100.0
        self.check_interval = float(params.get('check_interval_seconds', cfg.CHECK_INTERVAL_SECONDS))
        self.risk_model = LiquidationRiskModel(cfg.LIQUIDATION_SAFETY_MARGIN)
        self.entry_timeframes = (cfg.EXIT_TIMEFRAME, cfg.TREND_TIMEFRAME)

        self.state_file = Path(cfg.STATE_DIR) / f"bot_state_{symbol}_{self.direction.value}.json"

        # --- State Management ---
        self.position: Optional[Position] = None
        self.tracker: Optional[TrailingStopTracker] = None
        self.exit_chain: Optional[ExitConditionChain] = None
        self.last_outcome: Optional[CycleOutcome] = None
        self._exit_task: Optional[asyncio.Task] = None

        self._load_state()

    @property
    def tag(self) -> str:
        return f"[{self.symbol} {self.direction.value}]"

    # --- State Persistence ---
    def _load_state(self):
        """Loads the bot's state from a file on startup."""
        if not self.state_file.exists():
            return
        logging.info(f"{self.tag} Found state file. Loading previous state.")
        try:
            with open(self.state_file, 'r') as f:
                state = json.load(f)
            self.leverage = int(state.get('leverage', self.leverage))
            if state.get('position'):
                position = Position.from_dict(state['position'])
                if position.state != PositionState.CLOSED:
                    self._adopt_position(position, state.get('tracker'))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logging.error(f"{self.tag} Could not restore state from {self.state_file}: {e}")
            return
        if self.position:
            logging.info(f"{self.tag} State loaded: {self.position.state.value} {self.position.quantity} "
                         f"@ {self.position.entry_price:.2f}, best price {self.tracker.best_price:.2f}")

    def save_state(self):
        """Saves the current state to a file for persistence."""
        state = {
            'symbol': self.symbol,
            'direction': self.direction.value,
            'leverage': self.leverage,
            'position': self.position.to_dict() if self.position else None,
            'tracker': self.tracker.to_dict() if self.tracker else None,
        }
        logging.debug(f"{self.tag} Saving state: {state}")
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.state_file, 'w') as f:
            json.dump(state, f, indent=4)

    def _adopt_position(self, position: Position, tracker_state: dict = None):
        self.position = position
        if tracker_state:
            self.tracker = TrailingStopTracker.from_dict(tracker_state)
        else:
            self.tracker = TrailingStopTracker(position.symbol, position.direction, position.entry_price,
                                               self.trailing_percent)
        self.exit_chain = build_exit_chain(position, self.tracker, self.cfg, self.risk_model)

    def _discard_position(self):
        self.position = None
        self.tracker = None
        self.exit_chain = None

    def get_position_status(self) -> str:
        if self.position is None:
            return 'FLAT'
        return self.position.state.value

    # --- Leverage ---
    async def initialize(self):
        """Pushes the configured leverage to the exchange before trading."""
        try:
            await self.exchange.set_leverage(self.symbol, self.leverage)
        except OrderRejectedError as e:
            logging.error(f"{self.tag} Failed to set leverage to {self.leverage}x: {e}")
            raise
        logging.info(f"{self.tag} Bot initialized with {self.leverage}x leverage, "
                     f"trailing stop: {self.trailing_percent * 100:.2f}%")

    async def set_leverage(self, new_leverage: int):
        """Changes leverage for subsequent entries. An open position keeps its own."""
        if not 1 <= new_leverage <= MAX_LEVERAGE:
            logging.error(f"{self.tag} Invalid leverage value: {new_leverage}")
            raise InvalidLeverageError(f"Leverage must be between 1 and {MAX_LEVERAGE}")
        await self.exchange.set_leverage(self.symbol, new_leverage)
        self.leverage = new_leverage
        self.save_state()
        logging.info(f"{self.tag} Dynamic leverage set to {new_leverage}x")

    # --- Core Logic ---
    async def _fetch_context(self, timeframes: Iterable[str]) -> MarketContext:
        price = await self.market_data.get_current_price(self.symbol)
        snapshots = {}
        for timeframe in sorted(set(timeframes)):
            snapshots[timeframe] = await self.indicator_cache.get_or_compute(self.symbol, timeframe)
        return MarketContext(symbol=self.symbol, current_price=price, snapshots=snapshots)

    def _log_market(self, context: MarketContext):
        daily = context.snapshot(self.cfg.EXIT_TIMEFRAME)
        if daily is None:
            logging.info(f"{self.tag} Price: {context.current_price:.2f}, indicators indeterminate")
            return
        best = self.tracker.best_price if self.tracker else math.nan
        logging.info(
            f"{self.tag} Price: {context.current_price:.2f}, RSI: {daily.rsi:.2f}, MACD: {daily.macd:.2f}, "
            f"Signal: {daily.macd_signal:.2f}, Lower BB: {daily.bollinger_lower:.2f}, "
            f"Upper BB: {daily.bollinger_upper:.2f}, Best price: {best:.2f}"
        )

    async def run_cycle(self) -> CycleOutcome:
        """One evaluation tick. Never raises for transient market-data problems."""
        outcome = await self._run_cycle()
        self.last_outcome = outcome
        return outcome

    async def _run_cycle(self) -> CycleOutcome:
        if self.position is not None and self.position.state == PositionState.EXIT_TRIGGERED:
            return await self._attempt_exit("retrying previously failed exit")

        timeframes = self.exit_chain.required_timeframes() if self.position else self.entry_timeframes
        try:
            # Everything is fetched before any state is touched
            context = await asyncio.wait_for(
                self._fetch_context(timeframes),
                timeout=self.cfg.MARKET_DATA_TIMEOUT * (len(timeframes) + 1),
            )
        except (MarketDataError, asyncio.TimeoutError) as e:
            logging.warning(f"{self.tag} Skipping cycle, market data unavailable: {e!r}")
            return CycleOutcome.SKIPPED

        self._log_market(context)

        if self.position is None:
            daily = context.snapshot(self.cfg.EXIT_TIMEFRAME)
            weekly = context.snapshot(self.cfg.TREND_TIMEFRAME)
            if not is_entry_signal_valid(self.direction, context.current_price, daily, weekly, self.cfg):
                return CycleOutcome.NO_POSITION
            try:
                fill = await self.enter_position()
            except (OrderRejectedError, MarketDataError) as e:
                logging.error(f"{self.tag} Failed to enter position: {e}")
                return CycleOutcome.NO_POSITION
            return CycleOutcome.ENTERED if fill else CycleOutcome.NO_POSITION

        # A racing exit may have closed the position while we were fetching
        if self.position.state != PositionState.OPEN:
            return CycleOutcome.EXIT_PENDING

        self.tracker.on_price_update(context.current_price)
        if not self.exit_chain.evaluate(context):
            self.save_state()
            return CycleOutcome.HOLD
        return await self._attempt_exit("exit condition met")

    async def _attempt_exit(self, reason: str) -> CycleOutcome:
        try:
            fill = await self.exit_position(reason)
        except ExitFailedError as e:
            logging.error(f"{self.tag} {e}. Will retry next cycle.")
            return CycleOutcome.EXIT_FAILED
        return CycleOutcome.EXITED if fill else CycleOutcome.EXIT_PENDING

    async def enter_position(self) -> Optional[FillConfirmation]:
        """Opens a market position in the bot's direction if margin allows."""
        if self.position is not None:
            logging.warning(f"{self.tag} Position already {self.position.state.value}, not entering again.")
            return None

        price = await self.market_data.get_current_price(self.symbol)
        required_margin = self.trade_amount * price / self.leverage
        balance = await self.exchange.get_margin_balance()
        if balance < required_margin:
            logging.warning(
                f"{self.tag} Insufficient margin balance (USDT) to open {self.trade_amount:.4f} {self.symbol} "
                f"with {self.leverage}x leverage: need {required_margin:.2f}, have {balance:.2f}"
            )
            return None

        if self.direction == Direction.LONG:
            fill = await self.exchange.enter_long_position(self.symbol, self.trade_amount)
        else:
            fill = await self.exchange.enter_short_position(self.symbol, self.trade_amount)

        position = Position(
            symbol=self.symbol,
            direction=self.direction,
            entry_price=fill.price,
            quantity=fill.qty,
            leverage=self.leverage,
        )
        self._adopt_position(position)
        self.save_state()
        logging.info(f"{self.tag} Entered {self.direction.value.lower()}: {fill.qty:.4f} at {fill.price:.2f} "
                     f"with {self.leverage}x leverage, liquidation near "
                     f"{self.risk_model.liquidation_price(fill.price, self.leverage, self.direction):.2f}")
        return fill

    @property
    def exit_in_flight(self) -> bool:
        return self._exit_task is not None

    async def exit_position(self, reason: str) -> Optional[FillConfirmation]:
        """
        Sends exactly one closing order for the position. Returns None when
        there is nothing to close or another exit is already in flight.
        Raises ExitFailedError if the exchange does not fill; the position
        then stays EXIT_TRIGGERED.

        The order runs in its own task, so cancelling the caller does not
        cancel the order. The in-flight guard holds until the exchange answers.
        """
        position = self.position
        if position is None or position.state == PositionState.CLOSED:
            return None
        if self._exit_task is not None:
            logging.info(f"{self.tag} Exit already in flight, not sending a duplicate order.")
            return None

        # No await between the check above and creating the task
        position.state = PositionState.EXIT_TRIGGERED
        logging.info(f"{self.tag} Exiting {position.direction.value} position. Reason: {reason}")
        task = asyncio.create_task(self._send_exit(position))
        self._exit_task = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            logging.warning(f"{self.tag} Cancelled while the exit order is in flight, leaving it to complete.")
            raise

    async def wait_for_pending_exit(self) -> Optional[FillConfirmation]:
        """Waits for an exit order whose caller was cancelled. Raises ExitFailedError if it failed."""
        task = self._exit_task
        if task is None:
            return None
        return await asyncio.shield(task)

    async def _send_exit(self, position: Position) -> FillConfirmation:
        try:
            try:
                if position.direction == Direction.LONG:
                    fill = await self.exchange.exit_long_position(self.symbol, position.quantity)
                else:
                    fill = await self.exchange.exit_short_position(self.symbol, position.quantity)
            except Exception as e:
                self.save_state()
                raise ExitFailedError(self.symbol, position.direction.value, str(e)) from e

            position.state = PositionState.CLOSED
            profit = position.unrealized_pnl(fill.price)
            logging.info(f"{self.tag} Exited {position.direction.value.lower()}: {fill.qty:.4f} at {fill.price:.2f} "
                         f"with {position.leverage}x leverage, Profit: {profit:.2f}")
            self._discard_position()
            self.save_state()
            return fill
        finally:
            self._exit_task = None

    def on_price_update(self, price: float):
        if self.position is not None and self.position.state == PositionState.OPEN:
            self.tracker.on_price_update(price)

    def status(self) -> dict:
        return {
            'symbol': self.symbol,
            'direction': self.direction.value,
            'leverage': self.leverage,
            'status': self.get_position_status(),
            'position': self.position.to_dict() if self.position else None,
            'best_price': self.tracker.best_price if self.tracker else None,
            'stop_price': self.tracker.stop_price() if self.tracker else None,
            'last_outcome': self.last_outcome.value if self.last_outcome else None,
        }

    async def consume_price_updates(self):
        """Feeds live trades into the trailing stop between evaluation cycles."""
        while True:
            update = await self.price_update_queue.get()
            if update.symbol == self.symbol:
                self.on_price_update(update.price)
            self.price_update_queue.task_done()

    async def run(self):
        """Main loop for the position manager."""
        await self.initialize()
        logging.info(f"PositionManager for {self.tag} is running every {self.check_interval:.0f}s.")
        while True:
            try:
                await self.run_cycle()
            except Exception:
                logging.critical(f"{self.tag} Unexpected error in evaluation cycle", exc_info=True)
            await asyncio.sleep(self.check_interval)
